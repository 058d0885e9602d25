"""add_file_tables

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "1a2b3c4d5e6f"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "file",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("creator_id", sa.String(), nullable=True),
        # Target kind and sniffed source kind
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("original_type", sa.String(), nullable=True),
        # Processing state machine
        sa.Column("processing_status", sa.String(), nullable=False, server_default="QUEUED"),
        sa.Column("processing_progress", sa.SmallInteger(), nullable=True),
        sa.Column("processing_notes", sa.Text(), nullable=True),
        sa.Column("original_mime_type", sa.String(), nullable=True),
        # Epoch milliseconds; provisional uploads only
        sa.Column("expire_by", sa.BigInteger(), nullable=True),
        sa.Column(
            "modifications",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "processing_meta",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_file_creator_id", "file", ["creator_id"], unique=False)
    op.create_index("ix_file_processing_status", "file", ["processing_status"], unique=False)
    op.create_index(
        "ix_file_status_created_at", "file", ["processing_status", "created_at"], unique=False
    )
    op.create_index("ix_file_expire_by", "file", ["expire_by"], unique=False)

    op.create_table(
        "file_variant",
        sa.Column("file", sa.UUID(), nullable=False),
        sa.Column("variant", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("extension", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "meta",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        # Variants are deleted explicitly before their file
        sa.ForeignKeyConstraint(["file"], ["file.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("file", "variant"),
    )


def downgrade() -> None:
    op.drop_table("file_variant")
    op.drop_index("ix_file_expire_by", table_name="file")
    op.drop_index("ix_file_status_created_at", table_name="file")
    op.drop_index("ix_file_processing_status", table_name="file")
    op.drop_index("ix_file_creator_id", table_name="file")
    op.drop_table("file")
