from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    SmallInteger,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from database.base import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class File(Base):
    __tablename__ = "file"

    id = Column(Uuid, primary_key=True, default=uuid4)
    creator_id = Column(String, nullable=True, index=True)
    # Target kind; the sniffed source kind lives in original_type
    type = Column(String, nullable=False)
    original_type = Column(String, nullable=True)
    processing_status = Column(String, nullable=False, default="QUEUED")
    processing_progress = Column(SmallInteger, nullable=True)
    processing_notes = Column(Text, nullable=True)
    original_mime_type = Column(String, nullable=True)
    expire_by = Column(BigInteger, nullable=True)
    modifications = Column(JSONType, nullable=False, default=dict)
    processing_meta = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_file_processing_status", processing_status),
        Index("ix_file_status_created_at", processing_status, created_at),
        Index("ix_file_expire_by", expire_by),
    )

    def __repr__(self):
        return f"<File id={self.id} type={self.type} status={self.processing_status} progress={self.processing_progress}>"


class FileVariant(Base):
    __tablename__ = "file_variant"

    file_id = Column(
        "file",
        Uuid,
        ForeignKey("file.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    variant = Column(String, primary_key=True)
    mime_type = Column(String, nullable=False)
    extension = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    meta = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self):
        return f"<FileVariant file={self.file_id} variant={self.variant} extension={self.extension} size_bytes={self.size_bytes}>"
