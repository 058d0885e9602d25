"""Finds inconsistencies between the variant catalog and the content tree.

Checks:
1. variant rows whose artifact is missing on disk (deleted in fix mode)
2. variant rows on files that never reached DONE (deleted in fix mode)
3. content directories with no file row (reported only, never deleted)
"""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session as DBSession

from database.models import File, FileVariant
from models.media_models import ProcessingStatus, ReconciliationIssue, ReconciliationReport
from utils.storage_paths import StoragePaths

logger = logging.getLogger(__name__)


def reconcile_file_variants(
    db: DBSession, storage: StoragePaths, fix: bool = False
) -> ReconciliationReport:
    report = ReconciliationReport()
    logger.info("Starting file variant reconciliation (mode=%s)", "FIX" if fix else "DRY RUN")

    statuses = {file_id: status for file_id, status in db.query(File.id, File.processing_status)}

    for variant in db.query(FileVariant).order_by(FileVariant.file_id, FileVariant.variant):
        path = storage.variant_path(variant.file_id, variant.variant, variant.extension)
        problem = None
        if statuses.get(variant.file_id) != ProcessingStatus.DONE.value:
            problem = "variant_on_unfinished_file"
        elif not path.exists():
            problem = "missing_on_disk"
        if problem is None:
            continue

        issue = ReconciliationIssue(
            file_id=str(variant.file_id),
            variant=variant.variant,
            issue=problem,
            path=str(path),
            action="deleted_db_record" if fix else "would_delete_db_record",
        )
        report.issues.append(issue)
        logger.warning("Reconciliation issue %s for %s/%s", problem, variant.file_id, variant.variant)
        if fix:
            try:
                db.delete(variant)
                report.fixed += 1
            except Exception as exc:
                report.errors.append(f"{variant.file_id}/{variant.variant}: {exc}")

    known = {str(file_id) for file_id in statuses}
    for directory in storage.content_file_ids():
        if directory not in known:
            report.issues.append(
                ReconciliationIssue(
                    file_id=directory,
                    issue="orphan_directory",
                    path=str(storage.file_directory(directory)),
                    action="manual_review",
                )
            )

    if fix and report.fixed:
        db.commit()
    logger.info(
        "Reconciliation finished: %d issue(s), %d fixed, %d error(s)",
        len(report.issues),
        report.fixed,
        len(report.errors),
    )
    return report
