from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from stock_audit.models import AuditLog

logger = logging.getLogger(__name__)

# Enough rows to see the pattern; the full list goes back to the uploader.
AUDIT_DETAIL_CAP = 5


def log_audit(
    db: Session,
    *,
    actor_principal_id: int | None,
    action: str,
    location_id: int | None,
    ip: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=action,
            location_id=location_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def log_inventory_import(
    db: Session,
    *,
    actor_principal_id: int,
    action: str,
    location_id: int,
    ip: str | None,
    filename: str,
    report: dict,
) -> None:
    """Record an import attempt with a trimmed copy of the report sent to the client.

    Row samples from failed batches are left out so item data never lands in the audit trail.
    """
    metadata = {'filename': filename}
    for key, value in report.items():
        if key == 'batch_sample':
            continue
        if key == 'details' and isinstance(value, list):
            value = value[:AUDIT_DETAIL_CAP]
        metadata[key] = value

    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action=action,
        location_id=location_id,
        ip=ip,
        metadata=metadata,
    )
    logger.info('%s for location %s by principal %s (%s)', action, location_id, actor_principal_id, filename)
