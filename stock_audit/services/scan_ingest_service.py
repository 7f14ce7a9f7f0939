from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from stock_audit.models import Scan

logger = logging.getLogger(__name__)

SCAN_BARCODE_PATTERN = re.compile(r'[0-9]{10,12}')
SCAN_COLUMNS = (
    'id',
    'client_scan_id',
    'barcode',
    'rack_id',
    'audit_session_id',
    'scanner_id',
    'device_id',
    'quantity',
    'manual_entry',
    'created_at',
)


class ScanPayloadError(ValueError):
    pass


@dataclass(frozen=True)
class ScanIngestResult:
    received: int
    inserted: int

    @property
    def duplicates(self) -> int:
        return self.received - self.inserted

    def to_dict(self) -> dict:
        return {
            'received': self.received,
            'inserted': self.inserted,
            'duplicates': self.duplicates,
        }


def _validate_scan(scan: dict) -> dict:
    client_scan_id = str(scan.get('client_scan_id') or '').strip()
    if not client_scan_id:
        raise ScanPayloadError('client_scan_id is required')
    barcode = str(scan.get('barcode') or '').strip()
    if not SCAN_BARCODE_PATTERN.fullmatch(barcode):
        raise ScanPayloadError(f'Invalid barcode format: "{barcode}" (must be 10-12 digits)')
    if scan.get('quantity', 1) != 1:
        raise ScanPayloadError('Each scan records exactly one unit')
    if not scan.get('id') or scan.get('created_at') is None:
        raise ScanPayloadError(f'Scan {client_scan_id} is missing id or created_at')
    row = {column: scan.get(column) for column in SCAN_COLUMNS}
    row['client_scan_id'] = client_scan_id
    row['barcode'] = barcode
    row['quantity'] = 1
    row['manual_entry'] = bool(scan.get('manual_entry', False))
    return row


def record_scans(db: Session, *, scans: list[dict]) -> ScanIngestResult:
    rows_by_client_id: dict[str, dict] = {}
    for scan in scans:
        row = _validate_scan(scan)
        rows_by_client_id.setdefault(row['client_scan_id'], row)

    if not rows_by_client_id:
        return ScanIngestResult(received=len(scans), inserted=0)

    stmt = (
        insert(Scan)
        .values(list(rows_by_client_id.values()))
        .on_conflict_do_nothing(index_elements=[Scan.client_scan_id])
        .returning(Scan.id)
    )
    inserted = len(db.execute(stmt).all())
    result = ScanIngestResult(received=len(scans), inserted=inserted)
    if result.duplicates:
        logger.info('Ignored %d re-submitted scans', result.duplicates)
    return result
