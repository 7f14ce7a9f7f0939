from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stock_audit.auth import Principal, assert_scanner_identity, get_current_principal
from stock_audit.db import get_db
from stock_audit.services.scan_ingest_service import ScanPayloadError, record_scans

router = APIRouter(prefix='/api/scans', tags=['scans'])


class ScanPayload(BaseModel):
    id: str = Field(min_length=1, max_length=36)
    client_scan_id: str = Field(min_length=1, max_length=64)
    barcode: str
    rack_id: int
    audit_session_id: int
    scanner_id: int
    quantity: int = 1
    manual_entry: bool = False
    device_id: str | None = None
    created_at: datetime


class ScanBatch(BaseModel):
    scans: list[ScanPayload]


@router.post('')
def ingest_scans(
    body: ScanBatch,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    for scan in body.scans:
        assert_scanner_identity(principal, scan.scanner_id)
    try:
        result = record_scans(db, scans=[scan.model_dump() for scan in body.scans])
    except ScanPayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return result.to_dict()
