from __future__ import annotations

import logging
from functools import partial

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from stock_audit.auth import Principal, Role, get_current_principal, require_role
from stock_audit.db import get_db
from stock_audit.dependencies import get_client_ip
from stock_audit.services.audit_service import log_inventory_import
from stock_audit.services.inventory_import_service import (
    ParseError,
    PersistenceError,
    ValidationError,
    count_inventory_items,
    import_inventory_file,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/inventory', tags=['inventory'])


@router.post('/import')
async def import_inventory(
    request: Request,
    file: UploadFile = File(...),
    location_id: int = Form(...),
    principal: Principal = Depends(require_role(Role.SUPERUSER)),
    db: Session = Depends(get_db),
):
    content = await file.read()
    filename = file.filename or ''
    audit = partial(
        log_inventory_import,
        db,
        actor_principal_id=principal.id,
        location_id=location_id,
        ip=get_client_ip(request),
        filename=filename,
    )

    try:
        result = await run_in_threadpool(
            import_inventory_file, db, location_id=location_id, filename=filename, content=content
        )
    except (ParseError, ValidationError) as exc:
        report = exc.to_dict()
        audit(action='INVENTORY_IMPORT_REJECTED', report=report)
        db.commit()
        return JSONResponse(report, status_code=status.HTTP_400_BAD_REQUEST)
    except PersistenceError as exc:
        logger.error('Inventory import for location %s failed at batch %s', location_id, exc.failed_at_batch)
        report = exc.to_dict()
        audit(action='INVENTORY_IMPORT_FAILED', report=report)
        db.commit()
        return JSONResponse(report, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    report = result.to_dict()
    audit(action='INVENTORY_IMPORTED', report=report)
    db.commit()
    return report


@router.get('/import')
def inventory_count(
    location_id: int = Query(...),
    _: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return {'success': True, 'count': count_inventory_items(db, location_id=location_id)}
