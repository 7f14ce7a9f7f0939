from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_audit.auth import Principal, Role
from stock_audit.config import settings
from stock_audit.db import SessionLocal
from stock_audit.dependencies import get_session_token
from stock_audit.models import Principal as PrincipalModel
from stock_audit.models import WebSession

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = '/api/'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _is_live(web_session: WebSession, now: datetime) -> bool:
    return web_session.revoked_at is None and web_session.expires_at > now


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    """Resolve a session token to the principal behind it.

    Each successful lookup pushes the expiry out by ``session_ttl_minutes``.
    """
    if not token:
        return None

    row = db.execute(
        select(WebSession, PrincipalModel)
        .join(PrincipalModel, PrincipalModel.id == WebSession.principal_id)
        .where(WebSession.session_token == token)
    ).one_or_none()
    if row is None:
        return None

    web_session, principal = row
    now = _now()
    if not _is_live(web_session, now):
        logger.info('Rejected stale session for principal %s', principal.id)
        return None

    web_session.last_seen_at = now
    web_session.expires_at = now + timedelta(minutes=settings.session_ttl_minutes)
    return Principal(
        id=principal.id,
        email=principal.email,
        role=Role(principal.role.value),
        active=principal.active,
    )


def install_auth_session_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def auth_session_middleware(request: Request, call_next):
        request.state.principal = None
        if not request.url.path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        token = get_session_token(request, settings.session_cookie_name)
        if token:
            with SessionLocal() as db:
                request.state.principal = load_principal_from_token(db, token)
                db.commit()

        if request.state.principal is None:
            return JSONResponse({'error': 'Unauthorized'}, status_code=status.HTTP_401_UNAUTHORIZED)
        return await call_next(request)
