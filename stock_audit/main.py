import logging

from fastapi import FastAPI

from stock_audit.config import settings
from stock_audit.routers import inventory, scans
from stock_audit.security.headers import install_security_headers
from stock_audit.security.sessions import install_auth_session_middleware

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = FastAPI(title='Stock Audit')

install_auth_session_middleware(app)
install_security_headers(app)

app.include_router(inventory.router)
app.include_router(scans.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
