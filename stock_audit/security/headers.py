from fastapi import FastAPI, Request


API_PREFIX = '/api/'
DEFAULT_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'Referrer-Policy': 'no-referrer',
}
# Scan batches and import reports must never be served from a cache.
API_HEADERS = {
    'Cache-Control': 'no-store',
    'X-Frame-Options': 'DENY',
}


def install_security_headers(app: FastAPI) -> None:
    @app.middleware('http')
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        headers = dict(DEFAULT_HEADERS)
        if request.url.path.startswith(API_PREFIX):
            headers.update(API_HEADERS)
        for name, value in headers.items():
            response.headers.setdefault(name, value)
        return response
