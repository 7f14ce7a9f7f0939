from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from sqlalchemy.orm import Session

from stock_audit.config import settings
from stock_audit.services.scan_ingest_service import record_scans
from stock_audit.services.scan_queue import ScanEvent


class ScanDeliveryError(RuntimeError):
    pass


class HttpScanSink:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        token: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self.base_url = (base_url or settings.scan_api_base_url).rstrip('/')
        self.token = token if token is not None else settings.scan_api_token
        self.timeout_seconds = timeout_seconds or settings.scan_api_timeout_seconds

    def _post(self, payload: dict) -> dict:
        if not self.token:
            raise ScanDeliveryError('SCAN_API_TOKEN is required')

        req = Request(
            url=f'{self.base_url}/api/scans',
            data=json.dumps(payload).encode('utf-8'),
            headers={
                'Authorization': f'Bearer {self.token}',
                'Content-Type': 'application/json',
            },
            method='POST',
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                return json.loads(response.read().decode('utf-8') or '{}')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise ScanDeliveryError(f'Scan API error {exc.code}: {body}') from exc
        except URLError as exc:
            raise ScanDeliveryError(f'Scan API network error: {exc.reason}') from exc

    async def insert(self, batch: list[ScanEvent]) -> None:
        payload = {'scans': [event.to_payload() for event in batch]}
        await asyncio.to_thread(self._post, payload)


class SessionScanSink:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def _write(self, batch: list[ScanEvent]) -> None:
        rows = [{**event.to_payload(), 'created_at': event.created_at} for event in batch]
        with self.session_factory() as db:
            record_scans(db, scans=rows)
            db.commit()

    async def insert(self, batch: list[ScanEvent]) -> None:
        await asyncio.to_thread(self._write, batch)
