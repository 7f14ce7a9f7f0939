from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import platform
import secrets
import string
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = 'deviceId'
USER_AGENT_PREFIX_LENGTH = 20
CLIENT_SCAN_ID_SUFFIX_LENGTH = 9
_BASE36 = string.digits + string.ascii_lowercase

QueueSizeObserver = Callable[[int], None]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _epoch_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class ScanInput:
    barcode: str
    rack_id: int
    audit_session_id: int
    scanner_id: int


@dataclass(frozen=True)
class ScanEvent:
    id: str
    client_scan_id: str
    barcode: str
    rack_id: int
    audit_session_id: int
    scanner_id: int
    manual_entry: bool
    device_id: str
    created_at: datetime = field(default_factory=_now)
    quantity: int = 1

    def to_payload(self) -> dict:
        return {
            'id': self.id,
            'client_scan_id': self.client_scan_id,
            'barcode': self.barcode,
            'rack_id': self.rack_id,
            'audit_session_id': self.audit_session_id,
            'scanner_id': self.scanner_id,
            'quantity': self.quantity,
            'manual_entry': self.manual_entry,
            'device_id': self.device_id,
            'created_at': self.created_at.isoformat(),
        }


class ScanSink(Protocol):
    async def insert(self, batch: list[ScanEvent]) -> None: ...


def new_client_scan_id() -> str:
    suffix = ''.join(secrets.choice(_BASE36) for _ in range(CLIENT_SCAN_ID_SUFFIX_LENGTH))
    return f'web-{_epoch_ms()}-{suffix}'


class DeviceIdStore:
    """Small JSON key-value file that outlives the process, one per install."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict:
        try:
            return json.loads(self.path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning('Device store at %s is unreadable, starting fresh', self.path)
            return {}

    def get(self, key: str) -> str | None:
        value = self._load().get(key)
        return str(value) if value is not None else None

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding='utf-8')


def default_user_agent() -> str:
    return f'{platform.python_implementation()}/{platform.python_version()} ({platform.system()} {platform.machine()})'


def resolve_device_id(store: DeviceIdStore, user_agent: str | None = None) -> str:
    device_id = store.get(DEVICE_ID_KEY)
    if not device_id:
        agent = user_agent if user_agent is not None else default_user_agent()
        device_id = f'web-{agent[:USER_AGENT_PREFIX_LENGTH]}-{_epoch_ms()}'
        store.set(DEVICE_ID_KEY, device_id)
    return device_id


def device_fingerprint(parts: list[str]) -> str:
    # Heuristic only; collisions and spoofing are both possible.
    digest = hashlib.sha256('|'.join(parts).encode('utf-8')).hexdigest()
    return f'fp-{digest[:16]}'


class ScanQueue:
    """Buffers scan events in memory and delivers them to a sink in batches.

    A batch is written when the periodic timer fires, when the buffer reaches
    ``batch_threshold`` events, or when the host calls ``handle_unload``.
    A failed write puts the whole batch back in front of anything added since,
    so nothing is dropped and retries keep insertion order. Flushes are
    serialized: at most one batch is in flight at a time.
    """

    def __init__(
        self,
        sink: ScanSink,
        *,
        device_ids: DeviceIdStore,
        on_queue_size_changed: QueueSizeObserver | None = None,
        flush_interval_seconds: float = 5.0,
        batch_threshold: int = 10,
        user_agent: str | None = None,
    ) -> None:
        self.sink = sink
        self.device_ids = device_ids
        self.on_queue_size_changed = on_queue_size_changed
        self.flush_interval_seconds = flush_interval_seconds
        self.batch_threshold = batch_threshold
        self.user_agent = user_agent
        self._buffer: list[ScanEvent] = []
        self._device_id: str | None = None
        self._flush_lock = asyncio.Lock()
        self._timer_task: asyncio.Task | None = None
        self._scheduled: set[asyncio.Task] = set()

    @classmethod
    def create(cls, sink: ScanSink, **kwargs) -> ScanQueue:
        queue = cls(sink, **kwargs)
        queue.start()
        return queue

    def start(self) -> None:
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.get_running_loop().create_task(self._run_timer())

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_seconds)
            self._schedule_flush()

    def _notify(self) -> None:
        if self.on_queue_size_changed is not None:
            self.on_queue_size_changed(len(self._buffer))

    def _get_device_id(self) -> str:
        if self._device_id is None:
            self._device_id = resolve_device_id(self.device_ids, self.user_agent)
        return self._device_id

    def add(self, scan: ScanInput, manual_entry: bool) -> ScanEvent:
        # Checked before buffering so a rejected scan is never half-queued.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise RuntimeError('ScanQueue.add must be called from a running event loop') from exc

        event = ScanEvent(
            id=str(uuid.uuid4()),
            client_scan_id=new_client_scan_id(),
            barcode=scan.barcode,
            rack_id=scan.rack_id,
            audit_session_id=scan.audit_session_id,
            scanner_id=scan.scanner_id,
            manual_entry=manual_entry,
            device_id=self._get_device_id(),
        )
        self._buffer.append(event)
        self._notify()

        if len(self._buffer) >= self.batch_threshold:
            self._schedule_flush(loop)
        return event

    def _schedule_flush(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        task = (loop or asyncio.get_running_loop()).create_task(self.flush())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)

    async def flush(self) -> bool:
        async with self._flush_lock:
            if not self._buffer:
                return True

            batch = self._buffer
            self._buffer = []
            self._notify()

            try:
                await self.sink.insert(batch)
            except asyncio.CancelledError:
                self._buffer[:0] = batch
                self._notify()
                raise
            except Exception:
                logger.exception('Flush of %d scans failed, re-queueing', len(batch))
                self._buffer[:0] = batch
                self._notify()
                return False

            logger.info('Flushed %d scans successfully', len(batch))
            self._notify()
            return True

    def get_queue_size(self) -> int:
        return len(self._buffer)

    async def handle_unload(self) -> bool:
        return await self.flush()

    async def destroy(self) -> bool:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        return await self.flush()
