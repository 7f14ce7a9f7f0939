from __future__ import annotations

import logging
import re
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from stock_audit.services.scan_queue import ScanEvent, ScanInput, ScanQueue

logger = logging.getLogger(__name__)

RAPID_KEYSTROKE_SECONDS = 0.05
MIN_SCAN_INTERVAL_SECONDS = 1.0
RECENT_SCAN_LIMIT = 20
_LINE_BREAKS = re.compile(r'[\r\n]')


def validate_barcode(code: str, *, min_digits: int = 10, max_digits: int = 11) -> bool:
    return re.fullmatch(rf'[0-9]{{{min_digits},{max_digits}}}', code) is not None


@dataclass(frozen=True)
class ScanCandidate:
    barcode: str
    manual_entry: bool


class ScanInputClassifier:
    """Tells a hardware scanner apart from a person typing.

    Scanners emit the whole barcode in a burst followed by a line break; every
    keystroke of the burst arrives less than ``rapid_threshold_seconds`` after
    the previous one. A single slow keystroke marks the entry as manual.
    """

    def __init__(
        self,
        *,
        rapid_threshold_seconds: float = RAPID_KEYSTROKE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rapid_threshold_seconds = rapid_threshold_seconds
        self.clock = clock
        self._value = ''
        self._last_keystroke_at: float | None = None
        self._saw_slow_keystroke = False

    def _reset(self) -> None:
        self._value = ''
        self._last_keystroke_at = None
        self._saw_slow_keystroke = False

    def feed(self, value: str) -> ScanCandidate | None:
        now = self.clock()
        if len(value) > len(self._value) and self._last_keystroke_at is not None:
            if now - self._last_keystroke_at >= self.rapid_threshold_seconds:
                self._saw_slow_keystroke = True
        self._last_keystroke_at = now
        self._value = value

        if not _LINE_BREAKS.search(value):
            return None
        barcode = _LINE_BREAKS.sub('', value).strip()
        manual_entry = self._saw_slow_keystroke
        self._reset()
        if not barcode:
            return None
        return ScanCandidate(barcode=barcode, manual_entry=manual_entry)

    def press_enter(self) -> ScanCandidate | None:
        barcode = self._value.strip()
        self._reset()
        if not barcode:
            return None
        return ScanCandidate(barcode=barcode, manual_entry=True)


class ScanRateLimited(ValueError):
    pass


class ScanRateLimiter:
    def __init__(
        self,
        *,
        min_interval_seconds: float = MIN_SCAN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock
        self._last_at: float | None = None

    def check(self) -> None:
        if self._last_at is not None and self.clock() - self._last_at < self.min_interval_seconds:
            raise ScanRateLimited('Please wait 1 second between scans')

    def record(self) -> None:
        self._last_at = self.clock()


class RecentBarcodes:
    """Recent barcodes for one rack; a repeat scan warns once per barcode."""

    def __init__(self, limit: int = RECENT_SCAN_LIMIT) -> None:
        self._recent: deque[str] = deque(maxlen=limit)
        self._warned: set[str] = set()

    def note(self, barcode: str) -> bool:
        should_warn = barcode in self._recent and barcode not in self._warned
        if should_warn:
            self._warned.add(barcode)
        self._recent.append(barcode)
        return should_warn


@dataclass(frozen=True)
class ScanOutcome:
    accepted: bool
    event: ScanEvent | None = None
    error: str | None = None
    warning: str | None = None


class ScanStation:
    def __init__(
        self,
        queue: ScanQueue,
        *,
        rack_id: int,
        audit_session_id: int,
        scanner_id: int,
        min_interval_seconds: float = MIN_SCAN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue = queue
        self.rack_id = rack_id
        self.audit_session_id = audit_session_id
        self.scanner_id = scanner_id
        self.clock = clock
        self.rate_limiter = ScanRateLimiter(min_interval_seconds=min_interval_seconds, clock=clock)
        self.recent = RecentBarcodes()
        self.total_scans = 0
        self._started_at = clock()

    @property
    def scans_per_hour(self) -> int:
        elapsed_hours = (self.clock() - self._started_at) / 3600
        if elapsed_hours <= 0:
            return 0
        return round(self.total_scans / elapsed_hours)

    def process_scan(self, barcode: str, manual_entry: bool) -> ScanOutcome:
        try:
            self.rate_limiter.check()
        except ScanRateLimited as exc:
            return ScanOutcome(accepted=False, error=str(exc))
        if not validate_barcode(barcode):
            return ScanOutcome(accepted=False, error=f'Invalid barcode format: "{barcode}" (must be 10-11 digits)')

        self.rate_limiter.record()
        event = self.queue.add(
            ScanInput(
                barcode=barcode,
                rack_id=self.rack_id,
                audit_session_id=self.audit_session_id,
                scanner_id=self.scanner_id,
            ),
            manual_entry,
        )
        self.total_scans += 1
        warning = None
        if self.recent.note(barcode):
            warning = f'FYI: Multiple scans of "{barcode}" detected. This is normal for items with multiple units.'
        logger.debug('Scanned %s into rack %s', barcode, self.rack_id)
        return ScanOutcome(accepted=True, event=event, warning=warning)

    def process_candidate(self, candidate: ScanCandidate) -> ScanOutcome:
        return self.process_scan(candidate.barcode, candidate.manual_entry)

    async def ready_for_review(self) -> bool:
        flushed = await self.queue.flush()
        return flushed and self.queue.get_queue_size() == 0
