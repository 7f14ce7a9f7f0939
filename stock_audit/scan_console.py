from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from stock_audit.config import settings
from stock_audit.services.scan_input_service import ScanStation
from stock_audit.services.scan_queue import DeviceIdStore, ScanQueue
from stock_audit.services.scan_sink import HttpScanSink


def _report_pending(size: int) -> None:
    if size:
        print(f'[pending uploads: {size}]', file=sys.stderr)


async def run_console(*, rack_id: int, audit_session_id: int, scanner_id: int, manual_entry: bool) -> int:
    queue = ScanQueue.create(
        HttpScanSink(),
        device_ids=DeviceIdStore(settings.device_id_path),
        on_queue_size_changed=_report_pending,
        flush_interval_seconds=settings.scan_flush_interval_seconds,
        batch_threshold=settings.scan_batch_threshold,
    )
    station = ScanStation(queue, rack_id=rack_id, audit_session_id=audit_session_id, scanner_id=scanner_id)
    loop = asyncio.get_running_loop()

    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            barcode = line.strip()
            if not barcode:
                continue
            outcome = station.process_scan(barcode, manual_entry=manual_entry)
            if outcome.error:
                print(outcome.error, file=sys.stderr)
            if outcome.warning:
                print(outcome.warning, file=sys.stderr)
    finally:
        await queue.destroy()

    print(f'Scanned {station.total_scans} items, {queue.get_queue_size()} still pending upload')
    return 0 if queue.get_queue_size() == 0 else 1


def main() -> None:
    parser = argparse.ArgumentParser(description='Read barcodes from stdin and upload them as scans for one rack.')
    parser.add_argument('--rack-id', type=int, required=True)
    parser.add_argument('--audit-session-id', type=int, required=True)
    parser.add_argument('--scanner-id', type=int, required=True)
    parser.add_argument('--manual', action='store_true', help='Mark scans as typed by hand rather than scanned.')
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper())
    exit_code = asyncio.run(
        run_console(
            rack_id=args.rack_id,
            audit_session_id=args.audit_session_id,
            scanner_id=args.scanner_id,
            manual_entry=args.manual,
        )
    )
    raise SystemExit(exit_code)


if __name__ == '__main__':
    main()
