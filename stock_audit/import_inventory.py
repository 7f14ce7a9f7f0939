from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from stock_audit.config import settings
from stock_audit.db import SessionLocal
from stock_audit.services.inventory_import_service import InventoryImportError, import_inventory_file


def main() -> None:
    parser = argparse.ArgumentParser(description='Import expected inventory for a location from a CSV or Excel file.')
    parser.add_argument('--location-id', type=int, required=True, help='Location the inventory belongs to.')
    parser.add_argument('path', type=Path, help='Path to a .csv, .xlsx or .xls file.')
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper())
    content = args.path.read_bytes()
    with SessionLocal() as db:
        try:
            result = import_inventory_file(
                db,
                location_id=args.location_id,
                filename=args.path.name,
                content=content,
            )
        except InventoryImportError as exc:
            print(json.dumps(exc.to_dict(), indent=2, default=str), file=sys.stderr)
            raise SystemExit(1) from exc

    print(f'{result.message}: batches={result.total_batches}, batch_size={result.batch_size}')


if __name__ == '__main__':
    main()
