from __future__ import annotations

import csv
import io
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum

import openpyxl
import xlrd
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stock_audit.config import settings
from stock_audit.models import InventoryItem

logger = logging.getLogger(__name__)

# Row 1 of every file is the header, and row numbers shown to users are 1-based.
HEADER_ROW_OFFSET = 2

ITEM_CODE_LENGTH = 5
# Column limits of inventory_items: INTEGER and NUMERIC(14, 4).
MAX_EXPECTED_QUANTITY = 2**31 - 1
MAX_UNIT_COST = 10**10
REQUIRED_COLUMNS = ('item_code', 'barcode', 'brand', 'item_name')
EXPECTED_COLUMNS = (*REQUIRED_COLUMNS, 'expected_quantity', 'unit_cost')
CSV_EXTENSIONS = ('.csv',)
WORKBOOK_EXTENSIONS = ('.xlsx', '.xls')

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    'item_code': ('item_code', 'item code'),
    'barcode': ('barcode',),
    'brand': ('brand',),
    'item_name': ('item_name', 'item name'),
    'expected_quantity': ('expected_quantity', 'expected qty', 'expected_qty'),
    'unit_cost': ('unit_cost', 'unit cost'),
}

_INT_PREFIX = re.compile(r'^\s*([+-]?\d+)')
_FLOAT_PREFIX = re.compile(r'^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)')
_WHITESPACE = re.compile(r'\s+')
# Zero-padded numeric formats such as "00000" or "0000000000000.00".
_PADDED_FORMAT = re.compile(r'^(0+)(?:\.(0+))?$')


class ImportSource(str, Enum):
    CSV = 'csv'
    WORKBOOK = 'workbook'


class ValidationErrorKind(str, Enum):
    MISSING_ITEM_CODE = 'missingItemCode'
    MISSING_BARCODE = 'missingBarcode'
    MISSING_BRAND = 'missingBrand'
    MISSING_ITEM_NAME = 'missingItemName'
    INVALID_ITEM_CODE_LENGTH = 'invalidItemCodeLength'
    INVALID_QUANTITY = 'invalidQuantity'
    INVALID_UNIT_COST = 'invalidUnitCost'


_KIND_LABELS = {
    ValidationErrorKind.MISSING_ITEM_CODE: 'missing item_code',
    ValidationErrorKind.MISSING_BARCODE: 'missing barcode',
    ValidationErrorKind.MISSING_BRAND: 'missing brand',
    ValidationErrorKind.MISSING_ITEM_NAME: 'missing item_name',
    ValidationErrorKind.INVALID_ITEM_CODE_LENGTH: 'item_code not 5 characters',
    ValidationErrorKind.INVALID_QUANTITY: 'invalid expected_quantity',
    ValidationErrorKind.INVALID_UNIT_COST: 'invalid unit_cost',
}


@dataclass(frozen=True)
class InventoryItemInput:
    location_id: int
    item_code: str
    barcode: str
    brand: str
    item_name: str
    expected_quantity: int
    unit_cost: float

    @property
    def key(self) -> str:
        return f'{self.location_id}-{self.barcode}'

    def to_row(self) -> dict:
        return {
            'location_id': self.location_id,
            'item_code': self.item_code,
            'barcode': self.barcode,
            'brand': self.brand,
            'item_name': self.item_name,
            'expected_quantity': self.expected_quantity,
            'unit_cost': self.unit_cost,
        }


@dataclass(frozen=True)
class RowError:
    row_number: int
    kind: ValidationErrorKind
    message: str


@dataclass(frozen=True)
class ParsedSheet:
    headers: list[str]
    rows: list[dict[str, str]]
    source: ImportSource


@dataclass
class ImportPlan:
    items: list[InventoryItemInput]
    row_count: int
    duplicate_count: int
    source: ImportSource = ImportSource.CSV


@dataclass(frozen=True)
class ImportResult:
    imported: int
    duplicates_found: int
    batch_size: int
    total_batches: int

    @property
    def message(self) -> str:
        message = f'Successfully imported {self.imported} inventory items'
        if self.duplicates_found > 0:
            message += f' ({self.duplicates_found} duplicates resolved)'
        return message

    def to_dict(self) -> dict:
        return {
            'success': True,
            'imported': self.imported,
            'duplicates_found': self.duplicates_found,
            'batch_size': self.batch_size,
            'total_batches': self.total_batches,
            'message': self.message,
        }


class InventoryImportError(ValueError):
    def to_dict(self) -> dict:
        return {'error': str(self)}


class ParseError(InventoryImportError):
    def __init__(self, message: str, *, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> dict:
        return {'error': str(self), 'details': self.details}


class ValidationError(InventoryImportError):
    def __init__(
        self,
        *,
        row_errors: list[RowError],
        row_count: int,
        display_cap: int,
        header_hint: str | None = None,
    ) -> None:
        super().__init__('Validation errors found')
        self.row_errors = row_errors
        self.row_count = row_count
        self.errors = [error.message for error in row_errors[:display_cap]]
        self.total_errors = len(row_errors)
        self.stats = dict(Counter(error.kind.value for error in row_errors))
        self.header_hint = header_hint

    @property
    def summary(self) -> str:
        counts = Counter(error.kind for error in self.row_errors)
        parts = [f'{count} {_KIND_LABELS[kind]}' for kind, count in counts.most_common()]
        return f'{self.total_errors} of {self.row_count} rows failed validation: ' + ', '.join(parts)

    def to_dict(self) -> dict:
        payload = {
            'error': str(self),
            'summary': self.summary,
            'details': self.errors,
            'total_errors': self.total_errors,
            'stats': self.stats,
        }
        if self.header_hint:
            payload['header_hint'] = self.header_hint
        return payload


class PersistenceError(InventoryImportError):
    def __init__(
        self,
        message: str,
        *,
        failed_at_batch: int,
        failed_at_row: int,
        total_batches: int,
        committed: int,
        batch_sample: list[dict],
    ) -> None:
        super().__init__(message)
        self.failed_at_batch = failed_at_batch
        self.failed_at_row = failed_at_row
        self.total_batches = total_batches
        self.committed = committed
        self.batch_sample = batch_sample

    def to_dict(self) -> dict:
        return {
            'error': 'Database insert failed',
            'details': str(self),
            'failed_at_batch': self.failed_at_batch,
            'failed_at_row': self.failed_at_row,
            'total_batches': self.total_batches,
            'committed': self.committed,
            'batch_sample': self.batch_sample,
        }


def normalize_header(header: str | None) -> str:
    return _WHITESPACE.sub('_', str(header or '').strip().lower())


def _cell_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _formatted_cell_text(value, number_format: str | None) -> str:
    """Render a numeric workbook cell the way the sheet displays it.

    Only zero-padded formats change the text; everything else falls back to
    ``_cell_text`` so prices and quantities keep their plain rendering.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return _cell_text(value)
    match = _PADDED_FORMAT.match(number_format or '')
    if not match or value < 0 or not math.isfinite(value):
        return _cell_text(value)
    integer_digits = len(match.group(1))
    decimals = len(match.group(2) or '')
    if decimals:
        return f'{value:0{integer_digits + decimals + 1}.{decimals}f}'
    return str(round(value)).zfill(integer_digits)


def _is_blank_row(values) -> bool:
    return all(_cell_text(value).strip() == '' for value in values)


def _rows_from_values(headers: list[str], value_rows) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for values in value_rows:
        if _is_blank_row(values):
            continue
        padded = list(values) + [None] * (len(headers) - len(values))
        rows.append(
            {header: _cell_text(value) for header, value in zip(headers, padded) if header}
        )
    return rows


def parse_csv(text: str) -> ParsedSheet:
    reader = csv.reader(io.StringIO(text))
    try:
        raw_rows = [row for row in reader if not _is_blank_row(row)]
    except csv.Error as exc:
        raise ParseError('CSV parse errors', details=[f'Line {reader.line_num}: {exc}']) from exc

    if not raw_rows:
        raise ParseError('CSV file is empty')

    headers = [normalize_header(name) for name in raw_rows[0]]
    mismatches: list[str] = []
    for index, values in enumerate(raw_rows[1:]):
        row_number = index + HEADER_ROW_OFFSET
        if len(values) > len(headers):
            mismatches.append(f'Row {row_number}: Too many fields: expected {len(headers)}, parsed {len(values)}')
        elif len(values) < len(headers):
            mismatches.append(f'Row {row_number}: Too few fields: expected {len(headers)}, parsed {len(values)}')
    if mismatches:
        raise ParseError('CSV parse errors', details=mismatches)

    return ParsedSheet(headers=headers, rows=_rows_from_values(headers, raw_rows[1:]), source=ImportSource.CSV)


def _read_xlsx(content: bytes) -> tuple[list, list]:
    wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        if len(wb.sheetnames) > 1:
            logger.warning('Workbook has %d sheets, importing only %r', len(wb.sheetnames), wb.sheetnames[0])
        ws = wb[wb.sheetnames[0]]
        all_rows = [
            tuple(_formatted_cell_text(cell.value, getattr(cell, 'number_format', None)) for cell in row)
            for row in ws.iter_rows()
        ]
    finally:
        wb.close()
    if not all_rows:
        return [], []
    return list(all_rows[0]), all_rows[1:]


def _read_xls(content: bytes) -> tuple[list, list]:
    wb = xlrd.open_workbook(file_contents=content, formatting_info=True)
    if wb.nsheets > 1:
        logger.warning('Workbook has %d sheets, importing only %r', wb.nsheets, wb.sheet_names()[0])
    ws = wb.sheet_by_index(0)
    if ws.nrows == 0:
        return [], []

    def cell_text(row_idx: int, col: int) -> str:
        cell = ws.cell(row_idx, col)
        if cell.ctype != xlrd.XL_CELL_NUMBER:
            return _cell_text(cell.value)
        fmt = wb.format_map.get(wb.xf_list[cell.xf_index].format_key)
        return _formatted_cell_text(cell.value, fmt.format_str if fmt else None)

    headers = [cell_text(0, col) for col in range(ws.ncols)]
    rows = [tuple(cell_text(row_idx, col) for col in range(ws.ncols)) for row_idx in range(1, ws.nrows)]
    return headers, rows


def parse_workbook(content: bytes, *, filename: str) -> ParsedSheet:
    try:
        if filename.lower().endswith('.xls'):
            raw_headers, value_rows = _read_xls(content)
        else:
            raw_headers, value_rows = _read_xlsx(content)
    except Exception as exc:
        raise ParseError('Workbook parse errors', details=[str(exc)]) from exc

    if not raw_headers or _is_blank_row(raw_headers):
        raise ParseError('Workbook is empty')

    headers = [normalize_header(_cell_text(name)) for name in raw_headers]
    return ParsedSheet(headers=headers, rows=_rows_from_values(headers, value_rows), source=ImportSource.WORKBOOK)


def parse_inventory_file(filename: str, content: bytes) -> ParsedSheet:
    if len(content) > settings.import_max_file_bytes:
        max_mb = settings.import_max_file_bytes // (1024 * 1024)
        raise ParseError(f'File too large. Maximum size is {max_mb}MB')

    lowered = (filename or '').lower()
    if lowered.endswith(CSV_EXTENSIONS):
        try:
            text = content.decode('utf-8-sig')
        except UnicodeDecodeError as exc:
            raise ParseError('CSV file must be UTF-8 encoded', details=[str(exc)]) from exc
        sheet = parse_csv(text)
    elif lowered.endswith(WORKBOOK_EXTENSIONS):
        sheet = parse_workbook(content, filename=lowered)
    else:
        raise ParseError('Only CSV and Excel files (.csv, .xlsx, .xls) are allowed')

    if not sheet.rows:
        raise ParseError('File contains no data rows')
    return sheet


def _field(row: dict[str, str], name: str, default: str = '') -> str:
    for alias in FIELD_ALIASES[name]:
        value = row.get(alias)
        if value is not None and str(value).strip():
            return str(value).strip()
    return default


def parse_quantity(raw: str) -> int | None:
    match = _INT_PREFIX.match(raw)
    if not match:
        return None
    return int(match.group(1))


def parse_unit_cost(raw: str) -> float | None:
    match = _FLOAT_PREFIX.match(raw)
    if not match:
        return None
    return float(match.group(1))


def validate_row(row: dict[str, str], *, row_number: int, location_id: int) -> InventoryItemInput | RowError:
    item_code = _field(row, 'item_code')
    barcode = _field(row, 'barcode')
    brand = _field(row, 'brand')
    item_name = _field(row, 'item_name')

    if not item_code:
        return RowError(row_number, ValidationErrorKind.MISSING_ITEM_CODE, f'Row {row_number}: Missing item_code')
    if not barcode:
        return RowError(row_number, ValidationErrorKind.MISSING_BARCODE, f'Row {row_number}: Missing barcode')
    if not brand:
        return RowError(row_number, ValidationErrorKind.MISSING_BRAND, f'Row {row_number}: Missing brand')
    if not item_name:
        return RowError(row_number, ValidationErrorKind.MISSING_ITEM_NAME, f'Row {row_number}: Missing item_name')
    if len(item_code) != ITEM_CODE_LENGTH:
        return RowError(
            row_number,
            ValidationErrorKind.INVALID_ITEM_CODE_LENGTH,
            f'Row {row_number}: item_code must be exactly {ITEM_CODE_LENGTH} characters (got {len(item_code)})',
        )

    quantity = parse_quantity(_field(row, 'expected_quantity', '0'))
    if quantity is None or not 0 <= quantity <= MAX_EXPECTED_QUANTITY:
        return RowError(
            row_number,
            ValidationErrorKind.INVALID_QUANTITY,
            f'Row {row_number}: expected_quantity must be a whole number from 0 to {MAX_EXPECTED_QUANTITY}',
        )
    unit_cost = parse_unit_cost(_field(row, 'unit_cost', '0'))
    if unit_cost is None or not math.isfinite(unit_cost) or unit_cost < 0 or round(unit_cost, 4) >= MAX_UNIT_COST:
        return RowError(
            row_number,
            ValidationErrorKind.INVALID_UNIT_COST,
            f'Row {row_number}: unit_cost must be a non-negative number below {MAX_UNIT_COST}',
        )

    return InventoryItemInput(
        location_id=location_id,
        item_code=item_code,
        barcode=barcode,
        brand=brand,
        item_name=item_name,
        expected_quantity=quantity,
        unit_cost=unit_cost,
    )


def header_mismatch_hint(headers: list[str]) -> str | None:
    present = set(headers)
    missing = [name for name in REQUIRED_COLUMNS if not present.intersection(FIELD_ALIASES[name])]
    if not missing:
        return None
    found = ', '.join(header for header in headers if header) or 'none'
    return (
        f"Missing column(s): {', '.join(missing)}. "
        f"Expected headers: {', '.join(EXPECTED_COLUMNS)}. Found: {found}"
    )


def validate_rows(
    rows: list[dict[str, str]], *, location_id: int
) -> tuple[list[tuple[int, InventoryItemInput]], list[RowError]]:
    valid: list[tuple[int, InventoryItemInput]] = []
    row_errors: list[RowError] = []
    for index, row in enumerate(rows):
        row_number = index + HEADER_ROW_OFFSET
        outcome = validate_row(row, row_number=row_number, location_id=location_id)
        if isinstance(outcome, RowError):
            row_errors.append(outcome)
        else:
            valid.append((row_number, outcome))
    return valid, row_errors


def deduplicate(valid: list[tuple[int, InventoryItemInput]]) -> tuple[list[InventoryItemInput], int]:
    items_by_key: dict[str, InventoryItemInput] = {}
    duplicate_count = 0
    for row_number, item in valid:
        if item.key in items_by_key:
            duplicate_count += 1
            logger.warning('Duplicate barcode %s found at row %d, keeping latest', item.barcode, row_number)
        items_by_key[item.key] = item
    return list(items_by_key.values()), duplicate_count


def build_import_plan(sheet: ParsedSheet, *, location_id: int) -> ImportPlan:
    valid, row_errors = validate_rows(sheet.rows, location_id=location_id)
    items, duplicate_count = deduplicate(valid)

    if row_errors:
        hint = header_mismatch_hint(sheet.headers) if sheet.source == ImportSource.WORKBOOK else None
        raise ValidationError(
            row_errors=row_errors,
            row_count=len(sheet.rows),
            display_cap=settings.import_error_display_cap,
            header_hint=hint,
        )
    if not items:
        raise ParseError('No valid inventory items found')
    return ImportPlan(items=items, row_count=len(sheet.rows), duplicate_count=duplicate_count, source=sheet.source)


def choose_batch_size(total: int) -> int:
    if total > 10000:
        return 5000
    if total > 5000:
        return 2000
    return 1000


def _upsert_batch(db: Session, rows: list[dict]) -> int:
    stmt = insert(InventoryItem).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=[InventoryItem.location_id, InventoryItem.barcode],
        set_={
            'item_code': stmt.excluded.item_code,
            'brand': stmt.excluded.brand,
            'item_name': stmt.excluded.item_name,
            'expected_quantity': stmt.excluded.expected_quantity,
            'unit_cost': stmt.excluded.unit_cost,
            'updated_at': func.now(),
        },
    ).returning(InventoryItem.id)
    written = len(db.execute(stmt).all())
    db.commit()
    return written


def persist_inventory_items(db: Session, items: list[InventoryItemInput], *, duplicate_count: int = 0) -> ImportResult:
    batch_size = choose_batch_size(len(items))
    total_batches = (len(items) + batch_size - 1) // batch_size
    committed = 0
    logger.info('Processing %d items in %d batches of %d', len(items), total_batches, batch_size)

    for start in range(0, len(items), batch_size):
        batch_number = start // batch_size + 1
        rows = [item.to_row() for item in items[start : start + batch_size]]
        try:
            committed += _upsert_batch(db, rows)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error('Inventory upsert failed at batch %d/%d: %s', batch_number, total_batches, exc)
            raise PersistenceError(
                str(getattr(exc, 'orig', None) or exc),
                failed_at_batch=batch_number,
                failed_at_row=start + 1,
                total_batches=total_batches,
                committed=committed,
                batch_sample=rows[:2],
            ) from exc

    return ImportResult(
        imported=committed,
        duplicates_found=duplicate_count,
        batch_size=batch_size,
        total_batches=total_batches,
    )


def import_inventory_file(db: Session, *, location_id: int, filename: str, content: bytes) -> ImportResult:
    sheet = parse_inventory_file(filename, content)
    plan = build_import_plan(sheet, location_id=location_id)
    return persist_inventory_items(db, plan.items, duplicate_count=plan.duplicate_count)


def count_inventory_items(db: Session, *, location_id: int) -> int:
    return db.execute(
        select(func.count()).select_from(InventoryItem).where(InventoryItem.location_id == location_id)
    ).scalar_one()
