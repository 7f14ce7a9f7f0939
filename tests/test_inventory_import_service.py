from __future__ import annotations

import io
import unittest
from unittest.mock import MagicMock, patch

import openpyxl
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from stock_audit.config import settings
from stock_audit.services.inventory_import_service import (
    ImportSource,
    InventoryItemInput,
    ParseError,
    PersistenceError,
    ValidationError,
    _formatted_cell_text,
    _upsert_batch,
    build_import_plan,
    choose_batch_size,
    import_inventory_file,
    normalize_header,
    parse_csv,
    parse_inventory_file,
    parse_workbook,
    persist_inventory_items,
)

HEADER = 'item_code,barcode,brand,item_name,expected_quantity,unit_cost'


def _csv(*rows: str, header: str = HEADER) -> str:
    return '\n'.join([header, *rows]) + '\n'


def _plan(text: str, location_id: int = 42):
    return build_import_plan(parse_csv(text), location_id=location_id)


def _items(count: int, location_id: int = 42) -> list[InventoryItemInput]:
    return [
        InventoryItemInput(
            location_id=location_id,
            item_code='AB123',
            barcode=f'{100000000000 + index}',
            brand='Nike',
            item_name=f'Item {index}',
            expected_quantity=1,
            unit_cost=10.0,
        )
        for index in range(count)
    ]


def _xlsx(sheets: dict[str, list[list]]) -> bytes:
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


class ParseTests(unittest.TestCase):
    def test_headers_are_normalized(self) -> None:
        self.assertEqual(normalize_header('  Item Code '), 'item_code')
        self.assertEqual(normalize_header('Expected   Qty'), 'expected_qty')

        sheet = parse_csv('Item Code,Barcode,Brand,Item Name\n\n12345,8901234567890,Nike,Air Max\n\n')

        self.assertEqual(sheet.headers, ['item_code', 'barcode', 'brand', 'item_name'])
        self.assertEqual(sheet.rows, [{'item_code': '12345', 'barcode': '8901234567890', 'brand': 'Nike', 'item_name': 'Air Max'}])
        self.assertEqual(sheet.source, ImportSource.CSV)

    def test_field_count_mismatch_is_a_parse_error(self) -> None:
        with self.assertRaises(ParseError) as ctx:
            parse_csv(_csv('12345,111,Nike,Air,1,2,extra', '12345,222,Nike'))

        self.assertEqual(len(ctx.exception.details), 2)
        self.assertTrue(ctx.exception.details[0].startswith('Row 2: Too many fields'))
        self.assertTrue(ctx.exception.details[1].startswith('Row 3: Too few fields'))

    def test_empty_csv_is_rejected(self) -> None:
        with self.assertRaises(ParseError):
            parse_csv('\n\n')
        with self.assertRaises(ParseError):
            parse_inventory_file('inventory.csv', HEADER.encode('utf-8'))

    def test_unsupported_extension_is_rejected(self) -> None:
        with self.assertRaises(ParseError) as ctx:
            parse_inventory_file('inventory.txt', b'anything')
        self.assertIn('.csv', str(ctx.exception))

    def test_oversize_file_is_rejected(self) -> None:
        with patch.object(settings, 'import_max_file_bytes', 10):
            with self.assertRaises(ParseError) as ctx:
                parse_inventory_file('inventory.csv', _csv('12345,111,Nike,Air,1,2').encode('utf-8'))
        self.assertIn('File too large', str(ctx.exception))

    def test_csv_with_bom_is_decoded(self) -> None:
        sheet = parse_inventory_file('INVENTORY.CSV', ('\ufeff' + _csv('12345,111,Nike,Air,1,2')).encode('utf-8'))
        self.assertEqual(sheet.headers[0], 'item_code')

    def test_workbook_reads_first_sheet_as_text(self) -> None:
        content = _xlsx(
            {
                'Inventory': [
                    ['Item Code', 'Barcode', 'Brand', 'Item Name', 'Expected Quantity', 'Unit Cost'],
                    ['12345', 123456789012, 'Nike', 'Air Max 90', 25, 8999.5],
                    [None, None, None, None, None, None],
                ],
                'Notes': [['ignored'], ['row']],
            }
        )

        with self.assertLogs('stock_audit.services.inventory_import_service', level='WARNING'):
            sheet = parse_workbook(content, filename='inventory.xlsx')

        self.assertEqual(sheet.source, ImportSource.WORKBOOK)
        self.assertEqual(len(sheet.rows), 1)
        self.assertEqual(sheet.rows[0]['barcode'], '123456789012')
        self.assertEqual(sheet.rows[0]['expected_quantity'], '25')
        self.assertEqual(sheet.rows[0]['unit_cost'], '8999.5')

    def test_workbook_keeps_zero_padded_number_formats(self) -> None:
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.append(['Item Code', 'Barcode', 'Brand', 'Item Name', 'Expected Quantity', 'Unit Cost'])
        ws.append([123, 890123456789, 'Nike', 'Air Max', 3, 2.5])
        ws['A2'].number_format = '00000'
        ws['B2'].number_format = '0000000000000'
        buffer = io.BytesIO()
        wb.save(buffer)

        sheet = parse_workbook(buffer.getvalue(), filename='inventory.xlsx')

        self.assertEqual(sheet.rows[0]['item_code'], '00123')
        self.assertEqual(sheet.rows[0]['barcode'], '0890123456789')
        self.assertEqual(sheet.rows[0]['expected_quantity'], '3')
        self.assertEqual(sheet.rows[0]['unit_cost'], '2.5')
        item = build_import_plan(sheet, location_id=1).items[0]
        self.assertEqual(item.item_code, '00123')
        self.assertEqual(item.barcode, '0890123456789')

    def test_padded_format_rendering(self) -> None:
        self.assertEqual(_formatted_cell_text(5, '000'), '005')
        self.assertEqual(_formatted_cell_text(5.0, '00000'), '00005')
        self.assertEqual(_formatted_cell_text(7.5, '000.00'), '007.50')
        self.assertEqual(_formatted_cell_text(2.5, 'General'), '2.5')
        self.assertEqual(_formatted_cell_text(123456, '000'), '123456')
        self.assertEqual(_formatted_cell_text(-4, '00000'), '-4')
        self.assertEqual(_formatted_cell_text('ab', '00000'), 'ab')

    def test_corrupt_workbook_is_a_parse_error(self) -> None:
        with self.assertRaises(ParseError):
            parse_inventory_file('inventory.xlsx', b'not a zip file')


class ValidationTests(unittest.TestCase):
    def test_last_duplicate_row_wins(self) -> None:
        plan = _plan(
            _csv(
                '12345,890123456789,Nike,First,1,10',
                '22222,111111111111,Puma,Other,1,10',
                '12345,890123456789,Nike,Second,2,10',
                '12345, 890123456789 ,Nike,Third,3,10',
            )
        )

        matching = [item for item in plan.items if item.barcode == '890123456789']
        self.assertEqual(len(matching), 1)
        self.assertEqual(matching[0].item_name, 'Third')
        self.assertEqual(matching[0].expected_quantity, 3)
        self.assertEqual(plan.duplicate_count, 2)
        self.assertEqual(len(plan.items), 2)

    def test_same_barcode_in_other_location_is_a_different_key(self) -> None:
        first = _plan(_csv('12345,890123456789,Nike,First,1,10'), location_id=1).items[0]
        second = _plan(_csv('12345,890123456789,Nike,First,1,10'), location_id=2).items[0]
        self.assertNotEqual(first.key, second.key)
        self.assertEqual(first.key, '1-890123456789')

    def test_one_bad_row_rejects_the_whole_file(self) -> None:
        rows = [f'{10000 + index},{200000000000 + index},Brand,Item {index},1,1.5' for index in range(100)]
        rows[56] = '1234,200000000056,Brand,Item 56,1,1.5'

        with self.assertRaises(ValidationError) as ctx:
            _plan(_csv(*rows))

        exc = ctx.exception
        self.assertEqual(exc.errors, ['Row 58: item_code must be exactly 5 characters (got 4)'])
        self.assertEqual(exc.total_errors, 1)
        self.assertEqual(exc.stats, {'invalidItemCodeLength': 1})
        self.assertEqual(exc.row_errors[0].row_number, 58)
        self.assertIn('1 of 100 rows failed validation', exc.summary)

    def test_zero_quantity_and_cost_are_valid(self) -> None:
        item = _plan(_csv('12345,111,Nike,Air,0,0')).items[0]
        self.assertEqual(item.expected_quantity, 0)
        self.assertEqual(item.unit_cost, 0.0)

    def test_negative_quantity_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _plan(_csv('12345,111,Nike,Air,-1,0'))
        self.assertEqual(ctx.exception.stats, {'invalidQuantity': 1})

    def test_negative_or_garbage_cost_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _plan(_csv('12345,111,Nike,Air,1,-0.01', '12346,112,Nike,Air,1,abc'))
        self.assertEqual(ctx.exception.stats, {'invalidUnitCost': 2})

    def test_values_beyond_column_limits_are_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _plan(
                _csv(
                    '12345,111,Nike,Air,99999999999,1',
                    '12346,112,Nike,Air,1,1e999',
                    '12347,113,Nike,Air,1,10000000000',
                    '12348,114,Nike,Air,1,9999999999.99999',
                )
            )
        self.assertEqual(ctx.exception.stats, {'invalidQuantity': 1, 'invalidUnitCost': 3})
        self.assertEqual(ctx.exception.row_errors[0].row_number, 2)

    def test_values_at_column_limits_are_accepted(self) -> None:
        item = _plan(_csv('12345,111,Nike,Air,2147483647,9999999999.9999')).items[0]
        self.assertEqual(item.expected_quantity, 2**31 - 1)
        self.assertEqual(item.unit_cost, 9999999999.9999)

    def test_item_code_must_be_exactly_five_characters(self) -> None:
        for code, valid in (('1234', False), ('123456', False), ('12345', True), ('AB12C', True), ('abcde', True)):
            with self.subTest(code=code):
                text = _csv(f'{code},111,Nike,Air,1,1')
                if valid:
                    self.assertEqual(_plan(text).items[0].item_code, code)
                else:
                    with self.assertRaises(ValidationError) as ctx:
                        _plan(text)
                    self.assertEqual(ctx.exception.stats, {'invalidItemCodeLength': 1})

    def test_fractional_quantity_is_truncated(self) -> None:
        item = _plan(_csv('12345,111,Nike,Air,2.7,12.345')).items[0]
        self.assertEqual(item.expected_quantity, 2)
        self.assertEqual(item.unit_cost, 12.345)

    def test_missing_numeric_columns_default_to_zero(self) -> None:
        plan = _plan('item_code,barcode,brand,item_name\n12345,111,Nike,Air\n')
        self.assertEqual(plan.items[0].expected_quantity, 0)
        self.assertEqual(plan.items[0].unit_cost, 0.0)

    def test_alternate_headers_are_accepted(self) -> None:
        plan = _plan('Item Code,Barcode,Brand,Item Name,Expected Qty,Unit Cost\n12345,111,Nike,Air,4,2.5\n')
        self.assertEqual(plan.items[0].expected_quantity, 4)
        self.assertEqual(plan.items[0].unit_cost, 2.5)

    def test_first_failing_check_short_circuits_the_row(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            _plan(_csv('123,   ,Nike,Air,-5,-5'))
        self.assertEqual(ctx.exception.errors, ['Row 2: Missing barcode'])
        self.assertEqual(ctx.exception.stats, {'missingBarcode': 1})

    def test_literal_errors_are_capped_but_counts_are_not(self) -> None:
        rows = [f'12345,{index},,Air,1,1' for index in range(25)] + ['12345,999,Nike,,1,1']

        with self.assertRaises(ValidationError) as ctx:
            _plan(_csv(*rows))

        exc = ctx.exception
        self.assertEqual(len(exc.errors), settings.import_error_display_cap)
        self.assertEqual(exc.total_errors, 26)
        self.assertEqual(exc.stats, {'missingBrand': 25, 'missingItemName': 1})
        self.assertEqual(exc.to_dict()['details'][0], 'Row 2: Missing brand')
        self.assertNotIn('header_hint', exc.to_dict())

    def test_workbook_header_mismatch_adds_hint(self) -> None:
        content = _xlsx({'Sheet1': [['Code', 'EAN', 'Brand', 'Name'], ['12345', '111', 'Nike', 'Air']]})
        sheet = parse_inventory_file('stock.xlsx', content)

        with self.assertRaises(ValidationError) as ctx:
            build_import_plan(sheet, location_id=1)

        hint = ctx.exception.header_hint
        self.assertIn('item_code', hint)
        self.assertIn('Found: code, ean, brand, name', hint)
        self.assertEqual(ctx.exception.to_dict()['header_hint'], hint)


class PersistenceTests(unittest.TestCase):
    def test_batch_size_scales_with_row_count(self) -> None:
        self.assertEqual(choose_batch_size(1), 1000)
        self.assertEqual(choose_batch_size(5000), 1000)
        self.assertEqual(choose_batch_size(5001), 2000)
        self.assertEqual(choose_batch_size(10000), 2000)
        self.assertEqual(choose_batch_size(10001), 5000)

    @patch('stock_audit.services.inventory_import_service._upsert_batch')
    def test_items_are_written_in_sequential_batches(self, upsert_mock) -> None:
        upsert_mock.side_effect = lambda _db, rows: len(rows)
        db = MagicMock()

        result = persist_inventory_items(db, _items(2500), duplicate_count=3)

        self.assertEqual([len(call.args[1]) for call in upsert_mock.call_args_list], [1000, 1000, 500])
        self.assertEqual(result.imported, 2500)
        self.assertEqual(result.total_batches, 3)
        self.assertEqual(result.batch_size, 1000)
        self.assertEqual(result.message, 'Successfully imported 2500 inventory items (3 duplicates resolved)')

    @patch('stock_audit.services.inventory_import_service._upsert_batch')
    def test_failed_batch_reports_position_and_keeps_earlier_batches(self, upsert_mock) -> None:
        upsert_mock.side_effect = [1000, SQLAlchemyError('deadlock detected'), 500]
        db = MagicMock()

        with self.assertRaises(PersistenceError) as ctx:
            persist_inventory_items(db, _items(2500))

        exc = ctx.exception
        self.assertEqual(exc.failed_at_batch, 2)
        self.assertEqual(exc.failed_at_row, 1001)
        self.assertEqual(exc.total_batches, 3)
        self.assertEqual(exc.committed, 1000)
        self.assertEqual(len(exc.batch_sample), 2)
        self.assertEqual(upsert_mock.call_count, 2)
        db.rollback.assert_called_once()
        self.assertEqual(exc.to_dict()['failed_at_batch'], 2)

    def test_upsert_statement_updates_on_location_and_barcode(self) -> None:
        db = MagicMock()
        db.execute.return_value.all.return_value = [(1,), (2,)]

        written = _upsert_batch(db, [item.to_row() for item in _items(2)])

        self.assertEqual(written, 2)
        db.commit.assert_called_once()
        statement = db.execute.call_args.args[0]
        sql = str(statement.compile(dialect=postgresql.dialect()))
        self.assertIn('ON CONFLICT (location_id, barcode) DO UPDATE', sql)
        self.assertIn('expected_quantity = excluded.expected_quantity', sql)

    @patch('stock_audit.services.inventory_import_service._upsert_batch')
    def test_validation_failure_writes_nothing(self, upsert_mock) -> None:
        content = _csv('12345,111,Nike,Air,1,1', '1234,112,Nike,Air,1,1').encode('utf-8')

        with self.assertRaises(ValidationError):
            import_inventory_file(MagicMock(), location_id=5, filename='inventory.csv', content=content)

        upsert_mock.assert_not_called()

    @patch('stock_audit.services.inventory_import_service._upsert_batch')
    def test_full_import_persists_deduplicated_rows(self, upsert_mock) -> None:
        upsert_mock.side_effect = lambda _db, rows: len(rows)
        content = _csv(
            '12345,111,Nike,Air,1,1',
            '12345,111,Nike,Air v2,2,1',
            '54321,222,Puma,Suede,0,0',
        ).encode('utf-8')

        result = import_inventory_file(MagicMock(), location_id=5, filename='inventory.csv', content=content)

        rows = upsert_mock.call_args.args[1]
        self.assertEqual([row['item_name'] for row in rows], ['Air v2', 'Suede'])
        self.assertTrue(all(row['location_id'] == 5 for row in rows))
        self.assertEqual(result.to_dict()['imported'], 2)
        self.assertEqual(result.duplicates_found, 1)


if __name__ == '__main__':
    unittest.main()
