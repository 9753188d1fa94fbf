from __future__ import annotations

import csv
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from io import BytesIO, StringIO
from typing import Any, Iterable

from dateutil import parser as date_parser

from app.errors import MalformedInput, RowValidationFailure

logger = logging.getLogger(__name__)

SERIAL_EPOCH = date(1899, 12, 30)
DMY_PATTERN = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})")
UNIT_SUFFIX_PATTERN = re.compile(r"\s*[A-Za-z]+\.?$")

DEFAULT_BRANCH = "CHENNAI"
DEFAULT_TECHNOLOGY = "Non Inv"
DEFAULT_STAR_RATING = 3
DEFAULT_TONNAGE = 1.0

DATE_COLUMNS = ("Date", "date")
BRANCH_COLUMNS = ("Branch", "branch", "BRANCH")
ITEM_CODE_COLUMNS = ("Model", "MODEL", "Material", "MATERIAL", "Item Code", "item code", "itemcode")
QUANTITY_COLUMNS = (
    "SKU Opening stock",
    "Total",
    "Billing",
    "BILLING",
    "Final Balance in Products",
    "Sales Qty.",
    "sales qty",
    "salesqty",
    "Avl_Stock",
    "AVL_STOCK",
    "OP_Stock",
    "Transit",
    "TRANSIT",
)
DEMAND_PLAN_COLUMNS = ("Demand Plan",)
OPENING_STOCK_COLUMNS = ("SKU Opening stock",)
GOODS_IN_TRANSIT_COLUMNS = ("Goods in Transit",)
BALANCE_TO_PRODUCE_COLUMNS = ("Final Balance to Produce", "Current Balance to Produce")
MTD_INVOICING_COLUMNS = ("MTD Invoicing",)
CATEGORY_COLUMNS = ("Catg.", "Cat E")
STAR_RATING_COLUMNS = ("Star Rating",)
TONNAGE_COLUMNS = ("Ton",)
TECHNOLOGY_COLUMNS = ("Technology",)

IDENTIFIER_COLUMNS = frozenset(DATE_COLUMNS + BRANCH_COLUMNS + ITEM_CODE_COLUMNS)


@dataclass
class CanonicalRecord:
    date: date
    branch_name: str
    item_code: str
    billing: float = 0.0
    demand_plan: float = 0.0
    opening_stock: float = 0.0
    goods_in_transit: float = 0.0
    final_balance_to_produce: float = 0.0
    mtd_invoicing: float = 0.0
    category: str = ""
    tonnage: float = DEFAULT_TONNAGE
    star_rating: int = DEFAULT_STAR_RATING
    technology: str = DEFAULT_TECHNOLOGY

    @property
    def key(self) -> tuple[date, str, str]:
        return self.date, self.branch_name, self.item_code


@dataclass
class CollectedRecords:
    records: dict[tuple[date, str, str], CanonicalRecord]
    valid_rows: int = 0
    invalid_rows: int = 0
    date_start: date | None = None
    date_end: date | None = None


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\xa0", " ").strip()


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) else number
    raw = _clean_text(value).replace(",", "")
    if not raw:
        return None
    try:
        number = float(raw)
    except ValueError:
        return None
    return None if math.isnan(number) or math.isinf(number) else number


def _first_text(row: dict[str, Any], columns: Iterable[str]) -> str:
    for column in columns:
        value = _clean_text(row.get(column))
        if value:
            return value
    return ""


def _first_number(row: dict[str, Any], columns: Iterable[str], default: float) -> float:
    for column in columns:
        number = _to_number(row.get(column))
        if number:
            return number
    return default


def normalize_date(value: Any, *, today: date | None = None) -> date:
    """Convert a date cell to a calendar date.

    Spreadsheet serials in (1, 100000) count from 1899-12-30 using the
    ``n - 2`` day convention, ``D-M-YYYY`` strings are day first, anything
    else goes through dateutil. Empty or unparseable values become ``today``.
    """
    fallback = today or date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    raw = _clean_text(value)
    if not raw:
        return fallback

    serial = _to_number(raw)
    if serial is not None and 1 < serial < 100000:
        return SERIAL_EPOCH + timedelta(days=int(serial) - 2)

    match = DMY_PATTERN.match(raw)
    if match:
        day, month, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            pass

    try:
        return date_parser.parse(raw).date()
    except (ValueError, OverflowError):
        return fallback


def _parse_quantity(row: dict[str, Any]) -> float:
    """First numeric quantity alias, else the first positive number in the row.

    The fallback skips the date, branch and item columns: serial dates and
    numeric item codes are identifiers, not quantities.
    """
    saw_non_numeric = False
    for column in QUANTITY_COLUMNS:
        raw = row.get(column)
        number = _to_number(raw)
        if number is not None:
            return number
        if _clean_text(raw):
            saw_non_numeric = True

    for column, raw in row.items():
        if column in IDENTIFIER_COLUMNS:
            continue
        number = _to_number(raw)
        if number is not None and number > 0:
            return number

    if saw_non_numeric:
        raise RowValidationFailure("quantity is not numeric")
    return 0.0


def _parse_star_rating(row: dict[str, Any]) -> int:
    raw = _first_text(row, STAR_RATING_COLUMNS).rstrip("*").strip()
    number = _to_number(raw)
    return int(number) if number else DEFAULT_STAR_RATING


def _parse_tonnage(row: dict[str, Any]) -> float:
    raw = UNIT_SUFFIX_PATTERN.sub("", _first_text(row, TONNAGE_COLUMNS))
    return _to_number(raw) or DEFAULT_TONNAGE


def normalize_row(row: dict[str, Any], *, today: date | None = None) -> CanonicalRecord:
    branch_name = (_first_text(row, BRANCH_COLUMNS) or DEFAULT_BRANCH).upper()
    item_code = _first_text(row, ITEM_CODE_COLUMNS).upper()
    if not branch_name:
        raise RowValidationFailure("missing branch name")
    if not item_code:
        raise RowValidationFailure("missing item code")

    quantity = _parse_quantity(row)
    raw_date = next((row[column] for column in DATE_COLUMNS if _clean_text(row.get(column))), None)

    return CanonicalRecord(
        date=normalize_date(raw_date, today=today),
        branch_name=branch_name,
        item_code=item_code,
        billing=quantity,
        demand_plan=_first_number(row, DEMAND_PLAN_COLUMNS, 0.0),
        opening_stock=_first_number(row, OPENING_STOCK_COLUMNS, 0.0),
        goods_in_transit=_first_number(row, GOODS_IN_TRANSIT_COLUMNS, 0.0),
        final_balance_to_produce=_first_number(row, BALANCE_TO_PRODUCE_COLUMNS, 0.0),
        mtd_invoicing=_first_number(row, MTD_INVOICING_COLUMNS, 0.0),
        category=_first_text(row, CATEGORY_COLUMNS),
        tonnage=_parse_tonnage(row),
        star_rating=_parse_star_rating(row),
        technology=_first_text(row, TECHNOLOGY_COLUMNS) or DEFAULT_TECHNOLOGY,
    )


def collect_records(rows: Iterable[dict[str, Any]], *, today: date | None = None) -> CollectedRecords:
    """Normalize rows into one record per (date, branch, item), summing billing."""
    collected = CollectedRecords(records={})
    for row_num, row in enumerate(rows, start=2):
        try:
            record = normalize_row(row, today=today)
        except RowValidationFailure as exc:
            logger.debug("Skipped row %s: %s", row_num, exc)
            collected.invalid_rows += 1
            continue

        existing = collected.records.get(record.key)
        if existing is None:
            collected.records[record.key] = record
        else:
            existing.billing += record.billing
        collected.valid_rows += 1

        if collected.date_start is None or record.date < collected.date_start:
            collected.date_start = record.date
        if collected.date_end is None or record.date > collected.date_end:
            collected.date_end = record.date
    return collected


def _decode_xlsx(content: bytes) -> list[tuple[Any, ...]]:
    from openpyxl import load_workbook

    workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    try:
        return list(workbook.worksheets[0].iter_rows(values_only=True))
    finally:
        workbook.close()


def _decode_xls(content: bytes) -> list[tuple[Any, ...]]:
    import xlrd

    book = xlrd.open_workbook(file_contents=content)
    sheet = book.sheet_by_index(0)
    return [tuple(sheet.row_values(i)) for i in range(sheet.nrows)]


def _decode_csv(content: bytes) -> list[tuple[Any, ...]]:
    try:
        text_value = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        text_value = content.decode("latin-1")
    return [tuple(row) for row in csv.reader(StringIO(text_value))]


DECODERS = {
    ".xlsx": _decode_xlsx,
    ".xlsm": _decode_xlsx,
    ".xls": _decode_xls,
    ".csv": _decode_csv,
}


def read_upload_rows(content: bytes, filename: str, *, max_records: int) -> list[dict[str, Any]]:
    """Decode the first sheet into header-keyed row dicts.

    Blank rows are dropped and anything beyond ``max_records`` data rows is
    truncated. Raises ``MalformedInput`` when no data rows remain.
    """
    suffix = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    decoder = DECODERS.get(suffix)
    if decoder is None:
        raise MalformedInput("Invalid file type. Only XLSX, XLS, and CSV files are allowed.")
    if not content:
        raise MalformedInput("Uploaded file is empty.")

    try:
        raw_rows = decoder(content)
    except Exception as exc:
        raise MalformedInput(f"Could not read spreadsheet: {exc}") from exc

    raw_rows = [row for row in raw_rows if any(_clean_text(v) for v in row)]
    if len(raw_rows) < 2:
        raise MalformedInput("No data found in the uploaded file.")

    if len(raw_rows) - 1 > max_records:
        logger.warning(
            "File %s has %s data rows, limiting to %s", filename, len(raw_rows) - 1, max_records
        )
        raw_rows = raw_rows[: max_records + 1]

    headers = [_clean_text(h) or f"col_{i}" for i, h in enumerate(raw_rows[0], start=1)]
    rows: list[dict[str, Any]] = []
    for raw in raw_rows[1:]:
        rows.append(
            {header: (raw[i] if i < len(raw) and raw[i] is not None else "") for i, header in enumerate(headers)}
        )
    return rows
