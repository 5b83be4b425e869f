"""Column mappings between database fields and spreadsheet headers.

Defines:
- SELLER_COLUMN_MAP / BUYER_COLUMN_MAP: internal field name -> sheet header.
- SELLER_FIELD_TYPES / BUYER_FIELD_TYPES: fields needing type conversion
  (date, datetime, number). Unlisted fields are plain text.
- ColumnMapper: stateless bidirectional translation between the two shapes.
- normalize_cell(): canonical string form used when comparing sheet cells.

The header strings are the ones staff see in the sheets, so they are kept
exactly as typed there (including full-width punctuation and newlines).
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from src.brokerage.sync.errors import ColumnMappingError


# ── Seller Sheet (売主リスト) ────────────────────────────────────────────────

SELLER_COLUMN_MAP: dict[str, str] = {
    "seller_number": "売主番号",
    "name": "名前(漢字のみ）",
    "property_address": "物件所在地",
    "phone_number": "電話番号\nハイフン不要",
    "email": "メールアドレス",
    "site": "サイト",
    "status": "状況（売主）",
    "confidence": "確度",
    "valuation_amount_1": "査定額1",
    "valuation_amount_2": "査定額2",
    "valuation_amount_3": "査定額3",
    "visit_date": "訪問日 Y/M/D",
    "visit_time": "訪問時間",
    "visit_acquirer": "訪問査定取得者",
    "phone_assignee": "電話担当（任意）",
    "contact_method": "連絡方法",
    "inquiry_date": "反響日付",
}

SELLER_FIELD_TYPES: dict[str, str] = {
    "valuation_amount_1": "number",
    "valuation_amount_2": "number",
    "valuation_amount_3": "number",
    "visit_date": "date",
    "inquiry_date": "date",
}


# ── Buyer Sheet (買主リスト) ─────────────────────────────────────────────────

BUYER_COLUMN_MAP: dict[str, str] = {
    "buyer_number": "買主番号",
    "name": "●氏名・会社名",
    "phone_number": "●電話番号\n（ハイフン不要)",
    "email": "●メアド",
    "property_number": "物件番号",
    "latest_status": "★最新状況",
    "inquiry_source": "●問合せ元",
    "reception_date": "受付日",
    "desired_area": "★エリア",
    "price": "価格",
    "budget": "予算",
    "next_call_date": "★次電日",
    "viewing_date": "●内覧日(最新）",
    "initial_assignee": "初動担当",
    "inquiry_notes": "●問合時ヒアリング",
}

BUYER_FIELD_TYPES: dict[str, str] = {
    "reception_date": "date",
    "next_call_date": "date",
    "viewing_date": "date",
    "price": "number",
    "budget": "number",
}


# ── Value Helpers ───────────────────────────────────────────────────────────

_YMD = re.compile(r"^(\d{4})[/\-](\d{1,2})[/\-](\d{1,2})")
_MDY = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})")
_MD = re.compile(r"^(\d{1,2})[/\-](\d{1,2})$")
_YMD_HMS = re.compile(
    r"^(\d{4})[/\-](\d{1,2})[/\-](\d{1,2})[ T]+(\d{1,2}):(\d{2})(?::(\d{2}))?"
)
_NUMBER_NOISE = re.compile(r"[,，円￥\s]")


def normalize_cell(value: Any) -> str:
    """Canonical comparison form for a cell value.

    None and empty strings compare equal, surrounding whitespace is ignored,
    and numerically equal values (150, 150.0, "150") share one form.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, (int, float, Decimal)):
        return _format_number(value)
    text = str(value).strip()
    if not text:
        return ""
    try:
        return _format_number(Decimal(_NUMBER_NOISE.sub("", text)))
    except InvalidOperation:
        return text


def _format_number(value: int | float | Decimal) -> str:
    number = Decimal(str(value))
    if number == number.to_integral_value():
        return str(number.quantize(Decimal(1)))
    return format(number.normalize(), "f")


def _parse_date(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None

    match = _YMD.match(text)
    if match:
        year, month, day = match.groups()
        return f"{year}-{int(month):02d}-{int(day):02d}"

    match = _MDY.match(text)
    if match:
        month, day, year = match.groups()
        return f"{year}-{int(month):02d}-{int(day):02d}"

    # Year omitted on the sheet -- staff type "3/14" for the current year
    match = _MD.match(text)
    if match:
        month, day = match.groups()
        return f"{date.today().year}-{int(month):02d}-{int(day):02d}"

    return None


def _parse_datetime(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None

    match = _YMD_HMS.match(text)
    if match:
        year, month, day, hour, minute, second = match.groups()
        return (
            f"{year}-{int(month):02d}-{int(day):02d}"
            f"T{int(hour):02d}:{minute}:{second or '00'}"
        )

    try:
        return datetime.fromisoformat(text).isoformat()
    except ValueError:
        return None


def _parse_number(value: Any) -> float | int | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    text = _NUMBER_NOISE.sub("", str(value))
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return int(number) if number.is_integer() else number


# ── Mapper ──────────────────────────────────────────────────────────────────


class ColumnMapper:
    """Bidirectional field <-> header translation for one sheet.

    Holds no state beyond the immutable mapping tables, so a single instance
    can be shared by the writer, the conflict resolver and the services.

    Args:
        column_map: Internal field name -> sheet header.
        field_types: Field name -> "date" | "datetime" | "number".
        key_field: Field holding the business key used to locate rows.
    """

    def __init__(
        self,
        column_map: dict[str, str],
        field_types: dict[str, str] | None = None,
        key_field: str | None = None,
    ) -> None:
        self._field_to_column = dict(column_map)
        self._column_to_field = {header: field for field, header in column_map.items()}
        self._field_types = dict(field_types or {})
        if key_field is not None and key_field not in self._field_to_column:
            raise ColumnMappingError(f"Key field '{key_field}' has no column mapping")
        self._key_field = key_field

    @property
    def key_field(self) -> str:
        if self._key_field is None:
            raise ColumnMappingError("No business key field configured")
        return self._key_field

    @property
    def key_column(self) -> str:
        return self._field_to_column[self.key_field]

    def sheet_column_for(self, field_name: str) -> str | None:
        """Sheet header for an internal field, or None when unmapped."""
        return self._field_to_column.get(field_name)

    def field_for_column(self, header: str) -> str | None:
        """Internal field for a sheet header, or None when unmapped."""
        return self._column_to_field.get(header)

    def mapped_fields(self) -> list[str]:
        return list(self._field_to_column)

    def mapped_columns(self, headers: list[str]) -> list[str]:
        """Headers from the given row that this mapper knows about."""
        return [header for header in headers if header in self._column_to_field]

    def has_column(self, field_name: str, headers: list[str]) -> bool:
        header = self._field_to_column.get(field_name)
        return header is not None and header in headers

    def column_index(self, field_name: str, headers: list[str]) -> int:
        """0-based column position of a field in the header row, -1 if absent."""
        header = self._field_to_column.get(field_name)
        if header is None or header not in headers:
            return -1
        return headers.index(header)

    def column_letter(self, field_name: str, headers: list[str]) -> str | None:
        index = self.column_index(field_name, headers)
        if index < 0:
            return None
        return column_letter(index)

    def format_value(self, field_name: str, value: Any) -> Any:
        """Render a database value the way it is written to the sheet."""
        if value is None:
            return ""

        field_type = self._field_types.get(field_name)

        if field_type == "date":
            parsed = _parse_date(value)
            if parsed:
                year, month, day = parsed.split("-")
                return f"{year}/{month}/{day}"
        elif field_type == "datetime":
            parsed = _parse_datetime(value)
            if parsed:
                return datetime.fromisoformat(parsed).strftime("%Y/%m/%d %H:%M:%S")
        elif field_type == "number":
            if isinstance(value, Decimal):
                return float(value)
            return value

        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value

    def parse_value(self, field_name: str, value: Any) -> Any:
        """Convert a raw sheet cell into the database representation."""
        if value is None or value == "":
            return None

        field_type = self._field_types.get(field_name)

        if field_type == "date":
            return _parse_date(value)
        if field_type == "datetime":
            return _parse_datetime(value)
        if field_type == "number":
            return _parse_number(value)

        return str(value).strip()

    def to_sheet(self, record: dict[str, Any]) -> dict[str, Any]:
        """Map a database record to {header: formatted value}.

        Unmapped fields are dropped.
        """
        result: dict[str, Any] = {}
        for field_name, value in record.items():
            header = self._field_to_column.get(field_name)
            if header is not None:
                result[header] = self.format_value(field_name, value)
        return result

    def from_sheet(self, row: dict[str, Any]) -> dict[str, Any]:
        """Map a sheet row {header: value} to {field: parsed value}."""
        result: dict[str, Any] = {}
        for header, value in row.items():
            field_name = self._column_to_field.get(header)
            if field_name is not None:
                result[field_name] = self.parse_value(field_name, value)
        return result


def column_letter(index: int) -> str:
    """0-based column index -> A1 letter (0 -> A, 25 -> Z, 26 -> AA)."""
    letters = ""
    n = index
    while n >= 0:
        letters = chr(n % 26 + 65) + letters
        n = n // 26 - 1
    return letters


def column_index(letters: str) -> int:
    """A1 column letter -> 0-based index (A -> 0, AA -> 26)."""
    result = 0
    for char in letters.upper():
        result = result * 26 + (ord(char) - 64)
    return result - 1


def seller_column_mapper() -> ColumnMapper:
    """Mapper for the seller sheet, keyed by seller_number."""
    return ColumnMapper(SELLER_COLUMN_MAP, SELLER_FIELD_TYPES, key_field="seller_number")


def buyer_column_mapper() -> ColumnMapper:
    """Mapper for the buyer sheet, keyed by buyer_number."""
    return ColumnMapper(BUYER_COLUMN_MAP, BUYER_FIELD_TYPES, key_field="buyer_number")
