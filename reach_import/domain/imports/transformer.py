"""
Row transformer: raw upload rows -> typed intermediate records.

Every raw row produces exactly one record. Nothing is filtered here; values
that cannot be coerced become ``None``. The transformer keeps no state
between calls, so re-running it with an edited mapping regenerates the whole
record set from scratch.
"""
import logging
import math
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

from reach_import.api.schemas.shared import ColumnMapping, RawRow
from reach_import.core.config import settings
from reach_import.domain.imports.errors import ImportCancelled
from reach_import.domain.imports.progress import CancelToken, is_cancelled

logger = logging.getLogger(__name__)

# Arabic-Indic and Extended Arabic-Indic digits, plus the Arabic decimal/thousands separators.
_DIGIT_TRANSLATION = str.maketrans(
    "٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹٫٬",
    "01234567890123456789.,",
)
_FIRST_INTEGER = re.compile(r"\d+")

# Integer columns are 32-bit in the backing store.
_INT_MIN = -(2 ** 31)
_INT_MAX = 2 ** 31 - 1

_STRING_FIELDS = (
    "branch_code", "branch_name", "region", "route_name", "rep_code", "client_code",
    "reach_customer_code", "customer_name_en", "customer_name_ar", "address", "phone",
    "classification", "vat", "district", "buyer_id", "store_type",
)


@dataclass(frozen=True)
class IntermediateRecord:
    """One upload row reshaped into normalized fields."""
    row_number: int  # 1-based position in the upload
    branch_code: Optional[str] = None
    branch_name: Optional[str] = None
    region: Optional[str] = None
    route_name: Optional[str] = None
    rep_code: Optional[str] = None
    client_code: Optional[str] = None
    reach_customer_code: Optional[str] = None
    customer_name_en: Optional[str] = None
    customer_name_ar: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    classification: Optional[str] = None
    week_number: Optional[int] = None
    day_name: Optional[str] = None
    visit_order: Optional[int] = None
    vat: Optional[str] = None
    district: Optional[str] = None
    buyer_id: Optional[str] = None
    store_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def coerce_string(value: Any) -> Optional[str]:
    """Trim; empty and NaN become None; integral floats lose their ``.0``."""
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return str(int(value))
        return repr(value)
    text = str(value).strip()
    return text or None


def _to_number_text(value: str, decimal_comma: bool = False) -> str:
    text = value.translate(_DIGIT_TRANSLATION).strip().replace(" ", "")
    # A single comma with no dot is a decimal comma (e.g. "24,7136"); otherwise commas group thousands.
    if decimal_comma and "," in text and "." not in text and text.count(",") == 1:
        return text.replace(",", ".")
    return text.replace(",", "")


def coerce_float(value: Any, decimal_comma: bool = False) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = _to_number_text(str(value), decimal_comma)
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def coerce_coordinate(value: Any, limit: float) -> Optional[float]:
    number = coerce_float(value, decimal_comma=True)
    if number is None or abs(number) > limit:
        return None
    return number


def coerce_int(value: Any) -> Optional[int]:
    """Whole numbers inside the 32-bit range; anything else is None."""
    number = coerce_float(value)
    if number is None or not number.is_integer():
        return None
    return _bounded_int(int(number))


def _bounded_int(number: int) -> Optional[int]:
    return number if _INT_MIN <= number <= _INT_MAX else None


def coerce_week_number(value: Any) -> Optional[int]:
    """``2``, ``"2"``, ``"W2"`` and ``"Week 2"`` all parse to 2."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return coerce_int(value)
    match = _FIRST_INTEGER.search(str(value).translate(_DIGIT_TRANSLATION).replace(",", ""))
    return _bounded_int(int(match.group())) if match else None


def coerce_day_name(value: Any) -> Optional[str]:
    text = coerce_string(value)
    if text is None:
        return None
    return text.title() if text.isascii() else text


def _cell(row: RawRow, column: Optional[str]) -> Any:
    if column is None:
        return None
    return row.get(column)


def transform_row(row: RawRow, mapping: ColumnMapping, row_number: int) -> IntermediateRecord:
    """Reshape one raw row through the mapping."""
    columns = mapping.model_dump()
    values: Dict[str, Any] = {
        field: coerce_string(_cell(row, columns[field])) for field in _STRING_FIELDS
    }
    values["lat"] = coerce_coordinate(_cell(row, columns["lat"]), 90.0)
    values["lng"] = coerce_coordinate(_cell(row, columns["lng"]), 180.0)
    values["week_number"] = coerce_week_number(_cell(row, columns["week_number"]))
    values["day_name"] = coerce_day_name(_cell(row, columns["day_name"]))
    values["visit_order"] = coerce_int(_cell(row, columns["visit_order"]))
    return IntermediateRecord(row_number=row_number, **values)


def iter_intermediate_records(
    raw_rows: Sequence[RawRow],
    mapping: ColumnMapping,
    cancel_token: Optional[CancelToken] = None,
    check_every: Optional[int] = None,
) -> Iterator[IntermediateRecord]:
    """Lazily transform rows, checking for cancellation every ``check_every`` rows."""
    interval = max(1, check_every or settings.import_yield_every_rows)
    for index, row in enumerate(raw_rows):
        if index % interval == 0 and is_cancelled(cancel_token):
            logger.info("Row transformation cancelled after %d of %d rows", index, len(raw_rows))
            raise ImportCancelled()
        yield transform_row(row, mapping, index + 1)


def transform_rows(
    raw_rows: Sequence[RawRow],
    mapping: ColumnMapping,
    cancel_token: Optional[CancelToken] = None,
    check_every: Optional[int] = None,
) -> List[IntermediateRecord]:
    records = list(iter_intermediate_records(raw_rows, mapping, cancel_token, check_every))
    logger.debug("Transformed %d rows into intermediate records", len(records))
    return records
