"""
Column detection for route uploads.

Headers are matched against per-field alias tables (English and Arabic) in two
passes. Exact matches are resolved for every field first, so a fuzzy
substring match can never take a header that exactly matches another field.
Detection and validation are pure; the same headers always produce the same
mapping.
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Set, Tuple

from reach_import.api.schemas.shared import (
    MAPPING_FIELDS,
    REQUIRED_FIELD_GROUPS,
    SKIP_COLUMN,
    ColumnMapping,
    MappingValidation,
)

logger = logging.getLogger(__name__)

FIELD_ALIASES: Dict[str, List[str]] = {
    "branch_code": [
        "branch_code", "branch code", "branchcode", "br_code", "brcode",
        "region_code", "site_code", "depot_code",
        "كود الفرع", "رمز الفرع",
    ],
    "branch_name": [
        "branch", "branch_name", "branch name", "depot", "site", "site_name",
        "الفرع", "اسم الفرع",
    ],
    "region": [
        "region", "region_name", "region_desc", "region description", "area",
        "المنطقة",
    ],
    "route_name": [
        "route", "route_name", "route name", "route_desc", "route description", "route_code",
        "خط السير", "المسار", "اسم المسار",
    ],
    "rep_code": [
        "rep_code", "rep code", "rep", "user_code", "usercode", "salesman", "salesman_code",
        "driver", "driver_code",
        "كود المندوب", "المندوب",
    ],
    "client_code": [
        "client_code", "client code", "customer_code", "customer code", "customer_id",
        "customer id", "cust_code", "code",
        "كود العميل", "رقم العميل",
    ],
    "reach_customer_code": [
        "reach_customer_code", "reach customer code", "rclientcode", "reach_code",
    ],
    "customer_name_en": [
        "customer_name", "customer name", "customer_name_en", "client_name", "client name",
        "client_description", "client_descreption", "name", "customer", "name_en",
    ],
    "customer_name_ar": [
        "customer_name_ar", "name_ar", "arabic_name", "arabic name", "client_arabic",
        "client_arabic_description", "اسم العميل", "الاسم",
    ],
    "lat": ["lat", "latitude", "gps_lat", "y", "خط العرض"],
    "lng": ["lng", "long", "lon", "longitude", "gps_lng", "gps_long", "x", "خط الطول"],
    "address": ["address", "street", "location", "full_address", "العنوان"],
    "phone": ["phone", "mobile", "telephone", "contact", "phone_number", "الهاتف", "الجوال"],
    "classification": ["classification", "class", "category", "customer_class", "segment", "التصنيف"],
    "week_number": ["week", "week_number", "week number", "week_no", "wk", "الاسبوع", "الأسبوع"],
    "day_name": ["day", "day_name", "visit_day", "weekday", "اليوم"],
    "visit_order": ["visit_order", "order", "sequence", "seq", "stop_order", "الترتيب"],
    "vat": ["vat", "vat_number", "vat_no", "tax_number", "tax_id", "الرقم الضريبي"],
    "district": ["district", "neighborhood", "neighbourhood", "الحي"],
    "buyer_id": ["buyer_id", "buyer", "buyer_identification", "buyer identification"],
    "store_type": ["store_type", "store type", "channel", "type", "outlet_type", "نوع المتجر"],
}

# Generic aliases that would match far too many headers as substrings.
_EXACT_ONLY_ALIASES: Set[str] = {
    "name", "code", "type", "route", "customer", "branch", "region", "buyer",
    "contact", "location", "driver", "depot", "site", "week", "order", "area", "class",
}
_MIN_SUBSTRING_ALIAS_LENGTH = 4

_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)


def normalize_header(value: object) -> str:
    """Case-fold and strip separators; Arabic letters are kept."""
    if value is None:
        return ""
    return _NON_WORD.sub("", str(value).casefold())


def _normalized_aliases(field: str) -> List[str]:
    seen: List[str] = []
    for alias in FIELD_ALIASES[field]:
        norm = normalize_header(alias)
        if norm and norm not in seen:
            seen.append(norm)
    return seen


def _substring_candidates() -> List[Tuple[str, str]]:
    """(normalized alias, field) pairs eligible for containment matching, longest alias first."""
    pairs: List[Tuple[str, str]] = []
    for field in MAPPING_FIELDS:
        for alias in _normalized_aliases(field):
            if alias in _EXACT_ONLY_ALIASES or len(alias) < _MIN_SUBSTRING_ALIAS_LENGTH:
                continue
            pairs.append((alias, field))
    field_rank = {field: index for index, field in enumerate(MAPPING_FIELDS)}
    return sorted(pairs, key=lambda pair: (-len(pair[0]), field_rank[pair[1]], pair[0]))


def detect_column_mapping(headers: Iterable[object]) -> ColumnMapping:
    """
    Propose a source column for every normalized field.

    Pass one assigns exact alias matches field by field. Pass two lets the
    still-unresolved fields claim remaining headers whose normalized form
    contains one of their aliases. Fields nothing matches stay unset.
    """
    normalized_headers: List[Tuple[str, str]] = []
    for header in headers:
        if header is None:
            continue
        norm = normalize_header(header)
        if norm:
            normalized_headers.append((str(header), norm))

    resolved: Dict[str, str] = {}
    claimed: Set[str] = set()

    for field in MAPPING_FIELDS:
        aliases = set(_normalized_aliases(field))
        for header, norm in normalized_headers:
            if header in claimed:
                continue
            if norm in aliases:
                resolved[field] = header
                claimed.add(header)
                break

    for alias, field in _substring_candidates():
        if field in resolved:
            continue
        for header, norm in normalized_headers:
            if header in claimed:
                continue
            if alias in norm:
                resolved[field] = header
                claimed.add(header)
                break

    logger.debug("Detected column mapping for %d headers: %s", len(normalized_headers), resolved)
    return ColumnMapping(**resolved)


def validate_column_mapping(mapping: ColumnMapping, headers: Optional[Iterable[str]] = None) -> MappingValidation:
    """
    Check that every required field group is mapped.

    ``branch_code`` and ``branch_name`` form one group reported as
    ``"branch_code|branch_name"``. When ``headers`` are supplied, mapped
    columns missing from them are reported too.
    """
    mapped = mapping.mapped_fields()
    missing = [
        "|".join(group)
        for group in REQUIRED_FIELD_GROUPS
        if not any(field in mapped for field in group)
    ]

    unknown: List[str] = []
    if headers is not None:
        header_set = {str(header) for header in headers}
        for field in MAPPING_FIELDS:
            column = mapped.get(field)
            if column is not None and column not in header_set and column not in unknown:
                unknown.append(column)

    return MappingValidation(
        is_valid=not missing and not unknown,
        missing_required_fields=missing,
        unknown_columns=unknown,
    )


def apply_mapping_edit(mapping: ColumnMapping, field: str, source_column: Optional[str]) -> ColumnMapping:
    """Return a new mapping with one field reassigned; ``None`` or ``"SKIP"`` unsets it."""
    if field not in MAPPING_FIELDS:
        raise ValueError(f"Unknown mapping field '{field}'")
    value = source_column.strip() if isinstance(source_column, str) else None
    if not value or value == SKIP_COLUMN:
        value = None
    return mapping.model_copy(update={field: value})
