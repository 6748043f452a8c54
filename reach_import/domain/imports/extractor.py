"""
Entity extraction: intermediate records -> branches, routes, customers, visits.

A single pass builds one ordered dict per entity, keyed by the entity's
natural key. The first record seen for a key fixes the entity's identity and
its position in the output. Later records may only fill fields that are still
empty (visits are the exception: their non-key fields take the last value
seen). The preview screen and the persistence step both go through
``extract_entities`` so their counts cannot drift apart.
"""
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from reach_import.api.schemas.shared import EntityPreview, PreviewStats
from reach_import.core.config import settings
from reach_import.domain.imports.errors import ImportCancelled
from reach_import.domain.imports.progress import CancelToken, is_cancelled
from reach_import.domain.imports.transformer import IntermediateRecord

logger = logging.getLogger(__name__)

UNASSIGNED_BRANCH = "Unassigned"
UNMAPPED_ROUTE = "(Unmapped Route)"
DEFAULT_WEEK_NUMBER = 1
DEFAULT_DAY_NAME = "Sunday"

_WHITESPACE = re.compile(r"\s+")

# Customer fields merged non-destructively after first sighting.
_CUSTOMER_UPGRADE_FIELDS = (
    "name_ar", "address", "phone", "classification", "vat", "district", "buyer_id", "store_type",
)


@dataclass
class Branch:
    code: str
    name: str
    region: Optional[str] = None
    is_active: bool = True
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def coordinates(self) -> Optional[Dict[str, float]]:
        if self.lat is None or self.lng is None:
            return None
        return {"lat": self.lat, "lng": self.lng}

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Route:
    branch_code: str
    name: str
    rep_code: Optional[str] = None
    rep_codes: List[str] = field(default_factory=list)  # Distinct, first-seen order

    @property
    def rep_count(self) -> int:
        return len(self.rep_codes)

    def as_row(self) -> Dict[str, Any]:
        return {"branch_code": self.branch_code, "name": self.name, "rep_code": self.rep_code}


@dataclass
class Customer:
    branch_code: str
    client_code: str  # The resolved client key, see resolve_client_key
    name_en: str
    name_ar: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    classification: Optional[str] = None
    vat: Optional[str] = None
    district: Optional[str] = None
    buyer_id: Optional[str] = None
    store_type: Optional[str] = None

    @property
    def customer_key(self) -> str:
        return customer_key(self.branch_code, self.client_code)

    @property
    def has_valid_coordinates(self) -> bool:
        return is_valid_coordinate_pair(self.lat, self.lng)

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Visit:
    branch_code: str
    route_name: str
    customer_key: str
    week_number: int
    day_name: str
    visit_order: Optional[int] = None
    rep_code: Optional[str] = None

    @property
    def natural_key(self) -> Tuple[str, str, int, str]:
        return (self.route_name, self.customer_key, self.week_number, self.day_name)

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExtractionStats:
    total_records: int = 0
    missing_gps_count: int = 0
    distinct_rep_codes: int = 0

    def reported_counts(self, entities: "ExtractedEntities") -> Dict[str, int]:
        """Counts as shown to operators; routes are counted by distinct rep code."""
        return {
            "branches": len(entities.branches),
            "routes": self.distinct_rep_codes,
            "customers": len(entities.customers),
            "visits": len(entities.visits),
        }


@dataclass
class ExtractedEntities:
    branches: List[Branch] = field(default_factory=list)
    routes: List[Route] = field(default_factory=list)
    customers: List[Customer] = field(default_factory=list)
    visits: List[Visit] = field(default_factory=list)
    stats: ExtractionStats = field(default_factory=ExtractionStats)

    def entity_counts(self) -> Dict[str, int]:
        return {
            "branches": len(self.branches),
            "routes": len(self.routes),
            "customers": len(self.customers),
            "visits": len(self.visits),
        }

    def reported_counts(self) -> Dict[str, int]:
        return self.stats.reported_counts(self)


def is_valid_coordinate_pair(lat: Optional[float], lng: Optional[float]) -> bool:
    """(0, 0) is the placeholder for missing geodata, not a real position."""
    if lat is None or lng is None:
        return False
    return not (lat == 0 and lng == 0)


def _escape_key_part(value: str) -> str:
    return value.replace("\\", "\\\\").replace("|", "\\|")


def customer_key(branch_code: str, client_key: str) -> str:
    """``branch|client`` with ``\\`` and ``|`` escaped inside each part so distinct pairs never collide."""
    return f"{_escape_key_part(branch_code)}|{_escape_key_part(client_key)}"


def _collapse(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def resolve_branch_identity(record: IntermediateRecord) -> Tuple[str, str]:
    """
    Return ``(code, name)`` for the record's branch.

    Codes are upper-cased. Without a code the whitespace-collapsed,
    upper-cased name is the code. Without either the record goes to the
    ``Unassigned`` branch.
    """
    if record.branch_code:
        code = _collapse(record.branch_code).upper()
        return code, record.branch_name or code
    if record.branch_name:
        return _collapse(record.branch_name).upper(), record.branch_name
    return UNASSIGNED_BRANCH, UNASSIGNED_BRANCH


def resolve_client_key(record: IntermediateRecord) -> str:
    """client code, then reach customer code, then customer name, then the row number."""
    return (
        record.client_code
        or record.reach_customer_code
        or record.customer_name_en
        or record.customer_name_ar
        or f"ROW-{record.row_number}"
    )


def _merge_customer(customer: Customer, record: IntermediateRecord) -> None:
    if not customer.has_valid_coordinates and is_valid_coordinate_pair(record.lat, record.lng):
        customer.lat = record.lat
        customer.lng = record.lng
    for attr in _CUSTOMER_UPGRADE_FIELDS:
        source = "customer_name_ar" if attr == "name_ar" else attr
        incoming = getattr(record, source)
        if incoming is not None and getattr(customer, attr) is None:
            setattr(customer, attr, incoming)


def _new_customer(branch_code: str, client_key: str, record: IntermediateRecord) -> Customer:
    valid = is_valid_coordinate_pair(record.lat, record.lng)
    return Customer(
        branch_code=branch_code,
        client_code=client_key,
        name_en=record.customer_name_en or record.customer_name_ar or client_key,
        name_ar=record.customer_name_ar,
        lat=record.lat if valid else None,
        lng=record.lng if valid else None,
        address=record.address,
        phone=record.phone,
        classification=record.classification,
        vat=record.vat,
        district=record.district,
        buyer_id=record.buyer_id,
        store_type=record.store_type,
    )


def _assign_branch_centroids(branches: Dict[str, Branch], customers: Sequence[Customer]) -> None:
    sums: Dict[str, List[float]] = {}
    for customer in customers:
        if not customer.has_valid_coordinates:
            continue
        acc = sums.setdefault(customer.branch_code, [0.0, 0.0, 0.0])
        acc[0] += customer.lat
        acc[1] += customer.lng
        acc[2] += 1
    for code, (lat_sum, lng_sum, count) in sums.items():
        branch = branches.get(code)
        if branch is not None:
            branch.lat = round(lat_sum / count, 6)
            branch.lng = round(lng_sum / count, 6)


def extract_entities(
    records: Sequence[IntermediateRecord],
    cancel_token: Optional[CancelToken] = None,
    check_every: Optional[int] = None,
) -> ExtractedEntities:
    """Deduplicate the records into the four entity lists plus stats."""
    interval = max(1, check_every or settings.import_yield_every_rows)

    branches: Dict[str, Branch] = {}
    routes: Dict[Tuple[str, str], Route] = {}
    customers: Dict[Tuple[str, str], Customer] = {}
    visits: Dict[Tuple[str, str, int, str], Visit] = {}
    rep_codes: Dict[str, None] = {}
    # Branches whose name so far is only their code.
    unnamed_branches: Set[str] = set()

    for index, record in enumerate(records):
        if index % interval == 0 and is_cancelled(cancel_token):
            logger.info("Entity extraction cancelled after %d of %d records", index, len(records))
            raise ImportCancelled()

        branch_code, branch_name = resolve_branch_identity(record)
        branch = branches.get(branch_code)
        if branch is None:
            branch = Branch(code=branch_code, name=branch_name, region=record.region)
            branches[branch_code] = branch
            if not record.branch_name and branch_code != UNASSIGNED_BRANCH:
                unnamed_branches.add(branch_code)
        else:
            if branch.region is None and record.region is not None:
                branch.region = record.region
            if branch_code in unnamed_branches and record.branch_name:
                branch.name = record.branch_name
                unnamed_branches.discard(branch_code)

        route_name = record.route_name or UNMAPPED_ROUTE
        route = routes.get((branch_code, route_name))
        if route is None:
            route = Route(branch_code=branch_code, name=route_name, rep_code=record.rep_code)
            routes[(branch_code, route_name)] = route
        elif route.rep_code is None and record.rep_code is not None:
            route.rep_code = record.rep_code
        if record.rep_code:
            rep_codes[record.rep_code] = None
            if record.rep_code not in route.rep_codes:
                route.rep_codes.append(record.rep_code)

        client_key = resolve_client_key(record)
        key = customer_key(branch_code, client_key)
        customer = customers.get((branch_code, client_key))
        if customer is None:
            customers[(branch_code, client_key)] = _new_customer(branch_code, client_key, record)
        else:
            _merge_customer(customer, record)

        visit = Visit(
            branch_code=branch_code,
            route_name=route_name,
            customer_key=key,
            week_number=record.week_number if record.week_number is not None else DEFAULT_WEEK_NUMBER,
            day_name=record.day_name or DEFAULT_DAY_NAME,
            visit_order=record.visit_order,
            rep_code=record.rep_code,
        )
        existing = visits.get(visit.natural_key)
        if existing is None:
            visits[visit.natural_key] = visit
        else:
            existing.visit_order = visit.visit_order
            existing.rep_code = visit.rep_code

    customer_list = list(customers.values())
    _assign_branch_centroids(branches, customer_list)

    stats = ExtractionStats(
        total_records=len(records),
        missing_gps_count=sum(1 for customer in customer_list if not customer.has_valid_coordinates),
        distinct_rep_codes=len(rep_codes),
    )
    entities = ExtractedEntities(
        branches=list(branches.values()),
        routes=list(routes.values()),
        customers=customer_list,
        visits=list(visits.values()),
        stats=stats,
    )
    logger.info(
        "Extracted %d branches, %d routes (%d distinct reps), %d customers, %d visits from %d records",
        len(entities.branches),
        len(entities.routes),
        stats.distinct_rep_codes,
        len(entities.customers),
        len(entities.visits),
        stats.total_records,
    )
    return entities


def build_preview_stats(entities: ExtractedEntities, sample_size: Optional[int] = None) -> PreviewStats:
    """Summarize extracted entities for the review screen."""
    size = settings.preview_sample_size if sample_size is None else sample_size
    reported = entities.reported_counts()

    def _preview(name: str, items: Sequence[Any], sample: List[Dict[str, Any]]) -> EntityPreview:
        return EntityPreview(count=reported[name], entity_count=len(items), sample=sample)

    route_samples = [
        {**route.as_row(), "rep_count": route.rep_count} for route in entities.routes[:size]
    ]
    return PreviewStats(
        total_rows=entities.stats.total_records,
        branches=_preview("branches", entities.branches, [b.as_row() for b in entities.branches[:size]]),
        routes=_preview("routes", entities.routes, route_samples),
        customers=_preview("customers", entities.customers, [c.as_row() for c in entities.customers[:size]]),
        visits=_preview("visits", entities.visits, [v.as_row() for v in entities.visits[:size]]),
        missing_gps_count=entities.stats.missing_gps_count,
    )
