import pytest

from reach_import.api.schemas.shared import ColumnMapping
from reach_import.domain.imports.errors import ImportCancelled
from reach_import.domain.imports.extractor import (
    DEFAULT_DAY_NAME,
    DEFAULT_WEEK_NUMBER,
    UNASSIGNED_BRANCH,
    UNMAPPED_ROUTE,
    build_preview_stats,
    extract_entities,
    resolve_client_key,
)
from reach_import.domain.imports.progress import CancelToken
from reach_import.domain.imports.transformer import IntermediateRecord, transform_rows


def _extract(rows, mapping):
    return extract_entities(transform_rows(rows, mapping))


def test_entity_counts_for_sample_upload(route_rows, route_mapping):
    entities = _extract(route_rows, route_mapping)
    assert [b.code for b in entities.branches] == ["21", "11"]
    assert [(r.branch_code, r.name) for r in entities.routes] == [("21", "R1"), ("11", "R2")]
    assert [c.customer_key for c in entities.customers] == ["21|C001", "21|C002", "11|C100", "11|Store D"]
    assert len(entities.visits) == 5
    assert entities.stats.missing_gps_count == 1


def test_route_count_is_distinct_rep_codes():
    records = [
        IntermediateRecord(row_number=i + 1, branch_code="21", route_name="R1", rep_code=rep, client_code=f"C{i}")
        for i, rep in enumerate(["U1", "U1", "U2"])
    ]
    entities = extract_entities(records)
    assert len(entities.routes) == 1
    assert entities.routes[0].rep_codes == ["U1", "U2"]
    assert entities.routes[0].rep_count == 2
    assert entities.reported_counts()["routes"] == 2


def test_customer_key_fallback_precedence():
    base = dict(row_number=7, customer_name_en="Store X")
    assert resolve_client_key(IntermediateRecord(**base)) == "Store X"
    assert resolve_client_key(IntermediateRecord(reach_customer_code="RC-9", **base)) == "RC-9"
    assert resolve_client_key(IntermediateRecord(client_code="C-1", reach_customer_code="RC-9", **base)) == "C-1"
    assert resolve_client_key(IntermediateRecord(row_number=7)) == "ROW-7"


def test_setting_client_code_changes_the_key_deterministically():
    without = IntermediateRecord(row_number=1, branch_code="21", reach_customer_code="RC-9", customer_name_en="Store X")
    with_code = IntermediateRecord(row_number=1, branch_code="21", client_code="C-1", reach_customer_code="RC-9", customer_name_en="Store X")
    assert extract_entities([without]).customers[0].customer_key == "21|RC-9"
    assert extract_entities([with_code]).customers[0].customer_key == "21|C-1"


def test_zero_zero_coordinates_count_as_missing_gps():
    zero = IntermediateRecord(row_number=1, branch_code="21", client_code="C1", lat=0.0, lng=0.0)
    valid = IntermediateRecord(row_number=2, branch_code="21", client_code="C2", lat=24.7, lng=46.6)
    entities = extract_entities([zero, valid])
    assert entities.stats.missing_gps_count == 1
    assert entities.customers[0].lat is None and entities.customers[0].lng is None


def test_non_destructive_merge_fills_empty_fields_only():
    first = IntermediateRecord(row_number=1, branch_code="21", client_code="C1", customer_name_en="Store", phone="111")
    second = IntermediateRecord(
        row_number=2, branch_code="21", client_code="C1", customer_name_en="Renamed",
        phone=None, address="Main St", lat=24.7, lng=46.6,
    )
    customer = extract_entities([first, second]).customers[0]
    assert customer.name_en == "Store"
    assert customer.phone == "111"
    assert customer.address == "Main St"
    assert (customer.lat, customer.lng) == (24.7, 46.6)


def test_duplicate_visits_collapse_last_seen_wins(route_rows, route_mapping):
    entities = _extract(route_rows, route_mapping)
    visit = next(v for v in entities.visits if v.customer_key == "11|C100")
    assert visit.visit_order == 3


def test_visit_defaults_week_and_day(route_rows, route_mapping):
    entities = _extract(route_rows, route_mapping)
    visit = next(v for v in entities.visits if v.customer_key == "11|Store D")
    assert visit.week_number == DEFAULT_WEEK_NUMBER
    assert visit.day_name == DEFAULT_DAY_NAME


def test_records_without_branch_go_to_unassigned_sentinel():
    entities = extract_entities([IntermediateRecord(row_number=1, client_code="C1")])
    assert entities.branches[0].code == UNASSIGNED_BRANCH
    assert entities.branches[0].name == UNASSIGNED_BRANCH
    assert entities.routes[0].name == UNMAPPED_ROUTE


def test_branch_codes_are_uppercased_and_name_only_branches_use_their_name():
    records = [
        IntermediateRecord(row_number=1, branch_code="jed", client_code="C1"),
        IntermediateRecord(row_number=2, branch_code="JED", client_code="C2"),
        IntermediateRecord(row_number=3, branch_name="Riyadh  North", client_code="C3"),
    ]
    branches = extract_entities(records).branches
    assert [(b.code, b.name) for b in branches] == [("JED", "JED"), ("RIYADH NORTH", "Riyadh  North")]


def test_branch_coordinates_are_customer_centroid():
    records = [
        IntermediateRecord(row_number=1, branch_code="21", client_code="C1", lat=20.0, lng=40.0),
        IntermediateRecord(row_number=2, branch_code="21", client_code="C2", lat=22.0, lng=42.0),
        IntermediateRecord(row_number=3, branch_code="21", client_code="C3", lat=0.0, lng=0.0),
        IntermediateRecord(row_number=4, branch_code="11", client_code="C4"),
    ]
    branches = {b.code: b for b in extract_entities(records).branches}
    assert branches["21"].coordinates == {"lat": 21.0, "lng": 41.0}
    assert branches["11"].coordinates is None


def test_output_is_stable_across_runs(route_rows, route_mapping):
    first = build_preview_stats(_extract(route_rows, route_mapping))
    second = build_preview_stats(_extract(route_rows, route_mapping))
    assert first.model_dump_json() == second.model_dump_json()


def test_preview_stats(route_rows, route_mapping):
    preview = build_preview_stats(_extract(route_rows, route_mapping), sample_size=2)
    assert preview.total_rows == 6
    assert preview.branches.count == 2
    assert preview.routes.count == 3
    assert preview.routes.entity_count == 2
    assert preview.customers.count == 4
    assert preview.visits.count == 5
    assert preview.missing_gps_count == 1
    assert len(preview.customers.sample) == 2
    assert preview.routes.sample[0]["rep_count"] == 2


def test_extraction_depends_only_on_current_mapping(route_rows, route_mapping):
    other = route_mapping.model_copy(update={"client_code": None})
    _extract(route_rows, other)
    assert _extract(route_rows, route_mapping).entity_counts() == _extract(route_rows, route_mapping).entity_counts()
    # Without client codes, customers key on their names instead.
    keys = [c.customer_key for c in _extract(route_rows, other).customers]
    assert keys == ["21|Store A", "21|Store B", "11|Store C", "11|Store D"]


def test_extraction_honours_cancellation(route_rows, route_mapping):
    token = CancelToken()
    token.cancel()
    with pytest.raises(ImportCancelled):
        extract_entities(transform_rows(route_rows, route_mapping), cancel_token=token, check_every=1)


def test_mapping_without_optional_fields():
    mapping = ColumnMapping(branch_name="B", route_name="R", client_code="C", customer_name_en="N", lat="Lat", lng="Lng")
    rows = [{"B": "Dammam", "R": "R9", "C": "X1", "N": "Shop", "Lat": "26.4", "Lng": "50.1"}]
    entities = _extract(rows, mapping)
    assert entities.branches[0].code == "DAMMAM"
    assert entities.visits[0].week_number == 1
    assert entities.reported_counts() == {"branches": 1, "routes": 0, "customers": 1, "visits": 1}


def test_customer_keys_with_separator_characters_stay_distinct():
    records = [
        IntermediateRecord(row_number=1, branch_code="A|B", client_code="C", route_name="R1"),
        IntermediateRecord(row_number=2, branch_code="A", client_code="B|C", route_name="R1"),
    ]
    entities = extract_entities(records)
    assert [(c.branch_code, c.client_code) for c in entities.customers] == [("A|B", "C"), ("A", "B|C")]
    keys = [v.customer_key for v in entities.visits]
    assert len(keys) == 2 and len(set(keys)) == 2


def test_plain_customer_keys_are_branch_and_client_joined():
    customer = extract_entities([IntermediateRecord(row_number=1, branch_code="21", client_code="C001")]).customers[0]
    assert customer.customer_key == "21|C001"


def test_branch_name_filled_from_later_record():
    records = [
        IntermediateRecord(row_number=1, branch_code="21", client_code="C1"),
        IntermediateRecord(row_number=2, branch_code="21", branch_name="Jeddah", client_code="C2"),
        IntermediateRecord(row_number=3, branch_code="21", branch_name="Jeddah Old", client_code="C3"),
    ]
    branch = extract_entities(records).branches[0]
    assert (branch.code, branch.name) == ("21", "Jeddah")
