"""
HTTP tests for the import router.

The store dependency is overridden with a per-test SQLite store. TestClient
runs background tasks before returning, so a started import has finished by
the time the response is read.
"""
import pytest
from fastapi.testclient import TestClient

from reach_import.api.dependencies import get_cancel_token, get_store, register_run, release_run
from reach_import.api.routers import imports as imports_router
from reach_import.api.schemas.shared import ImportStatus
from reach_import.domain.imports.batches import get_import_batch
from reach_import.domain.imports.pipeline import start_import
from reach_import.main import app
from reach_import.utils.locks import TenantImportLock


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _start_payload(rows, mapping, **extra):
    payload = {
        "rows": rows,
        "mapping": mapping.model_dump(exclude_none=True),
        "file_name": "routes.csv",
        "uploader": "ops@example.com",
    }
    payload.update(extra)
    return payload


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_parse_upload_detects_mapping(client):
    content = (
        "Region Code,Route Description,Client Code,Client Description,Latitude,Longitude\n"
        "21,R1,C001,Store A,21.5,39.2\n"
    ).encode("utf-8")

    response = client.post("/imports/parse", files={"file": ("routes.csv", content, "text/csv")})

    assert response.status_code == 200
    body = response.json()
    assert body["row_count"] == 1
    assert body["rows"][0]["Client Code"] == "C001"
    assert body["mapping"]["branch_code"] == "Region Code"
    assert body["mapping"]["lat"] == "Latitude"
    assert body["validation"]["is_valid"] is True


def test_parse_upload_rejects_unsupported_file(client):
    response = client.post("/imports/parse", files={"file": ("routes.pdf", b"%PDF", "application/pdf")})
    assert response.status_code == 422


def test_detect_and_validate_mapping(client, route_headers):
    detected = client.post("/imports/mapping/detect", json={"headers": route_headers}).json()
    assert detected["validation"]["is_valid"] is True

    response = client.post(
        "/imports/mapping/validate",
        json={
            "mapping": detected["mapping"],
            "headers": route_headers,
            "edits": [{"field": "lat", "source_column": None}, {"field": "phone", "source_column": "Mobile"}],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["mapping"]["lat"] is None
    assert body["validation"]["missing_required_fields"] == ["lat"]
    assert body["validation"]["unknown_columns"] == ["Mobile"]


def test_validate_mapping_rejects_unknown_field(client, route_mapping):
    response = client.post(
        "/imports/mapping/validate",
        json={"mapping": route_mapping.model_dump(), "edits": [{"field": "gps", "source_column": "Latitude"}]},
    )
    assert response.status_code == 422


def test_preview(client, route_rows, route_mapping):
    response = client.post(
        "/imports/preview",
        json={"rows": route_rows, "mapping": route_mapping.model_dump(exclude_none=True)},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_rows"] == 6
    assert body["routes"]["count"] == 3
    assert body["customers"]["count"] == 4
    assert body["missing_gps_count"] == 1


def test_start_import_runs_to_completion(client, store, route_rows, route_mapping):
    response = client.post("/companies/acme/imports", json=_start_payload(route_rows, route_mapping))

    assert response.status_code == 202
    batch_id = response.json()["batch"]["id"]

    status = client.get(f"/imports/{batch_id}").json()
    assert status["batch"]["status"] == "complete"
    assert status["batch"]["per_entity_counts"] == {"branches": 2, "routes": 2, "customers": 4, "visits": 5}
    assert status["progress"]["step"] == "visits"
    assert status["progress"]["percent"] == 100
    assert status["cancel_requested"] is False

    history = client.get("/companies/acme/history").json()
    assert [entry["import_batch_id"] for entry in history["entries"]] == [batch_id]
    assert history["entries"][0]["stats"]["routes"] == 3

    stats = client.get("/companies/acme/stats").json()
    assert stats == {"company_id": "acme", "branches": 2, "routes": 2, "customers": 4, "visits": 5}

    # Finished imports can no longer be cancelled.
    assert client.post(f"/imports/{batch_id}/cancel").status_code == 409


def test_start_import_with_incomplete_mapping_is_rejected(client, route_rows, route_mapping):
    mapping = route_mapping.model_copy(update={"lng": None})
    response = client.post("/companies/acme/imports", json=_start_payload(route_rows, mapping))

    assert response.status_code == 422
    assert "lng" in response.json()["detail"]


def test_start_import_with_no_rows_is_rejected(client, route_mapping):
    response = client.post("/companies/acme/imports", json=_start_payload([], route_mapping))
    assert response.status_code == 422


def test_second_import_for_same_company_conflicts(client, store, route_rows, route_mapping):
    start_import(company_id="acme", raw_rows=route_rows, mapping=route_mapping, store=store)

    response = client.post("/companies/acme/imports", json=_start_payload(route_rows, route_mapping))

    assert response.status_code == 409


def test_cancel_running_import(client, store, route_rows, route_mapping):
    batch = start_import(company_id="acme", raw_rows=route_rows, mapping=route_mapping, store=store)
    _, token = register_run(batch.id)
    try:
        response = client.post(f"/imports/{batch.id}/cancel")
        assert response.status_code == 200
        assert response.json()["cancel_requested"] is True
        assert token.cancelled
        assert client.get(f"/imports/{batch.id}").json()["cancel_requested"] is True
    finally:
        release_run(batch.id)


def test_cancel_orphaned_import_frees_the_company(client, store, route_rows, route_mapping):
    # Pending batch whose worker never ran in this process.
    batch = start_import(company_id="acme", raw_rows=route_rows, mapping=route_mapping, store=store)
    assert client.post("/companies/acme/imports", json=_start_payload(route_rows, route_mapping)).status_code == 409

    response = client.post(f"/imports/{batch.id}/cancel")

    assert response.status_code == 200
    body = response.json()
    assert body["cancel_requested"] is True
    assert body["batch"]["status"] == "cancelled"
    assert body["batch"]["completed_at"] is not None

    retry = client.post("/companies/acme/imports", json=_start_payload(route_rows, route_mapping))
    assert retry.status_code == 202
    retry_id = retry.json()["batch"]["id"]
    assert client.get(f"/imports/{retry_id}").json()["batch"]["status"] == "complete"


def test_cancel_conflicts_while_run_holds_lock_without_token(client, store, route_rows, route_mapping):
    batch = start_import(company_id="acme", raw_rows=route_rows, mapping=route_mapping, store=store)
    with TenantImportLock.hold("acme", batch.id):
        assert client.post(f"/imports/{batch.id}/cancel").status_code == 409
    assert get_import_batch(batch.id, engine=store.engine).status == ImportStatus.PENDING


def test_crashed_background_import_is_marked_failed(store, route_rows, route_mapping, monkeypatch):
    def crash(*args, **kwargs):
        raise RuntimeError("worker died")

    monkeypatch.setattr(imports_router, "run_import", crash)
    batch = start_import(company_id="acme", raw_rows=route_rows, mapping=route_mapping, store=store)
    channel, token = register_run(batch.id)

    imports_router.process_import_in_background(batch, route_rows, route_mapping, store, channel, token)

    failed = get_import_batch(batch.id, engine=store.engine)
    assert failed.status == ImportStatus.ERROR
    assert failed.error_message == "Import crashed: worker died"
    assert get_cancel_token(batch.id) is None
    # The company can import again.
    assert start_import(company_id="acme", raw_rows=route_rows, mapping=route_mapping, store=store).id != batch.id


def test_unknown_batch_returns_404(client):
    assert client.get("/imports/does-not-exist").status_code == 404
    assert client.post("/imports/does-not-exist/cancel").status_code == 404
