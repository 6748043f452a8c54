"""
Pytest configuration and fixtures for the route import tests.

Every test that touches the store gets its own file-backed SQLite database
under ``tmp_path`` so upserts, concurrent batch writes and rollback run
against real SQL.
"""

import os

# The HTTP tests build their own store; never bootstrap the configured database.
os.environ.setdefault("SKIP_DB_INIT", "1")

from typing import Any, Dict, List

import pytest

from reach_import.api.schemas.shared import ColumnMapping
from reach_import.db.session import build_engine
from reach_import.db.storage import EntityStore
from reach_import.db.tables import create_import_tables


ROUTE_HEADERS = [
    "Region Code",
    "Branch",
    "Region",
    "Route Description",
    "User Code",
    "Client Code",
    "Client Description",
    "Client Arabic Description",
    "Latitude",
    "Longitude",
    "Address",
    "Phone",
    "Classification",
    "Week",
    "Day",
    "Visit Order",
]


def _row(values: List[Any]) -> Dict[str, Any]:
    return dict(zip(ROUTE_HEADERS, values))


ROUTE_ROWS = [
    _row(["21", "Jeddah", "West", "R1", "U1", "C001", "Store A", "متجر أ", "21.5", "39.2", "Tahlia St", "0500000001", "A", "W1", "sunday", "1"]),
    _row(["21", "Jeddah", "West", "R1", "U1", "C002", "Store B", None, "0", "0", None, None, "B", "W1", "Sunday", "2"]),
    _row(["21", "Jeddah", "West", "R1", "U2", "C001", "Store A", None, "21.5", "39.2", None, None, None, "W2", "Monday", "1"]),
    _row(["11", "Riyadh", "Central", "R2", "U3", "C100", "Store C", None, "24.7", "46.6", None, None, "A", "W1", "Sunday", "1"]),
    _row(["11", "Riyadh", "Central", "R2", "U3", "C100", "Store C", None, "24.7", "46.6", None, None, "A", "W1", "Sunday", "3"]),
    _row(["11", "Riyadh", "Central", "R2", "U3", None, "Store D", None, "24.8", "46.7", None, None, None, None, None, None]),
]


def make_route_rows(customer_count: int, branches: int = 2, routes_per_branch: int = 3) -> List[Dict[str, Any]]:
    """One row per customer spread over branches and routes."""
    rows = []
    for index in range(customer_count):
        branch = index % branches
        route = index % routes_per_branch
        rows.append(
            _row([
                f"B{branch}",
                f"Branch {branch}",
                "Region",
                f"Route {branch}-{route}",
                f"U{branch}{route}",
                f"C{index:05d}",
                f"Customer {index}",
                None,
                f"{24 + (index % 100) / 1000:.4f}",
                f"{46 + (index % 100) / 1000:.4f}",
                None,
                None,
                None,
                f"W{1 + index % 4}",
                "Sunday",
                str(index % 20 + 1),
            ])
        )
    return rows


@pytest.fixture
def route_headers() -> List[str]:
    return list(ROUTE_HEADERS)


@pytest.fixture
def route_rows() -> List[Dict[str, Any]]:
    return [dict(row) for row in ROUTE_ROWS]


@pytest.fixture
def route_mapping() -> ColumnMapping:
    return ColumnMapping(
        branch_code="Region Code",
        branch_name="Branch",
        region="Region",
        route_name="Route Description",
        rep_code="User Code",
        client_code="Client Code",
        customer_name_en="Client Description",
        customer_name_ar="Client Arabic Description",
        lat="Latitude",
        lng="Longitude",
        address="Address",
        phone="Phone",
        classification="Classification",
        week_number="Week",
        day_name="Day",
        visit_order="Visit Order",
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'reach_import_test.db'}")
    create_import_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> EntityStore:
    return EntityStore(engine)


@pytest.fixture
def route_rows_factory():
    return make_route_rows
