"""
Tenant-scoped tables for the normalized route import.

Five tables hold import data: one append-only raw snapshot table and the four
normalized entity tables. Each of them carries ``company_id`` and
``import_batch_id`` so that a batch can be rolled back with one delete per
table. ``import_batches`` and ``history_logs`` track the imports themselves.
"""
import logging
from typing import Dict, List

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKeyConstraint,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()


raw_uploads = Table(
    "raw_uploads",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("company_id", String(64), nullable=False),
    Column("import_batch_id", String(36), nullable=False),
    Column("row_number", Integer, nullable=False),
    Column("file_name", String(500)),
    Column("payload", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_raw_uploads_batch", "company_id", "import_batch_id"),
)

branches = Table(
    "branches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("company_id", String(64), nullable=False),
    Column("code", String(255), nullable=False),
    Column("name", String(500), nullable=False),
    Column("region", String(500)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("lat", Float),
    Column("lng", Float),
    Column("import_batch_id", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("company_id", "code", name="uq_branches_company_code"),
    Index("idx_branches_batch", "company_id", "import_batch_id"),
)

routes = Table(
    "routes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("company_id", String(64), nullable=False),
    Column("branch_code", String(255), nullable=False),
    Column("name", String(500), nullable=False),
    Column("rep_code", String(255)),
    Column("import_batch_id", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("company_id", "branch_code", "name", name="uq_routes_company_branch_name"),
    ForeignKeyConstraint(
        ["company_id", "branch_code"],
        ["branches.company_id", "branches.code"],
        name="fk_routes_branch",
    ),
    Index("idx_routes_batch", "company_id", "import_batch_id"),
)

customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("company_id", String(64), nullable=False),
    Column("branch_code", String(255), nullable=False),
    Column("client_code", String(255), nullable=False),
    Column("name_en", String(500), nullable=False),
    Column("name_ar", String(500)),
    Column("lat", Float),
    Column("lng", Float),
    Column("address", Text),
    Column("phone", String(100)),
    Column("classification", String(255)),
    Column("vat", String(100)),
    Column("district", String(255)),
    Column("buyer_id", String(255)),
    Column("store_type", String(255)),
    Column("import_batch_id", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("company_id", "branch_code", "client_code", name="uq_customers_company_branch_client"),
    ForeignKeyConstraint(
        ["company_id", "branch_code"],
        ["branches.company_id", "branches.code"],
        name="fk_customers_branch",
    ),
    Index("idx_customers_batch", "company_id", "import_batch_id"),
)

visits = Table(
    "visits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("company_id", String(64), nullable=False),
    Column("branch_code", String(255), nullable=False),
    Column("route_name", String(500), nullable=False),
    Column("customer_key", String(600), nullable=False),
    Column("week_number", Integer, nullable=False),
    Column("day_name", String(50), nullable=False),
    Column("visit_order", Integer),
    Column("rep_code", String(255)),
    Column("import_batch_id", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint(
        "company_id", "route_name", "customer_key", "week_number", "day_name",
        name="uq_visits_natural_key",
    ),
    Index("idx_visits_batch", "company_id", "import_batch_id"),
)

import_batches = Table(
    "import_batches",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("company_id", String(64), nullable=False),
    Column("file_name", String(500)),
    Column("uploader", String(255)),
    Column("raw_row_count", Integer, nullable=False, default=0),
    Column("status", String(20), nullable=False, default="pending"),
    Column("per_entity_counts", JSON),
    Column("error_message", Text),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Index("idx_import_batches_company_status", "company_id", "status"),
)

history_logs = Table(
    "history_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("company_id", String(64), nullable=False),
    Column("import_batch_id", String(36), nullable=False),
    Column("file_name", String(500)),
    Column("upload_date", DateTime(timezone=True), nullable=False),
    Column("record_count", Integer, nullable=False, default=0),
    Column("uploader", String(255)),
    Column("type", String(20), nullable=False, default="ROUTE"),
    Column("stats", JSON),
    Index("idx_history_logs_company_date", "company_id", "upload_date"),
)


# Natural keys used for upsert conflict resolution, per entity table.
NATURAL_KEYS: Dict[str, List[str]] = {
    "branches": ["company_id", "code"],
    "routes": ["company_id", "branch_code", "name"],
    "customers": ["company_id", "branch_code", "client_code"],
    "visits": ["company_id", "route_name", "customer_key", "week_number", "day_name"],
}

# Write order; rollback walks it backwards.
ENTITY_TABLES: List[str] = ["branches", "routes", "customers", "visits"]

TABLES: Dict[str, Table] = {table.name: table for table in metadata.sorted_tables}


def create_import_tables(engine: Engine) -> None:
    """Create every import table if it doesn't exist."""
    metadata.create_all(engine, checkfirst=True)
    logger.info("Import tables created/verified: %s", ", ".join(sorted(TABLES)))
