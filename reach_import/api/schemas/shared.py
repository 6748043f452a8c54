import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# One cell of an uploaded row, as decoded upstream.
CellValue = Union[str, int, float, None]
RawRow = Dict[str, CellValue]

# Normalized field keys, in detection priority order.
MAPPING_FIELDS: List[str] = [
    "branch_code",
    "branch_name",
    "region",
    "route_name",
    "rep_code",
    "client_code",
    "reach_customer_code",
    "customer_name_en",
    "customer_name_ar",
    "lat",
    "lng",
    "address",
    "phone",
    "classification",
    "week_number",
    "day_name",
    "visit_order",
    "vat",
    "district",
    "buyer_id",
    "store_type",
]

# Each entry is satisfied when any one of its fields is mapped.
REQUIRED_FIELD_GROUPS: List[List[str]] = [
    ["branch_code", "branch_name"],
    ["route_name"],
    ["client_code"],
    ["customer_name_en"],
    ["lat"],
    ["lng"],
]

# Sentinel the review screen uses for "do not import this field".
SKIP_COLUMN = "SKIP"


class ColumnMapping(BaseModel):
    """Normalized field key -> source column name. Unset fields are ``None``."""
    model_config = ConfigDict(extra="forbid")

    branch_code: Optional[str] = None
    branch_name: Optional[str] = None
    region: Optional[str] = None
    route_name: Optional[str] = None
    rep_code: Optional[str] = None
    client_code: Optional[str] = None
    reach_customer_code: Optional[str] = None
    customer_name_en: Optional[str] = None
    customer_name_ar: Optional[str] = None
    lat: Optional[str] = None
    lng: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    classification: Optional[str] = None
    week_number: Optional[str] = None
    day_name: Optional[str] = None
    visit_order: Optional[str] = None
    vat: Optional[str] = None
    district: Optional[str] = None
    buyer_id: Optional[str] = None
    store_type: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank_means_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and (not value.strip() or value.strip() == SKIP_COLUMN):
            return None
        return value

    def mapped_fields(self) -> Dict[str, str]:
        """Only the fields that point at a source column."""
        return {field: column for field, column in self.model_dump().items() if column is not None}


class MappingValidation(BaseModel):
    is_valid: bool
    missing_required_fields: List[str] = Field(default_factory=list)
    unknown_columns: List[str] = Field(default_factory=list)  # Mapped columns absent from the headers


class ImportStep(str, Enum):
    """Write steps, in execution order."""
    RAW_BACKUP = "raw_backup"
    BRANCHES = "branches"
    ROUTES = "routes"
    CUSTOMERS = "customers"
    VISITS = "visits"


STEP_NAMES: Dict[ImportStep, str] = {
    ImportStep.RAW_BACKUP: "Backing up raw upload",
    ImportStep.BRANCHES: "Syncing branches",
    ImportStep.ROUTES: "Syncing routes",
    ImportStep.CUSTOMERS: "Syncing customers",
    ImportStep.VISITS: "Syncing visit schedule",
}


class ImportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {ImportStatus.COMPLETE, ImportStatus.ERROR, ImportStatus.CANCELLED}


class ProgressEvent(BaseModel):
    """Immutable snapshot emitted after each successful batch write."""
    model_config = ConfigDict(frozen=True)

    step: ImportStep
    step_name: str
    percent: int = Field(ge=0, le=100)  # Per-step, not global
    current_count: int
    total_count: int
    batch_id: Optional[str] = None


class EntityPreview(BaseModel):
    count: int  # Reported metric; for routes this is the distinct rep code count
    entity_count: int  # Rows that will be written for this entity
    sample: List[Dict[str, Any]] = Field(default_factory=list)


class PreviewStats(BaseModel):
    """
    Counts shown to the operator before confirming an import.

    ``routes.count`` is the number of distinct rep codes, matching the
    "Active Routes" metric of the history log.
    """
    total_rows: int
    branches: EntityPreview
    routes: EntityPreview
    customers: EntityPreview
    visits: EntityPreview
    missing_gps_count: int = 0


class ImportBatch(BaseModel):
    id: str
    company_id: str
    file_name: Optional[str] = None
    uploader: Optional[str] = None
    raw_row_count: int = 0
    status: ImportStatus = ImportStatus.PENDING
    per_entity_counts: Dict[str, int] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class ImportResult(BaseModel):
    success: bool
    batch_id: str
    status: ImportStatus
    per_entity_counts: Dict[str, int] = Field(default_factory=dict)
    error: Optional[str] = None
    rollback_succeeded: Optional[bool] = None  # None when no rollback was needed


class HistoryLogEntry(BaseModel):
    id: str
    company_id: str
    import_batch_id: str
    file_name: Optional[str] = None
    upload_date: datetime
    record_count: int
    uploader: Optional[str] = None
    type: Literal["ROUTE"] = "ROUTE"
    stats: Dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# HTTP request / response models
# ---------------------------------------------------------------------------

class DetectMappingRequest(BaseModel):
    headers: List[str]


class MappingEditRequest(BaseModel):
    field: str
    source_column: Optional[str] = None


class ValidateMappingRequest(BaseModel):
    mapping: ColumnMapping
    headers: Optional[List[str]] = None
    edits: List[MappingEditRequest] = Field(default_factory=list)


class DetectMappingResponse(BaseModel):
    mapping: ColumnMapping
    validation: MappingValidation


class ParseUploadResponse(BaseModel):
    file_name: str
    headers: List[str]
    rows: List[RawRow]
    row_count: int
    mapping: ColumnMapping
    validation: MappingValidation


class PreviewRequest(BaseModel):
    rows: List[RawRow]
    mapping: ColumnMapping


class StartImportRequest(BaseModel):
    rows: List[RawRow]
    mapping: ColumnMapping
    file_name: Optional[str] = None
    uploader: Optional[str] = None


class ImportStatusResponse(BaseModel):
    batch: ImportBatch
    progress: Optional[ProgressEvent] = None
    cancel_requested: bool = False


class HistoryListResponse(BaseModel):
    company_id: str
    entries: List[HistoryLogEntry]
    limit: int
    offset: int


class EntityStatsResponse(BaseModel):
    company_id: str
    branches: int = 0
    routes: int = 0
    customers: int = 0
    visits: int = 0
