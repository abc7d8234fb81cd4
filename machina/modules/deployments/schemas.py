from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime, timezone
from enum import Enum


class DeploymentType(str, Enum):
    CREATE = "create"
    REBOOT = "reboot"
    DESTROY = "destroy"
    REFRESH = "refresh"


class DeploymentState(str, Enum):
    QUEUED = "queued"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    APPLYING = "applying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({DeploymentState.SUCCEEDED, DeploymentState.FAILED, DeploymentState.CANCELLED})
ACTIVE_STATES = frozenset(set(DeploymentState) - TERMINAL_STATES)

LogLevel = Literal["info", "warn", "error"]
LogSource = Literal["terraform", "system", "provider"]


class LogRecord(BaseModel):
    """Canonical log envelope. Immutable once published."""
    model_config = ConfigDict(frozen=True)

    deployment_id: str
    sequence: int = Field(ge=1)
    level: LogLevel = "info"
    message: str
    source: LogSource = "system"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ResourceChange(BaseModel):
    address: str
    action: str  # create | update | delete | replace | read
    resource_type: str
    resource_name: str


class PlanSummary(BaseModel):
    resources_to_add: int = 0
    resources_to_change: int = 0
    resources_to_destroy: int = 0
    resource_changes: List[ResourceChange] = []


class DeploymentResponse(BaseModel):
    id: str
    resource_id: str
    type: DeploymentType
    state: DeploymentState
    workspace: Optional[str] = None
    initiated_by: str = "system"
    plan_summary: Optional[PlanSummary] = None
    plan_artifact: Optional[str] = None
    outputs: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    logs: List[LogRecord] = []
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("logs", mode="before")
    @classmethod
    def logs_must_be_envelopes(cls, value):
        # Stored logs are a JSON array of envelopes; a pre-encoded string is rejected
        if value is None:
            return []
        if isinstance(value, (str, bytes)):
            raise ValueError("deployment logs must be a list of log records, not an encoded string")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    class Config:
        from_attributes = True


class DeploymentLogsResponse(BaseModel):
    deployment_id: str
    logs: List[LogRecord]
    state: DeploymentState
    has_more: bool = False


class Pagination(BaseModel):
    page: int
    per_page: int
    total_items: int
    total_pages: int
    has_next: bool
    has_prev: bool


class DeploymentListResponse(BaseModel):
    data: List[DeploymentResponse]
    pagination: Pagination
