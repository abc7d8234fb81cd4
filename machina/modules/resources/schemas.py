from pydantic import BaseModel, Field
from typing import Optional, Dict, List, Literal
from datetime import datetime
from enum import Enum

from machina.modules.deployments.schemas import DeploymentResponse


ProviderType = Literal["digitalocean", "hetzner"]


class ResourceStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REBOOTING = "rebooting"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    ERROR = "error"


class StateSyncStatus(str, Enum):
    PENDING = "pending"
    IN_SYNC = "in_sync"
    DRIFTED = "drifted"
    UNKNOWN = "unknown"


class ResourceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=63)
    provider: ProviderType
    provider_account_id: str
    region: str
    size: str
    image: str
    tags: Dict[str, str] = {}
    ssh_keys: List[str] = []  # Provider-side key ids / fingerprints
    firewall_profile_id: Optional[str] = None
    bootstrap_profile_id: Optional[str] = None
    require_approval: Optional[bool] = None  # None falls back to settings.require_plan_approval


class ResourceResponse(BaseModel):
    id: str
    name: str
    provider: ProviderType
    provider_account_id: str
    region: str
    size: str
    image: str
    tags: Dict[str, str] = {}
    ssh_keys: List[str] = []
    desired_status: ResourceStatus
    actual_status: ResourceStatus
    state_sync_status: StateSyncStatus = StateSyncStatus.PENDING
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    provider_resource_id: Optional[str] = None
    workspace: str
    firewall_profile_id: Optional[str] = None
    bootstrap_profile_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class FirewallRule(BaseModel):
    direction: Literal["inbound", "outbound"]
    protocol: Literal["tcp", "udp", "icmp", "all"]
    port_range_start: int = 0
    port_range_end: int = 0
    source_addresses: Optional[List[str]] = None
    description: Optional[str] = None


class FirewallProfile(BaseModel):
    id: str
    name: str
    rules: List[FirewallRule] = []


class BootstrapProfile(BaseModel):
    id: str
    name: str
    cloud_init_template: Optional[str] = None


class OperationResponse(BaseModel):
    resource: Optional[ResourceResponse] = None
    deployment: DeploymentResponse


class SyncResult(BaseModel):
    resource_id: str
    name: str
    previous_status: ResourceStatus
    new_status: ResourceStatus
    action: str


class SyncReport(BaseModel):
    synced: int
    results: List[SyncResult]
