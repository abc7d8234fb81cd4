from fastapi import APIRouter, Depends, status
from machina.core.dependencies import get_coordinator, get_initiator
from machina.modules.deployments.coordinator import OrchestrationCoordinator
from machina.modules.resources.schemas import (
    ResourceCreate,
    ResourceResponse,
    OperationResponse,
    SyncReport,
)
from typing import List, Optional

router = APIRouter(prefix="/resources", tags=["resources"])


@router.post("", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
async def create_resource(
    resource_data: ResourceCreate,
    initiator: str = Depends(get_initiator),
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """Create a resource. Provisioning continues in the background; follow the returned deployment."""
    resource, deployment = coordinator.request_create(resource_data, initiator)
    return OperationResponse(resource=resource, deployment=deployment)


@router.get("", response_model=List[ResourceResponse])
async def list_resources(
    provider: Optional[str] = None,
    include_terminated: bool = True,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    return coordinator.resources.list_resources(provider=provider, include_terminated=include_terminated)


@router.post("/sync", response_model=SyncReport)
async def sync_resources(
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """Reconcile stored status with each provider's inventory"""
    return coordinator.sync_resources()


@router.get("/{resource_id}", response_model=ResourceResponse)
async def get_resource(
    resource_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    return coordinator.resources.get_resource_by_id(resource_id)


@router.post("/{resource_id}/reboot", response_model=OperationResponse, status_code=status.HTTP_202_ACCEPTED)
async def reboot_resource(
    resource_id: str,
    initiator: str = Depends(get_initiator),
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    deployment = coordinator.request_reboot(resource_id, initiator)
    return OperationResponse(deployment=deployment)


@router.post("/{resource_id}/destroy", response_model=OperationResponse, status_code=status.HTTP_202_ACCEPTED)
async def destroy_resource(
    resource_id: str,
    initiator: str = Depends(get_initiator),
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """Destroy the resource's infrastructure; the workspace is removed once destroy succeeds"""
    deployment = coordinator.request_destroy(resource_id, initiator)
    return OperationResponse(deployment=deployment)


@router.post("/{resource_id}/refresh", response_model=OperationResponse, status_code=status.HTTP_202_ACCEPTED)
async def refresh_resource(
    resource_id: str,
    initiator: str = Depends(get_initiator),
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    deployment = coordinator.request_refresh(resource_id, initiator)
    return OperationResponse(deployment=deployment)
