from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from machina.core.dependencies import get_coordinator
from machina.modules.deployments.coordinator import OrchestrationCoordinator
from machina.modules.deployments.schemas import (
    DeploymentResponse,
    DeploymentLogsResponse,
    DeploymentListResponse,
    DeploymentState,
    DeploymentType,
    LogRecord,
    Pagination,
)
from typing import Iterator, Optional
import json
import logging
import math
import queue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["deployments"])


def _sse(event: str, data: str, event_id: Optional[int] = None) -> str:
    prefix = f"id: {event_id}\n" if event_id is not None else ""
    return f"{prefix}event: {event}\ndata: {data}\n\n"


def _log_event(record: LogRecord) -> str:
    return _sse("log", record.model_dump_json(), record.sequence)


def stream_deployment_logs(
    coordinator: OrchestrationCoordinator,
    deployment_id: str,
    poll_interval: float,
    max_polls: int,
) -> Iterator[str]:
    """
    SSE body: persisted history, then live records from the registry.
    Ends with ``complete`` once the deployment is terminal, or ``error`` when
    it stays silent and non-terminal for ``max_polls`` polls.
    """
    records: "queue.Queue[LogRecord]" = queue.Queue()
    _, history = coordinator.get_logs(deployment_id)
    unsubscribe = coordinator.registry.subscribe(deployment_id, records.put)
    last_sequence = 0
    try:
        for record in history:
            last_sequence = record.sequence
            yield _log_event(record)

        polls = 0
        while True:
            try:
                record = records.get(timeout=poll_interval)
            except queue.Empty:
                record = None
            if record is not None:
                if record.sequence > last_sequence:
                    last_sequence = record.sequence
                    yield _log_event(record)
                continue

            polls += 1
            deployment = coordinator.deployments.get_deployment_by_id(deployment_id)
            if deployment.is_terminal:
                # Live records arrive before the terminal state is written; drain what is left
                while not records.empty():
                    record = records.get_nowait()
                    if record.sequence > last_sequence:
                        last_sequence = record.sequence
                        yield _log_event(record)
                for record in deployment.logs:
                    if record.sequence > last_sequence:
                        last_sequence = record.sequence
                        yield _log_event(record)
                yield _sse("complete", json.dumps({"state": deployment.state.value}))
                return
            if polls >= max_polls:
                logger.warning(f"Log stream for {deployment_id} gave up after {polls} polls")
                yield _sse("error", json.dumps({
                    "message": "Stream timed out waiting for the deployment to finish",
                    "state": deployment.state.value,
                }))
                return
            yield ": keepalive\n\n"
    finally:
        unsubscribe()


@router.get("", response_model=DeploymentListResponse)
async def list_deployments(
    resource_id: Optional[str] = None,
    type: Optional[DeploymentType] = None,
    state: Optional[DeploymentState] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """List deployments, most recent first"""
    items, total = coordinator.deployments.list_deployments(
        resource_id=resource_id,
        deployment_type=type,
        state=state,
        page=page,
        per_page=per_page,
    )
    total_pages = math.ceil(total / per_page) if total else 0
    return DeploymentListResponse(
        data=items,
        pagination=Pagination(
            page=page,
            per_page=per_page,
            total_items=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    return coordinator.deployments.get_deployment_by_id(deployment_id)


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """
    Poll for deployment logs.
    Returns current logs and deployment state.
    """
    deployment, logs = coordinator.get_logs(deployment_id)
    return DeploymentLogsResponse(
        deployment_id=deployment.id,
        logs=logs,
        state=deployment.state,
        has_more=not deployment.is_terminal,
    )


@router.get("/{deployment_id}/logs/stream")
async def stream_logs(
    deployment_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """Server-sent events: one ``log`` event per record, then ``complete``."""
    # 404 before the stream starts
    coordinator.deployments.get_deployment_by_id(deployment_id)
    return StreamingResponse(
        stream_deployment_logs(
            coordinator,
            deployment_id,
            coordinator.settings.stream_poll_interval_sec,
            coordinator.settings.stream_max_polls,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{deployment_id}/cancel", response_model=DeploymentResponse)
async def cancel_deployment(
    deployment_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """Cancel a queued, planning or applying deployment. The running step finishes first."""
    return coordinator.cancel(deployment_id)


@router.post("/{deployment_id}/approve", response_model=DeploymentResponse)
async def approve_deployment(
    deployment_id: str,
    coordinator: OrchestrationCoordinator = Depends(get_coordinator),
):
    """Apply a plan that is awaiting approval"""
    return coordinator.approve(deployment_id)
