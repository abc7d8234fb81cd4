from supabase import Client
from machina.modules.deployments.schemas import (
    DeploymentResponse,
    DeploymentState,
    DeploymentType,
    LogRecord,
    ACTIVE_STATES,
)
from typing import Any, Dict, Iterable, List, Optional, Tuple
from datetime import datetime, timezone
from fastapi import HTTPException
from uuid import uuid4
import logging

logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_deployment_id() -> str:
    return f"dep_{uuid4().hex[:12]}"


class DeploymentService:
    """Persistence for Deployment rows. Single-row updates only."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def create_deployment(
        self,
        resource_id: str,
        deployment_type: DeploymentType,
        state: DeploymentState,
        workspace: Optional[str],
        initiated_by: str,
    ) -> DeploymentResponse:
        """Create a new deployment"""
        now = utcnow_iso()
        row = {
            "id": new_deployment_id(),
            "resource_id": resource_id,
            "type": deployment_type.value,
            "state": state.value,
            "workspace": workspace,
            "initiated_by": initiated_by,
            "logs": [],
            "created_at": now,
        }
        if state == DeploymentState.APPLYING:
            row["started_at"] = now
        try:
            result = self.supabase.table("deployments").insert(row).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create deployment")

            return DeploymentResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_deployment_by_id(self, deployment_id: str) -> DeploymentResponse:
        """Get deployment by ID"""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("id", deployment_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Deployment not found")

            return DeploymentResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def compare_and_set(
        self,
        deployment_id: str,
        expected_state: DeploymentState,
        update_data: Dict[str, Any],
    ) -> Optional[DeploymentResponse]:
        """
        Update the row only if it is still in ``expected_state``.
        Returns the updated deployment, or None when another writer moved it first.
        """
        payload = dict(update_data)
        payload["updated_at"] = utcnow_iso()
        try:
            result = self.supabase.table("deployments")\
                .update(payload)\
                .eq("id", deployment_id)\
                .eq("state", expected_state.value)\
                .execute()
        except Exception as e:
            logger.error(f"Error updating deployment {deployment_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

        if result.data:
            return DeploymentResponse(**result.data[0])
        return None

    def append_logs(self, deployment_id: str, records: Iterable[LogRecord]) -> None:
        """Append validated log envelopes to the persisted history."""
        records = list(records)
        if not records:
            return
        for record in records:
            if not isinstance(record, LogRecord):
                raise TypeError(f"Expected LogRecord, got {type(record).__name__}")
            if record.deployment_id != deployment_id:
                raise ValueError(f"Log record for {record.deployment_id} written to {deployment_id}")
        current = self.get_deployment_by_id(deployment_id)
        existing = [r.model_dump(mode="json") for r in current.logs]
        last_seq = current.logs[-1].sequence if current.logs else 0
        fresh = [r.model_dump(mode="json") for r in records if r.sequence > last_seq]
        if not fresh:
            return
        try:
            self.supabase.table("deployments")\
                .update({"logs": existing + fresh, "updated_at": utcnow_iso()})\
                .eq("id", deployment_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error persisting logs for {deployment_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_deployments(
        self,
        resource_id: Optional[str] = None,
        deployment_type: Optional[DeploymentType] = None,
        state: Optional[DeploymentState] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[DeploymentResponse], int]:
        """List deployments, most recent first. Returns (page_items, total_items)."""
        try:
            query = self.supabase.table("deployments").select("*", count="exact")
            if resource_id:
                query = query.eq("resource_id", resource_id)
            if deployment_type:
                query = query.eq("type", deployment_type.value)
            if state:
                query = query.eq("state", state.value)
            start = (page - 1) * per_page
            result = query.order("created_at", desc=True)\
                .range(start, start + per_page - 1)\
                .execute()
            items = [DeploymentResponse(**row) for row in (result.data or [])]
            total = result.count if result.count is not None else len(items)
            return items, total
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_active_deployments(self) -> List[DeploymentResponse]:
        """Deployments not yet in a terminal state."""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .in_("state", sorted(s.value for s in ACTIVE_STATES))\
                .execute()
            return [DeploymentResponse(**row) for row in (result.data or [])]
        except Exception as e:
            logger.error(f"Error listing active deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
