from supabase import Client
from machina.modules.resources.schemas import (
    ResourceCreate,
    ResourceResponse,
    ResourceStatus,
    StateSyncStatus,
    FirewallProfile,
    BootstrapProfile,
)
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from fastapi import HTTPException
from uuid import uuid4
import logging

logger = logging.getLogger(__name__)


def new_resource_id() -> str:
    return f"res_{uuid4().hex[:20]}"


class ResourceService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def create_resource(self, resource_data: ResourceCreate, resource_id: str, workspace: str) -> ResourceResponse:
        """Insert a resource that is about to be provisioned"""
        row = resource_data.model_dump(exclude={"require_approval"})
        row.update({
            "id": resource_id,
            "workspace": workspace,
            "desired_status": ResourceStatus.RUNNING.value,
            "actual_status": ResourceStatus.PROVISIONING.value,
            "state_sync_status": StateSyncStatus.PENDING.value,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            result = self.supabase.table("resources").insert(row).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create resource")

            return ResourceResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating resource: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_resource_by_id(self, resource_id: str) -> ResourceResponse:
        try:
            result = self.supabase.table("resources")\
                .select("*")\
                .eq("id", resource_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Resource not found")

            return ResourceResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting resource: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_resources(self, provider: Optional[str] = None, include_terminated: bool = True) -> List[ResourceResponse]:
        try:
            query = self.supabase.table("resources").select("*")
            if provider:
                query = query.eq("provider", provider)
            result = query.order("created_at", desc=True).execute()
            resources = [ResourceResponse(**row) for row in (result.data or [])]
            if not include_terminated:
                resources = [r for r in resources if r.actual_status != ResourceStatus.TERMINATED]
            return resources
        except Exception as e:
            logger.error(f"Error listing resources: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def update_resource(self, resource_id: str, update_data: Dict[str, Any]) -> Optional[ResourceResponse]:
        payload = {
            key: (value.value if isinstance(value, (ResourceStatus, StateSyncStatus)) else value)
            for key, value in update_data.items()
        }
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()
        try:
            result = self.supabase.table("resources")\
                .update(payload)\
                .eq("id", resource_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error updating resource {resource_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

        if result.data:
            return ResourceResponse(**result.data[0])
        logger.warning(f"Resource {resource_id} not found for update")
        return None

    def get_firewall_profile(self, profile_id: str) -> Optional[FirewallProfile]:
        result = self.supabase.table("firewall_profiles")\
            .select("*")\
            .eq("id", profile_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            return None
        return FirewallProfile(**result.data)

    def get_bootstrap_profile(self, profile_id: str) -> Optional[BootstrapProfile]:
        result = self.supabase.table("bootstrap_profiles")\
            .select("*")\
            .eq("id", profile_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            return None
        return BootstrapProfile(**result.data)
