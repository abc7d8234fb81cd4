import logging
from typing import Any, Dict, Optional

from machina.config import settings
from machina.core.exceptions import InvalidTransition
from machina.modules.deployments.schemas import (
    DeploymentResponse,
    DeploymentState,
    PlanSummary,
    TERMINAL_STATES,
)
from machina.modules.deployments.service import DeploymentService, utcnow_iso
from machina.modules.resources.schemas import ResourceStatus, StateSyncStatus
from machina.modules.resources.service import ResourceService

logger = logging.getLogger(__name__)

S = DeploymentState

TRANSITIONS = {
    S.QUEUED: frozenset({S.PLANNING, S.FAILED, S.CANCELLED}),
    S.PLANNING: frozenset({S.AWAITING_APPROVAL, S.APPLYING, S.FAILED, S.CANCELLED}),
    S.AWAITING_APPROVAL: frozenset({S.APPLYING, S.FAILED}),
    S.APPLYING: frozenset({S.SUCCEEDED, S.FAILED, S.CANCELLED}),
}

CANCELLABLE_STATES = frozenset({S.QUEUED, S.PLANNING, S.APPLYING})

FAILED_RESOURCE_UPDATE = {
    "actual_status": ResourceStatus.ERROR,
    "state_sync_status": StateSyncStatus.UNKNOWN,
}


class DeploymentStateMachine:
    """
    The only writer of Deployment.state.

    Updates addressed to a terminal deployment are ignored and return None.
    Anything else outside TRANSITIONS raises InvalidTransition.
    """

    def __init__(
        self,
        deployments: DeploymentService,
        resources: ResourceService,
        error_message_max_length: Optional[int] = None,
    ):
        self.deployments = deployments
        self.resources = resources
        self.error_message_max_length = error_message_max_length or settings.error_message_max_length

    def transition(
        self,
        deployment_id: str,
        target: DeploymentState,
        update: Optional[Dict[str, Any]] = None,
        resource_update: Optional[Dict[str, Any]] = None,
    ) -> Optional[DeploymentResponse]:
        # One re-read after a lost compare-and-set, then give up
        for _ in range(2):
            current = self.deployments.get_deployment_by_id(deployment_id)
            if current.state in TERMINAL_STATES:
                logger.info(
                    f"Ignoring {target.value} for deployment {deployment_id}: already {current.state.value}"
                )
                return None
            if target not in TRANSITIONS[current.state]:
                raise InvalidTransition(
                    f"Cannot move deployment {deployment_id} from {current.state.value} to {target.value}"
                )

            data = dict(update or {})
            data["state"] = target.value
            now = utcnow_iso()
            if target in (S.PLANNING, S.APPLYING) and current.started_at is None:
                data["started_at"] = now
            if target in TERMINAL_STATES:
                data["finished_at"] = now

            updated = self.deployments.compare_and_set(deployment_id, current.state, data)
            if updated is not None:
                logger.info(f"Deployment {deployment_id}: {current.state.value} -> {target.value}")
                if resource_update:
                    self.resources.update_resource(current.resource_id, resource_update)
                return updated
            logger.info(f"Deployment {deployment_id} changed concurrently, re-evaluating {target.value}")

        logger.warning(f"Gave up moving deployment {deployment_id} to {target.value} after a lost race")
        return None

    def start(self, deployment_id: str) -> Optional[DeploymentResponse]:
        return self.transition(deployment_id, S.PLANNING)

    def plan_succeeded(
        self,
        deployment_id: str,
        summary: Optional[PlanSummary],
        plan_artifact: Optional[str],
        requires_approval: bool = False,
    ) -> Optional[DeploymentResponse]:
        target = S.AWAITING_APPROVAL if requires_approval else S.APPLYING
        return self.transition(deployment_id, target, {
            "plan_summary": summary.model_dump(mode="json") if summary else None,
            "plan_artifact": plan_artifact,
        })

    def approve(self, deployment_id: str) -> Optional[DeploymentResponse]:
        current = self.deployments.get_deployment_by_id(deployment_id)
        if current.state != S.AWAITING_APPROVAL:
            raise InvalidTransition(
                f"Deployment {deployment_id} is {current.state.value}, not awaiting approval"
            )
        return self.transition(deployment_id, S.APPLYING)

    def succeed(
        self,
        deployment_id: str,
        outputs: Optional[Dict[str, Any]] = None,
        resource_update: Optional[Dict[str, Any]] = None,
    ) -> Optional[DeploymentResponse]:
        resource_update = dict(resource_update or {})
        resource_update.setdefault("state_sync_status", StateSyncStatus.IN_SYNC)
        update = {"outputs": outputs} if outputs is not None else {}
        return self.transition(deployment_id, S.SUCCEEDED, update, resource_update)

    def fail(
        self,
        deployment_id: str,
        error: Exception,
        resource_update: Optional[Dict[str, Any]] = None,
    ) -> Optional[DeploymentResponse]:
        message = getattr(error, "message", None) or str(error) or error.__class__.__name__
        return self.transition(
            deployment_id,
            S.FAILED,
            {
                "error_code": getattr(error, "code", "InternalError"),
                "error_message": message[: self.error_message_max_length],
            },
            resource_update if resource_update is not None else FAILED_RESOURCE_UPDATE,
        )

    def cancel(self, deployment_id: str) -> Optional[DeploymentResponse]:
        return self.transition(deployment_id, S.CANCELLED, resource_update=FAILED_RESOURCE_UPDATE)

    def is_cancelled(self, deployment_id: str) -> bool:
        return self.deployments.get_deployment_by_id(deployment_id).state == S.CANCELLED
