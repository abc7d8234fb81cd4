"""
Core dependencies shared by the module routers
"""

from fastapi import Header, HTTPException, Request, status
from machina.modules.deployments.coordinator import OrchestrationCoordinator
from machina.modules.credentials.vault import CredentialVault
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def get_coordinator(request: Request) -> OrchestrationCoordinator:
    """The coordinator built at startup and stored on app.state"""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        logger.error("Request received before the orchestration coordinator was started")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestration engine is not running",
        )
    return coordinator


def get_vault(request: Request) -> CredentialVault:
    return get_coordinator(request).vault


def get_initiator(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity recorded on deployments. Authentication happens upstream."""
    return x_user_id or "system"
