from fastapi import APIRouter, Depends, status
from machina.modules.credentials.schemas import CredentialsUpdate, CredentialsStatus
from machina.modules.credentials.vault import CredentialVault
from machina.core.dependencies import get_vault
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["credentials"])


@router.put("/{provider_account_id}/credentials", response_model=CredentialsStatus)
async def store_credentials(
    provider_account_id: str,
    credentials: CredentialsUpdate,
    vault: CredentialVault = Depends(get_vault),
):
    """Store (or replace) the encrypted credentials for a provider account"""
    vault.store(provider_account_id, credentials.to_bundle())
    return CredentialsStatus(provider_account_id=provider_account_id, configured=True)


@router.get("/{provider_account_id}/credentials", response_model=CredentialsStatus)
async def get_credentials_status(
    provider_account_id: str,
    vault: CredentialVault = Depends(get_vault),
):
    """Report whether credentials exist. Secret values are never returned."""
    return CredentialsStatus(
        provider_account_id=provider_account_id,
        configured=vault.has(provider_account_id),
    )


@router.delete("/{provider_account_id}/credentials", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credentials(
    provider_account_id: str,
    vault: CredentialVault = Depends(get_vault),
):
    vault.delete(provider_account_id)
    logger.info(f"Deleted credentials for provider account {provider_account_id}")
