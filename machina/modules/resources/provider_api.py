"""
Direct provider control API calls that do not go through terraform:
reboot, status lookups and inventory listing used by reboot polling and sync.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from machina.config import Settings, settings as default_settings
from machina.core.exceptions import CredentialsInvalid, ProviderAPIError
from machina.modules.resources.schemas import ResourceStatus

logger = logging.getLogger(__name__)


@dataclass
class ProviderInstance:
    provider_resource_id: str
    name: str
    status: Optional[ResourceStatus]
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None


class ProviderClient:
    """Bearer-token JSON client. Transport and HTTP errors surface as ProviderAPIError."""

    provider = ""
    status_map: Dict[str, ResourceStatus] = {}

    def __init__(self, api_token: str, base_url: str, timeout: float = 30.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, allow_404: bool = False, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderAPIError(f"{self.provider} API request {method} {path} failed: {e}")

        if allow_404 and response.status_code == 404:
            return None
        if response.status_code == 401:
            raise CredentialsInvalid(f"{self.provider} rejected the API token")
        if response.is_error:
            raise ProviderAPIError(
                f"{self.provider} API {method} {path} returned {response.status_code}: {response.text[:500]}"
            )
        if not response.content:
            return {}
        return response.json()

    def normalize_status(self, raw: Optional[str]) -> Optional[ResourceStatus]:
        if raw is None:
            return None
        status = self.status_map.get(raw)
        if status is None:
            logger.warning(f"Unknown {self.provider} status '{raw}'")
        return status

    def reboot(self, provider_resource_id: str) -> None:
        raise NotImplementedError

    def status(self, provider_resource_id: str) -> Optional[ResourceStatus]:
        """Normalized status, or None when the provider no longer knows the instance."""
        raise NotImplementedError

    def list_resources(self) -> List[ProviderInstance]:
        raise NotImplementedError


class DigitalOceanClient(ProviderClient):
    provider = "digitalocean"
    status_map = {
        "new": ResourceStatus.PROVISIONING,
        "active": ResourceStatus.RUNNING,
        "off": ResourceStatus.STOPPED,
        "archive": ResourceStatus.TERMINATED,
    }

    def reboot(self, provider_resource_id: str) -> None:
        self._request("POST", f"/droplets/{provider_resource_id}/actions", json={"type": "reboot"})
        logger.info(f"Requested reboot of droplet {provider_resource_id}")

    def status(self, provider_resource_id: str) -> Optional[ResourceStatus]:
        data = self._request("GET", f"/droplets/{provider_resource_id}", allow_404=True)
        if data is None:
            return None
        return self.normalize_status(data.get("droplet", {}).get("status"))

    def _droplets(self) -> List[Dict[str, Any]]:
        """Every page of /droplets; ``links.pages.next`` is an absolute URL."""
        droplets = []
        data = self._request("GET", "/droplets", params={"per_page": 200}) or {}
        seen = set()
        while True:
            droplets.extend(data.get("droplets", []))
            next_url = ((data.get("links") or {}).get("pages") or {}).get("next")
            if not next_url or next_url in seen:
                return droplets
            seen.add(next_url)
            data = self._request("GET", next_url) or {}

    def list_resources(self) -> List[ProviderInstance]:
        instances = []
        for droplet in self._droplets():
            networks = droplet.get("networks", {}).get("v4", [])
            instances.append(ProviderInstance(
                provider_resource_id=str(droplet["id"]),
                name=droplet.get("name", ""),
                status=self.normalize_status(droplet.get("status")),
                public_ip=next((n["ip_address"] for n in networks if n.get("type") == "public"), None),
                private_ip=next((n["ip_address"] for n in networks if n.get("type") == "private"), None),
            ))
        return instances


class HetznerClient(ProviderClient):
    provider = "hetzner"
    status_map = {
        "initializing": ResourceStatus.PROVISIONING,
        "starting": ResourceStatus.PROVISIONING,
        "running": ResourceStatus.RUNNING,
        "stopping": ResourceStatus.STOPPING,
        "off": ResourceStatus.STOPPED,
        "deleting": ResourceStatus.TERMINATING,
        "rebuilding": ResourceStatus.PROVISIONING,
        "migrating": ResourceStatus.RUNNING,
    }

    def reboot(self, provider_resource_id: str) -> None:
        self._request("POST", f"/servers/{provider_resource_id}/actions/reboot")
        logger.info(f"Requested reboot of server {provider_resource_id}")

    def status(self, provider_resource_id: str) -> Optional[ResourceStatus]:
        data = self._request("GET", f"/servers/{provider_resource_id}", allow_404=True)
        if data is None:
            return None
        return self.normalize_status(data.get("server", {}).get("status"))

    def _servers(self) -> List[Dict[str, Any]]:
        """Every page of /servers, following ``meta.pagination.next_page``."""
        servers = []
        page = 1
        while page:
            data = self._request("GET", "/servers", params={"per_page": 50, "page": page}) or {}
            servers.extend(data.get("servers", []))
            next_page = ((data.get("meta") or {}).get("pagination") or {}).get("next_page")
            page = next_page if next_page and next_page > page else None
        return servers

    def list_resources(self) -> List[ProviderInstance]:
        instances = []
        for server in self._servers():
            public_net = server.get("public_net") or {}
            private_net = server.get("private_net") or []
            instances.append(ProviderInstance(
                provider_resource_id=str(server["id"]),
                name=server.get("name", ""),
                status=self.normalize_status(server.get("status")),
                public_ip=(public_net.get("ipv4") or {}).get("ip"),
                private_ip=private_net[0].get("ip") if private_net else None,
            ))
        return instances


def get_provider_client(provider: str, credentials: Dict[str, Any],
                        settings: Optional[Settings] = None) -> ProviderClient:
    settings = settings or default_settings
    api_token = credentials.get("api_token")
    if not api_token:
        raise CredentialsInvalid(f"No api_token available for {provider}")
    if provider == "digitalocean":
        return DigitalOceanClient(api_token, settings.digitalocean_api_url, settings.provider_api_timeout_sec)
    if provider == "hetzner":
        return HetznerClient(api_token, settings.hetzner_api_url, settings.provider_api_timeout_sec)
    raise ProviderAPIError(f"Unsupported provider: {provider}")
