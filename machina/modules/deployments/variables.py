"""
Provider-specific variable sets handed to the provisioning modules.

Each provider is one variant of a union discriminated by ``provider``. The API
token is a SecretStr that never reaches ``terraform.tfvars.json``; it is passed
to the subprocess as a ``TF_VAR_*`` environment variable instead.
"""
import logging
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, SecretStr, TypeAdapter

from machina.core.exceptions import CredentialsInvalid
from machina.modules.resources.schemas import BootstrapProfile, FirewallProfile, ResourceResponse

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_ADDRESSES = ["0.0.0.0/0", "::/0"]


class InboundRule(BaseModel):
    protocol: str
    port_range: str
    source_addresses: List[str] = DEFAULT_SOURCE_ADDRESSES


DEFAULT_INBOUND_RULES = [InboundRule(protocol="tcp", port_range="22")]


class _ProviderVariablesBase(BaseModel):
    secret_field: ClassVar[str]
    resource_id_output: ClassVar[str]

    name: str
    resource_id: str
    image: str
    ssh_keys: List[str] = []
    user_data: str = ""
    firewall_enabled: bool = True
    firewall_inbound_rules: List[InboundRule] = []

    def tfvars(self) -> Dict[str, Any]:
        """Non-secret variables, written to the workspace."""
        return self.model_dump(mode="json", exclude={"provider", self.secret_field})

    def secret_env(self) -> Dict[str, str]:
        secret: SecretStr = getattr(self, self.secret_field)
        return {f"TF_VAR_{self.secret_field}": secret.get_secret_value()}

    def secret_values(self) -> List[str]:
        return [getattr(self, self.secret_field).get_secret_value()]


class DigitalOceanVariables(_ProviderVariablesBase):
    secret_field: ClassVar[str] = "do_token"
    resource_id_output: ClassVar[str] = "droplet_id"

    provider: Literal["digitalocean"] = "digitalocean"
    do_token: SecretStr
    region: str
    size: str
    tags: List[str] = []  # "key:value"


class HetznerVariables(_ProviderVariablesBase):
    secret_field: ClassVar[str] = "hcloud_token"
    resource_id_output: ClassVar[str] = "server_id"

    provider: Literal["hetzner"] = "hetzner"
    hcloud_token: SecretStr
    location: str
    server_type: str
    labels: Dict[str, str] = {}


ProviderVariables = Annotated[
    Union[DigitalOceanVariables, HetznerVariables],
    Field(discriminator="provider"),
]

_provider_variables = TypeAdapter(ProviderVariables)

PROVIDER_MODULES = {
    "digitalocean": "digitalocean",
    "hetzner": "hetzner",
}


def flatten_firewall_rules(profile: Optional[FirewallProfile]) -> List[InboundRule]:
    """Inbound rules only; port ranges collapse to "N" or "A-B"."""
    if profile is None:
        return list(DEFAULT_INBOUND_RULES)
    rules = []
    for rule in profile.rules:
        if rule.direction != "inbound":
            continue
        if rule.port_range_start == rule.port_range_end:
            port_range = str(rule.port_range_start)
        else:
            port_range = f"{rule.port_range_start}-{rule.port_range_end}"
        rules.append(InboundRule(
            protocol=rule.protocol,
            port_range=port_range,
            source_addresses=list(rule.source_addresses or DEFAULT_SOURCE_ADDRESSES),
        ))
    return rules


def render_bootstrap_template(template: Optional[str], resource_id: str, server_url: str) -> str:
    if not template:
        return ""
    return (
        template
        .replace("{{RESOURCE_ID}}", resource_id)
        .replace("{{MACHINE_ID}}", resource_id)
        .replace("{{SERVER_URL}}", server_url)
    )


def build_variables(
    resource: ResourceResponse,
    credentials: Dict[str, Any],
    firewall_profile: Optional[FirewallProfile] = None,
    bootstrap_profile: Optional[BootstrapProfile] = None,
    server_url: str = "",
) -> Union[DigitalOceanVariables, HetznerVariables]:
    api_token = credentials.get("api_token")
    if not api_token:
        raise CredentialsInvalid(f"Credentials for {resource.provider_account_id} have no api_token")

    values = {
        "provider": resource.provider,
        "name": resource.name,
        "resource_id": resource.id,
        "image": resource.image,
        "ssh_keys": resource.ssh_keys,
        "user_data": render_bootstrap_template(
            bootstrap_profile.cloud_init_template if bootstrap_profile else None,
            resource.id,
            server_url,
        ),
        "firewall_inbound_rules": flatten_firewall_rules(firewall_profile),
    }
    if resource.provider == "digitalocean":
        values.update(
            do_token=api_token,
            region=resource.region,
            size=resource.size,
            tags=[f"{k}:{v}" for k, v in resource.tags.items()],
        )
    elif resource.provider == "hetzner":
        values.update(
            hcloud_token=api_token,
            location=resource.region,
            server_type=resource.size,
            labels=dict(resource.tags),
        )
    return _provider_variables.validate_python(values)
