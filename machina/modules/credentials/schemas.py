from pydantic import BaseModel, Field, SecretStr
from typing import Optional


class CredentialsUpdate(BaseModel):
    api_token: SecretStr = Field(min_length=1)
    spaces_access_key: Optional[SecretStr] = None  # DigitalOcean only
    spaces_secret_key: Optional[SecretStr] = None

    def to_bundle(self) -> dict:
        bundle = {"api_token": self.api_token.get_secret_value()}
        if self.spaces_access_key:
            bundle["spaces_access_key"] = self.spaces_access_key.get_secret_value()
        if self.spaces_secret_key:
            bundle["spaces_secret_key"] = self.spaces_secret_key.get_secret_value()
        return bundle


class CredentialsStatus(BaseModel):
    provider_account_id: str
    configured: bool
