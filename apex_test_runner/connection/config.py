"""Configuration for a platform connection."""

from pydantic import BaseModel, SecretStr


class ConnectionConfig(BaseModel):
    """Credentials and endpoints of the org to run tests in."""

    instance_url: str
    access_token: SecretStr
    api_version: str = "61.0"
    # Only needed to refresh an expired access token
    refresh_token: SecretStr | None = None
    client_id: str = "PlatformCLI"
    client_secret: SecretStr | None = None
    login_url: str = "https://login.salesforce.com"
