"""Interface of an authenticated platform connection."""

from collections.abc import Mapping, Sequence
from typing import Any, Protocol


class PlatformError(Exception):
    """Raised when the platform answers a request with an error."""

    def __init__(
        self, message: str, *, status: int | None = None, error_code: str = ""
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_code = error_code


class InvalidSessionError(PlatformError):
    """Raised when the access token is expired or revoked."""


class Connection(Protocol):
    """Authenticated access to the Tooling API of one org."""

    @property
    def instance_url(self) -> str:
        """Org instance URL without trailing slash."""

    @property
    def version(self) -> str:
        """API version used for requests, e.g. ``"61.0"``."""

    @property
    def access_token(self) -> str:
        """Current access token, changes after a refresh."""

    @property
    def base_url(self) -> str:
        """Tooling API base URL for the configured version."""

    async def request(self, method: str, url: str, *, json: Any = None) -> Any:
        """Send an authenticated request and return the decoded JSON body.

        Raises:
            InvalidSessionError: If the session is no longer valid
            PlatformError: For any other failure

        """

    async def query(self, soql: str) -> Sequence[Mapping[str, Any]]:
        """Run a Tooling API query and return every record of every page."""

    async def refresh_credentials(self) -> None:
        """Obtain a fresh access token."""

    async def max_api_version(self) -> str:
        """Return the highest API version supported by the org."""
