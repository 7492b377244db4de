"""aiohttp implementation of a platform connection."""

import logging
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from pydantic import TypeAdapter, ValidationError
from yarl import URL

from apex_test_runner.connection.base import InvalidSessionError, PlatformError
from apex_test_runner.connection.config import ConnectionConfig
from apex_test_runner.connection.models import (
    ApiError,
    ApiVersion,
    QueryResponse,
    TokenResponse,
)

log = logging.getLogger(__name__)

INVALID_SESSION_ERROR_CODE = "INVALID_SESSION_ID"

_api_errors = TypeAdapter(list[ApiError])
_api_versions = TypeAdapter(list[ApiVersion])


@dataclass(kw_only=True)
class PlatformConnection:
    """Connection to the Tooling API backed by an aiohttp session.

    The access token is read on every request so that a refresh is picked
    up by requests that are already scheduled.
    """

    config: ConnectionConfig
    session: aiohttp.ClientSession = field(repr=False)
    _access_token: str = field(init=False, repr=False)
    _instance_url: str = field(init=False)

    def __post_init__(self) -> None:
        self._access_token = self.config.access_token.get_secret_value()
        self._instance_url = self.config.instance_url.rstrip("/")

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: ConnectionConfig
    ) -> AsyncGenerator["PlatformConnection", None]:
        """Create connection with managed session lifecycle."""
        async with aiohttp.ClientSession() as session:
            yield cls(config=config, session=session)

    @property
    def instance_url(self) -> str:
        """Org instance URL without trailing slash."""
        return self._instance_url

    @property
    def version(self) -> str:
        """API version used for requests."""
        return self.config.api_version

    @property
    def access_token(self) -> str:
        """Current access token."""
        return self._access_token

    @property
    def base_url(self) -> str:
        """Tooling API base URL."""
        url = URL(self._instance_url) / "services" / "data" / f"v{self.version}"
        return str(url / "tooling")

    async def request(self, method: str, url: str, *, json: Any = None) -> Any:
        """Send an authenticated request and return the decoded JSON body."""
        headers = {"Authorization": f"Bearer {self._access_token}"}
        log.debug("%s %s", method, url)
        try:
            async with self.session.request(
                method, url, json=json, headers=headers
            ) as response:
                if response.status >= 400:
                    await self._raise_for_error(response)
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise PlatformError(f"Request to {url} failed: {e}") from e
        except ValueError as e:
            raise PlatformError(f"Unexpected response from {url}: {e}") from e

    async def query(self, soql: str) -> Sequence[Mapping[str, Any]]:
        """Run a Tooling API query and return every record of every page."""
        url = URL(f"{self.base_url}/query").with_query(q=soql)
        records: list[Mapping[str, Any]] = []

        while True:
            data = await self.request("GET", str(url))
            try:
                page = QueryResponse.model_validate(data)
            except ValidationError as e:
                raise PlatformError(f"Unexpected query response: {e}") from e
            records.extend(page.records)

            if page.done or not page.next_records_url:
                break
            url = URL(self._instance_url).join(URL(page.next_records_url))

        return records

    async def refresh_credentials(self) -> None:
        """Exchange the refresh token for a new access token."""
        if self.config.refresh_token is None:
            log.warning("No refresh token configured, keeping current access token")
            return

        form = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "refresh_token": self.config.refresh_token.get_secret_value(),
        }
        if self.config.client_secret is not None:
            form["client_secret"] = self.config.client_secret.get_secret_value()

        url = URL(self.config.login_url) / "services" / "oauth2" / "token"
        log.info("Refreshing access token via %s", url)
        try:
            async with self.session.post(url, data=form) as response:
                if response.status != 200:
                    text = await response.text()
                    raise InvalidSessionError(
                        f"Failed to refresh access token: {response.status} {text}",
                        status=response.status,
                    )
                token = TokenResponse.model_validate(
                    await response.json(content_type=None)
                )
        except aiohttp.ClientError as e:
            raise PlatformError(f"Failed to refresh access token: {e}") from e
        except ValueError as e:
            raise PlatformError(f"Unexpected token response: {e}") from e

        self._access_token = token.access_token
        if token.instance_url:
            self._instance_url = token.instance_url.rstrip("/")

    async def max_api_version(self) -> str:
        """Return the highest API version supported by the org."""
        data = await self.request("GET", f"{self._instance_url}/services/data")
        try:
            versions = _api_versions.validate_python(data)
            if not versions:
                return self.version
            return max(versions, key=lambda v: float(v.version)).version
        except ValueError as e:
            raise PlatformError(f"Unexpected API versions response: {e}") from e

    async def _raise_for_error(self, response: aiohttp.ClientResponse) -> None:
        text = await response.text()
        try:
            errors = _api_errors.validate_json(text)
        except ValidationError:
            errors = []

        error_code = errors[0].error_code if errors else ""
        message = errors[0].message if errors else text
        if response.status == 401 or error_code == INVALID_SESSION_ERROR_CODE:
            raise InvalidSessionError(
                message or "Session expired or invalid",
                status=response.status,
                error_code=error_code or INVALID_SESSION_ERROR_CODE,
            )
        raise PlatformError(
            f"{response.status} {error_code or 'ERROR'}: {message}",
            status=response.status,
            error_code=error_code,
        )
