"""Integration tests for the aiohttp platform connection."""

from collections.abc import AsyncGenerator

import pytest
from aioresponses import aioresponses as aioresponses_cls
from pydantic import SecretStr
from yarl import URL

from apex_test_runner.connection import (
    ConnectionConfig,
    InvalidSessionError,
    PlatformConnection,
    PlatformError,
)
from apex_test_runner.testing.factories import ConnectionConfigFactory
from apex_test_runner.testing.payloads import queue_item, query_response

INSTANCE_URL = "https://example.my.salesforce.com"
TOOLING_URL = f"{INSTANCE_URL}/services/data/v61.0/tooling"
TOKEN_URL = "https://login.salesforce.com/services/oauth2/token"


@pytest.fixture
def config() -> ConnectionConfig:
    """Create test configuration."""
    return ConnectionConfigFactory.build(
        instance_url=f"{INSTANCE_URL}/",
        access_token=SecretStr("00Dxx!initial"),
        refresh_token=SecretStr("5Aep-refresh"),
    )


@pytest.fixture
async def connection(
    config: ConnectionConfig, aioresponses: aioresponses_cls
) -> AsyncGenerator[PlatformConnection, None]:
    """Create connection with managed session."""
    async with PlatformConnection.from_config(config) as impl:
        yield impl


async def test_base_url_strips_trailing_slash(connection: PlatformConnection) -> None:
    """Builds the Tooling API URL from the instance URL and version."""
    assert connection.instance_url == INSTANCE_URL
    assert connection.base_url == TOOLING_URL


class TestRequest:
    """Tests for request."""

    async def test_sends_bearer_token(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Authenticates with the current access token."""
        url = f"{TOOLING_URL}/runTestsAsynchronous"
        aioresponses.post(url, payload="707xx0000AGQ3jbAAI")

        response = await connection.request("POST", url, json={"testLevel": "x"})

        assert response == "707xx0000AGQ3jbAAI"
        call = aioresponses.requests[("POST", URL(url))][0]
        assert call.kwargs["headers"]["Authorization"] == "Bearer 00Dxx!initial"
        assert call.kwargs["json"] == {"testLevel": "x"}

    async def test_classifies_invalid_session(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Raises a typed error for expired sessions."""
        url = f"{TOOLING_URL}/runTestsAsynchronous"
        aioresponses.post(
            url,
            status=401,
            payload=[
                {
                    "message": "Session expired or invalid",
                    "errorCode": "INVALID_SESSION_ID",
                }
            ],
        )

        with pytest.raises(InvalidSessionError) as exc_info:
            await connection.request("POST", url)

        assert exc_info.value.status == 401
        assert exc_info.value.error_code == "INVALID_SESSION_ID"

    async def test_raises_platform_error(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Raises a platform error with the API error details."""
        url = f"{TOOLING_URL}/runTestsAsynchronous"
        aioresponses.post(
            url,
            status=400,
            payload=[
                {"message": "No test classes found", "errorCode": "INVALID_INPUT"}
            ],
        )

        with pytest.raises(PlatformError, match="INVALID_INPUT") as exc_info:
            await connection.request("POST", url)

        assert not isinstance(exc_info.value, InvalidSessionError)
        assert exc_info.value.status == 400

    async def test_non_json_body(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Raises a platform error when a proxy answers with an HTML page."""
        url = f"{TOOLING_URL}/runTestsAsynchronous"
        aioresponses.post(
            url, body="<html>maintenance</html>", content_type="text/html"
        )

        with pytest.raises(PlatformError, match="Unexpected response"):
            await connection.request("POST", url)


class TestQuery:
    """Tests for query."""

    async def test_follows_next_records_url(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Collects the records of every page."""
        soql = "SELECT Id FROM ApexTestQueueItem"
        next_path = "/services/data/v61.0/tooling/query/01gxx0000000001-2000"
        aioresponses.get(
            str(URL(f"{TOOLING_URL}/query").with_query(q=soql)),
            payload=query_response(
                [queue_item(item_id="709xx000001IlU1AAK")],
                next_records_url=next_path,
            ),
        )
        aioresponses.get(
            f"{INSTANCE_URL}{next_path}",
            payload=query_response([queue_item(item_id="709xx000001IlU2AAK")]),
        )

        records = await connection.query(soql)

        assert [record["Id"] for record in records] == [
            "709xx000001IlU1AAK",
            "709xx000001IlU2AAK",
        ]


class TestRefreshCredentials:
    """Tests for refresh_credentials."""

    async def test_uses_new_token_for_next_requests(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Exchanges the refresh token and uses the new access token."""
        aioresponses.post(
            TOKEN_URL,
            payload={"access_token": "00Dxx!refreshed", "instance_url": INSTANCE_URL},
        )
        url = f"{TOOLING_URL}/runTestsAsynchronous"
        aioresponses.post(url, payload="707xx0000AGQ3jbAAI")

        await connection.refresh_credentials()
        await connection.request("POST", url)

        assert connection.access_token == "00Dxx!refreshed"
        token_call = aioresponses.requests[("POST", URL(TOKEN_URL))][0]
        assert token_call.kwargs["data"]["grant_type"] == "refresh_token"
        assert token_call.kwargs["data"]["refresh_token"] == "5Aep-refresh"
        call = aioresponses.requests[("POST", URL(url))][0]
        assert call.kwargs["headers"]["Authorization"] == "Bearer 00Dxx!refreshed"

    async def test_rejected_refresh_is_invalid_session(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Raises an invalid session error when the token endpoint refuses."""
        aioresponses.post(TOKEN_URL, status=400, payload={"error": "invalid_grant"})

        with pytest.raises(InvalidSessionError):
            await connection.refresh_credentials()

        assert connection.access_token == "00Dxx!initial"

    async def test_malformed_token_response(
        self, connection: PlatformConnection, aioresponses: aioresponses_cls
    ) -> None:
        """Raises a platform error when the token response lacks a token."""
        aioresponses.post(TOKEN_URL, payload={"instance_url": INSTANCE_URL})

        with pytest.raises(PlatformError, match="Unexpected token response"):
            await connection.refresh_credentials()

        assert connection.access_token == "00Dxx!initial"


async def test_max_api_version(
    connection: PlatformConnection, aioresponses: aioresponses_cls
) -> None:
    """Picks the highest version the org supports."""
    aioresponses.get(
        f"{INSTANCE_URL}/services/data",
        payload=[
            {"version": "59.0", "url": "/services/data/v59.0", "label": "Winter '24"},
            {"version": "62.0", "url": "/services/data/v62.0", "label": "Winter '25"},
            {"version": "61.0", "url": "/services/data/v61.0", "label": "Summer '24"},
        ],
    )

    assert await connection.max_api_version() == "62.0"


async def test_malformed_api_versions(
    connection: PlatformConnection, aioresponses: aioresponses_cls
) -> None:
    """Raises a platform error when the versions listing is malformed."""
    aioresponses.get(f"{INSTANCE_URL}/services/data", payload={"versions": []})

    with pytest.raises(PlatformError, match="API versions"):
        await connection.max_api_version()
