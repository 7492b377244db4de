"""Pydantic models for REST API envelopes."""

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiError(BaseModel):
    """Error entry returned by the REST API on failed requests."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str = ""
    error_code: str = ""


class QueryResponse(BaseModel):
    """A page of records returned by the query endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    done: bool
    total_size: int
    records: Sequence[Mapping[str, Any]]
    next_records_url: str | None = None


class TokenResponse(BaseModel):
    """Response of the OAuth token endpoint."""

    access_token: str
    instance_url: str | None = None


class ApiVersion(BaseModel):
    """Entry of the API versions listing."""

    version: str
    url: str
