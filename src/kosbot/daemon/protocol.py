# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Newline-delimited JSON messages exchanged with the daemon.

Requests are a tagged union on ``type``; anything that does not validate
against one of the variants is rejected before dispatch.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _CpuSelection(_Request):
    cpu_id: int | None = Field(default=None, alias="cpuId")
    cpu_label: str | None = Field(default=None, alias="cpuLabel")


class PingRequest(_Request):
    type: Literal["ping"] = "ping"


class StatusRequest(_Request):
    type: Literal["status"] = "status"


class ShutdownRequest(_Request):
    type: Literal["shutdown"] = "shutdown"


class DisconnectRequest(_Request):
    type: Literal["disconnect"] = "disconnect"


class ConnectRequest(_CpuSelection):
    type: Literal["connect"] = "connect"


class ExecuteRequest(_CpuSelection):
    type: Literal["execute"] = "execute"
    command: str = Field(min_length=1)
    timeout: int | None = Field(default=None, gt=0)


class CallRequest(_CpuSelection):
    type: Literal["call"] = "call"
    handler: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)


DaemonRequest = Annotated[
    PingRequest
    | StatusRequest
    | ShutdownRequest
    | DisconnectRequest
    | ConnectRequest
    | ExecuteRequest
    | CallRequest,
    Field(discriminator="type"),
]

_request_adapter: TypeAdapter[DaemonRequest] = TypeAdapter(DaemonRequest)


class DaemonResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    output: str | None = None
    error: str | None = None
    connected: bool | None = None
    vessel: str | None = None
    cpu_id: int | None = Field(default=None, alias="cpuId")
    cpu_tag: str | None = Field(default=None, alias="cpuTag")
    data: Any = None

    @classmethod
    def failure(cls, error: str, **fields: Any) -> DaemonResponse:
        return cls(success=False, error=error, **fields)


def parse_request(line: str | bytes) -> DaemonRequest:
    """Parse one JSON line into a request variant.

    Raises:
        pydantic.ValidationError: If the JSON is malformed or matches no variant
    """
    return _request_adapter.validate_json(line)


def encode_request(request: BaseModel) -> bytes:
    return request.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8") + b"\n"


def encode_response(response: DaemonResponse) -> bytes:
    return response.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8") + b"\n"


def decode_response(line: str | bytes) -> DaemonResponse:
    """Parse one JSON line into a response.

    Raises:
        ValueError: If the line is not a valid response
    """
    return DaemonResponse.model_validate(json.loads(line))
