# Copyright (c) 2025-2026 provide.io llc
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Registry of named operations reachable through ``call`` requests.

Each handler declares a pydantic model for its arguments and receives the
daemon's shared connection. Higher-level catalogs plug in with
``HandlerRegistry.register_handler``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from kosbot.core.connection import KosConnection
from kosbot.core.health import check_health

HandlerFn = Callable[[KosConnection, Any], Awaitable[Any]]


class NoArgs(BaseModel):
    pass


class ExecuteArgs(BaseModel):
    command: str = Field(min_length=1)
    timeout: int | None = Field(default=None, gt=0)


class HealthArgs(BaseModel):
    timeout: int | None = Field(default=None, gt=0)


class RecentOutputArgs(BaseModel):
    count: int = Field(default=50, ge=0)


@dataclass(frozen=True)
class Handler:
    name: str
    args_model: type[BaseModel]
    fn: HandlerFn

    async def invoke(self, connection: KosConnection, raw_args: dict[str, Any]) -> Any:
        """Validate *raw_args*, run the handler and return JSON-ready data.

        Raises:
            pydantic.ValidationError: If the arguments do not fit ``args_model``
        """
        args = self.args_model.model_validate(raw_args)
        result = await self.fn(connection, args)
        return to_jsonable_python(result)


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register_handler(self, name: str, args_model: type[BaseModel] = NoArgs) -> Callable[[HandlerFn], HandlerFn]:
        def decorator(fn: HandlerFn) -> HandlerFn:
            if name in self._handlers:
                raise ValueError(f"Handler already registered: {name}")
            self._handlers[name] = Handler(name, args_model, fn)
            return fn

        return decorator

    def get(self, name: str) -> Handler | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)


def default_registry() -> HandlerRegistry:
    """Registry with the built-in terminal handlers."""
    registry = HandlerRegistry()

    @registry.register_handler("execute", ExecuteArgs)
    async def execute(conn: KosConnection, args: ExecuteArgs) -> Any:
        return await conn.execute(args.command, args.timeout)

    @registry.register_handler("health", HealthArgs)
    async def health(conn: KosConnection, args: HealthArgs) -> Any:
        result = await check_health(conn, args.timeout)
        return {"status": result.status.value, "healthy": result.healthy, "output": result.output}

    @registry.register_handler("state")
    async def state(conn: KosConnection, args: NoArgs) -> Any:
        return conn.state

    @registry.register_handler("recent_output", RecentOutputArgs)
    async def recent_output(conn: KosConnection, args: RecentOutputArgs) -> Any:
        status = conn.monitor.status()
        return {**status.model_dump(), "recent_lines": conn.monitor.recent_lines(args.count)}

    @registry.register_handler("list_cpus")
    async def list_cpus(conn: KosConnection, args: NoArgs) -> Any:
        return await conn.list_cpus()

    return registry
