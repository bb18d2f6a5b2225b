"""
tools/tool_registry.py — Tool Registry

Catalog of every tool the planner may choose from.

The registry stores:
  - ToolSpec (description, parameter list, output schema, retry policy, fallback)
  - An optional handler (sync or async) used by RegistryToolExecutor

Usage:
    registry = ToolRegistry()

    @registry.register(
        name="datetime_tool",
        description="Current date and time",
        parameters=[ToolParameter(name="operation", required=True,
                                  allowed_values=["now", "today"])],
        display_name="Date Time Tool",
    )
    async def datetime_tool(operation: str) -> dict:
        ...

    spec = registry.get_spec("datetime_tool")
    handler = registry.get_handler("datetime_tool")
    catalog = registry.list_specs()
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from turnpilot.exceptions import ToolRegistrationError
from turnpilot.observability.logger import get_logger
from turnpilot.tools.types import RetryPolicy, ToolParameter, ToolSpec

log = get_logger(__name__)


class ToolRegistry:
    """
    Maps tool ids to their specs and handlers.

    Safe for concurrent reads. Registration is expected to finish before runs start.
    """

    def __init__(self):
        self._specs: dict[str, ToolSpec] = {}
        self._handlers: dict[str, Callable] = {}

    def register(
        self,
        name: str,
        description: str = "",
        parameters: Optional[list[ToolParameter]] = None,
        output_schema: Optional[dict[str, Any]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_seconds: Optional[float] = None,
        fallback_tool: Optional[str] = None,
        display_name: Optional[str] = None,
        enabled: bool = True,
    ) -> Callable:
        """Decorator form of register_tool(). Returns the handler unchanged."""
        def decorator(fn: Callable) -> Callable:
            spec = ToolSpec(
                name=name,
                description=description,
                parameters=parameters or [],
                output_schema=output_schema or {},
                retry_policy=retry_policy or RetryPolicy.default(),
                timeout_seconds=timeout_seconds,
                fallback_tool=fallback_tool,
                display_name=display_name,
                enabled=enabled,
            )
            self.register_tool(spec, fn)
            return fn

        return decorator

    def register_tool(self, spec: ToolSpec, handler: Optional[Callable] = None) -> None:
        """Programmatic registration. Tools without a handler need a custom executor."""
        if spec.name in self._specs:
            raise ToolRegistrationError(f"Tool '{spec.name}' is already registered")
        self._specs[spec.name] = spec
        if handler is not None:
            self._handlers[spec.name] = handler
        log.debug(
            "tool.registered",
            tool=spec.name,
            params=len(spec.parameters),
            fallback=spec.fallback_tool,
            has_handler=handler is not None,
        )

    def get_spec(self, name: str) -> Optional[ToolSpec]:
        """Return the ToolSpec for a tool, or None if not found."""
        return self._specs.get(name)

    def get_handler(self, name: str) -> Optional[Callable]:
        return self._handlers.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._specs

    def list_specs(self, enabled_only: bool = True) -> list[ToolSpec]:
        """Return registered specs in registration order."""
        specs = list(self._specs.values())
        if enabled_only:
            specs = [s for s in specs if s.enabled]
        return specs

    def list_names(self, enabled_only: bool = True) -> list[str]:
        return [s.name for s in self.list_specs(enabled_only)]

    def aliases(self) -> dict[str, str]:
        """Lower-cased display names → canonical tool ids."""
        return {
            s.display_name.strip().lower(): s.name
            for s in self._specs.values()
            if s.display_name
        }

    def enable(self, name: str) -> None:
        if name in self._specs:
            self._specs[name] = self._specs[name].model_copy(update={"enabled": True})

    def disable(self, name: str) -> None:
        if name in self._specs:
            self._specs[name] = self._specs[name].model_copy(update={"enabled": False})

    def __len__(self) -> int:
        return len(self._specs)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={list(self._specs.keys())}>"
