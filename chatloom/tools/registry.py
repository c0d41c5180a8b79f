"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, model_validator

from chatloom.config import get_config
from chatloom.exceptions import ToolError, ToolExecutionError, ToolNotFoundError
from chatloom.logging import get_logger

log = get_logger(__name__)

OutputCallback = Callable[[str], Awaitable[None]]


class ToolKind(str, Enum):
    """What a tool does to the world; drives approval and stream truncation."""

    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    SEARCH = "search"
    EXECUTE = "execute"
    THINK = "think"
    FETCH = "fetch"
    OTHER = "other"


# Kinds that change state outside the conversation.
MUTATOR_KINDS = frozenset({ToolKind.EDIT, ToolKind.DELETE, ToolKind.MOVE, ToolKind.EXECUTE})


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    display: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


@dataclass
class ToolConfirmationDetails:
    """What the user is shown before a tool call runs.

    ``kind`` is ``edit`` for file changes (``proposed_content`` is then
    editable through the modify flow), ``exec`` for commands and ``info``
    for anything else.
    """

    title: str
    kind: str = "info"
    prompt: str = ""
    file_path: str | None = None
    proposed_content: str | None = None


def has_cycle_in_schema(schema: Any) -> bool:
    """Detect ``$ref`` chains (``#/...`` pointers) that lead back into themselves."""

    def resolve(ref: str) -> Any:
        node: Any = schema
        for segment in ref.lstrip("#").strip("/").split("/"):
            if not segment:
                continue
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    def walk(node: Any, ref_stack: set[str]) -> bool:
        if isinstance(node, list):
            return any(walk(item, ref_stack) for item in node)
        if not isinstance(node, dict):
            return False
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#"):
            if ref in ref_stack:
                return True
            target = resolve(ref)
            if target is not None and walk(target, ref_stack | {ref}):
                return True
        return any(walk(value, ref_stack) for key, value in node.items() if key != "$ref")

    return walk(schema, set())


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Cancelled task raised", error=str(e))


class Tool(ABC):
    """Base class for all tools.

    ``execute`` receives the call arguments plus ``_abort_event`` and, when
    the caller streams live output, an async ``_on_output(text)``;
    implementations should accept ``**kwargs``.
    """

    name: str = ""
    display_name: str = ""
    description: str = ""
    kind: ToolKind = ToolKind.OTHER
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    @property
    def is_mutator(self) -> bool:
        return self.kind in MUTATOR_KINDS

    def get_definition(self) -> dict[str, Any]:
        """Get the function declaration sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )

    async def prepare_request(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Enrich arguments before confirmation (e.g. compute a proposed edit).

        Receives a private copy; may return it modified.
        """
        return arguments

    async def get_confirmation_details(
        self,
        arguments: dict[str, Any],
    ) -> ToolConfirmationDetails | None:
        """Return details to confirm, or None when the call may run unprompted."""
        return None

    async def apply_modification(
        self,
        arguments: dict[str, Any],
        modified_content: str,
    ) -> dict[str, Any]:
        """Fold a user-edited proposal back into the arguments."""
        raise ToolError(f"Tool '{self.name}' does not support modification")


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name, kind=tool.kind.value)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def get_tool(self, name: str) -> Tool | None:
        """Get a tool by name, or None."""
        return self._tools.get(name)

    def get_all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all function declarations for the model."""
        return [tool.get_definition() for tool in self._tools.values()]

    def is_mutator(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and tool.is_mutator

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        on_output: OutputCallback | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            abort_event: Cancels the running tool when set
            on_output: Receives live output chunks, if the tool streams any

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        # Execute with timeout / abort propagation
        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = tool.timeout_seconds
            if timeout_seconds is None:
                timeout_seconds = get_config().tools.timeout_seconds
            timeout_seconds = max(1.0, float(timeout_seconds))

            if abort_event is not None:
                if abort_event.is_set():
                    raise ToolExecutionError(name, "Execution aborted")
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            extra: dict[str, Any] = {"_abort_event": tool_abort_event}
            if on_output is not None:
                extra["_on_output"] = on_output
            execute_task = asyncio.create_task(tool.execute(**arguments, **extra))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await cancel_task(abort_wait_task)
            await cancel_task(bridge_task)


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def set_tool_registry(registry: ToolRegistry) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
