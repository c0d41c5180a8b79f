import asyncio

import pytest

from chatloom.config import get_config, set_config
from chatloom.exceptions import ToolError, ToolExecutionError, ToolNotFoundError
from chatloom.tools.registry import (
    Tool,
    ToolKind,
    ToolRegistry,
    ToolResult,
    cancel_task,
    get_tool_registry,
    has_cycle_in_schema,
    set_tool_registry,
)


class EditTool(Tool):
    name = "edit_file"
    display_name = "Edit File"
    description = "Edit a file"
    kind = ToolKind.EDIT
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }

    async def execute(self, **kwargs):
        return ToolResult(success=True, content=f"edited {kwargs['path']}")


class StreamingTool(Tool):
    name = "tail"
    description = "Stream lines"
    kind = ToolKind.READ

    async def execute(self, **kwargs):
        on_output = kwargs["_on_output"]
        for line in ("one", "two"):
            await on_output(line)
        return ToolResult(success=True, content="one\ntwo")


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(success=True, content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class ExplodingTool(Tool):
    name = "explode"
    description = "Always fails"

    async def execute(self, **kwargs):
        raise RuntimeError("disk on fire")


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"


def test_tool_result_keeps_explicit_error_on_failure() -> None:
    result = ToolResult(success=False, content="stderr output", error="explicit error")

    assert result.error == "explicit error"


def test_lookup_and_mutator_classification():
    registry = ToolRegistry()
    registry.register(EditTool())
    registry.register(StreamingTool())

    assert registry.list_tools() == ["edit_file", "tail"]
    assert registry.get_tool("missing") is None
    with pytest.raises(ToolNotFoundError):
        registry.get("missing")
    assert registry.is_mutator("edit_file") is True
    assert registry.is_mutator("tail") is False
    assert registry.is_mutator("missing") is False
    assert registry.get_definitions()[0]["parameters"]["required"] == ["path"]

    registry.unregister("tail")
    assert registry.has_tool("tail") is False


def test_register_requires_a_name():
    tool = EditTool()
    tool.name = ""

    with pytest.raises(ValueError):
        ToolRegistry().register(tool)


@pytest.mark.asyncio
async def test_modification_is_unsupported_by_default():
    with pytest.raises(ToolError, match="does not support modification"):
        await EditTool().apply_modification({"path": "a"}, "new")


def test_cycle_detection_follows_local_refs():
    cyclic = {
        "type": "object",
        "properties": {"child": {"$ref": "#/$defs/node"}},
        "$defs": {"node": {"type": "object", "properties": {"next": {"$ref": "#/$defs/node"}}}},
    }
    acyclic = {
        "type": "object",
        "properties": {"a": {"$ref": "#/$defs/leaf"}, "b": {"$ref": "#/$defs/leaf"}},
        "$defs": {"leaf": {"type": "string"}},
    }

    assert has_cycle_in_schema(cyclic) is True
    assert has_cycle_in_schema(acyclic) is False
    assert has_cycle_in_schema({"$ref": "https://example.com/schema.json"}) is False


@pytest.mark.asyncio
async def test_registry_rejects_missing_arguments():
    registry = ToolRegistry()
    registry.register(EditTool())

    with pytest.raises(ToolExecutionError, match="Missing required argument: path"):
        await registry.execute("edit_file", {})


@pytest.mark.asyncio
async def test_registry_forwards_live_output():
    registry = ToolRegistry()
    registry.register(StreamingTool())
    seen: list[str] = []

    async def on_output(text: str) -> None:
        seen.append(text)

    result = await registry.execute("tail", {}, on_output=on_output)

    assert result.content == "one\ntwo"
    assert seen == ["one", "two"]


@pytest.mark.asyncio
async def test_registry_wraps_unexpected_tool_errors():
    registry = ToolRegistry()
    registry.register(ExplodingTool())

    with pytest.raises(ToolExecutionError, match="Tool 'explode' failed: disk on fire"):
        await registry.execute("explode", {})


@pytest.mark.asyncio
async def test_registry_uses_tool_level_timeout_seconds():
    registry = ToolRegistry()
    registry.register(SlowTool())

    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_registry_falls_back_to_configured_timeout():
    old_cfg = get_config().model_copy(deep=True)
    cfg = old_cfg.model_copy(deep=True)
    cfg.tools.timeout_seconds = 1.0
    set_config(cfg)
    try:
        tool = SlowTool()
        tool.timeout_seconds = None
        registry = ToolRegistry()
        registry.register(tool)

        with pytest.raises(ToolExecutionError, match="timed out"):
            await registry.execute("slow", {})
    finally:
        set_config(old_cfg)


@pytest.mark.asyncio
async def test_registry_abort_event_cancels_running_tool_execution():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)

    abort_event = asyncio.Event()
    execution = asyncio.create_task(registry.execute("cancellable", {}, abort_event=abort_event))
    await asyncio.sleep(0.05)
    abort_event.set()

    with pytest.raises(ToolExecutionError, match="aborted"):
        await execution
    assert tool.cancelled is True


@pytest.mark.asyncio
async def test_registry_refuses_to_start_when_already_aborted():
    registry = ToolRegistry()
    registry.register(CancellableTool())
    abort_event = asyncio.Event()
    abort_event.set()

    with pytest.raises(ToolExecutionError, match="Execution aborted"):
        await registry.execute("cancellable", {}, abort_event=abort_event)


def test_global_registry_can_be_replaced():
    original = get_tool_registry()
    replacement = ToolRegistry()
    replacement.register(EditTool())
    set_tool_registry(replacement)
    try:
        assert get_tool_registry().has_tool("edit_file") is True
    finally:
        set_tool_registry(original)


@pytest.mark.asyncio
async def test_cancel_task_settles_failing_and_finished_tasks():
    async def fails_on_cancel():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            raise RuntimeError("cleanup failed")

    failing = asyncio.create_task(fails_on_cancel())
    await asyncio.sleep(0)
    await cancel_task(failing)
    await cancel_task(None)

    assert failing.done() is True
