"""Tools package for chatloom."""

from chatloom.tools.registry import (
    MUTATOR_KINDS,
    Tool,
    ToolConfirmationDetails,
    ToolKind,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    has_cycle_in_schema,
    set_tool_registry,
)

__all__ = [
    "MUTATOR_KINDS",
    "Tool",
    "ToolConfirmationDetails",
    "ToolKind",
    "ToolRegistry",
    "ToolResult",
    "get_tool_registry",
    "has_cycle_in_schema",
    "set_tool_registry",
]
