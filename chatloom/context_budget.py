"""Local token estimation and pre-request history trimming."""

import dataclasses
import json
import math
from dataclasses import dataclass
from typing import Any

from chatloom.config import ContextConfig
from chatloom.llm import Content, FunctionResponse, Part
from chatloom.logging import get_logger

log = get_logger(__name__)

CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str | None) -> int:
    """~1 token per 4 characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _part_chars(part: Part) -> int:
    if part.text:
        return len(part.text)
    if part.function_call is not None:
        return len(part.function_call.name) + len(json.dumps(part.function_call.args, default=str))
    if part.function_response is not None:
        return len(part.function_response.name) + len(json.dumps(part.function_response.response, default=str))
    # Media parts need a real countTokens call; they are not estimated locally.
    return 0


def _content_chars(content: Content) -> int:
    return sum(_part_chars(part) for part in content.parts)


def estimate_tokens(contents: list[Content]) -> int:
    """Estimate tokens of a list of turns."""
    total_chars = sum(_content_chars(content) for content in contents)
    return math.ceil(total_chars / CHARS_PER_TOKEN)


@dataclass
class ContextSizeInfo:
    total: int
    history: int
    system_instruction: int
    tools: int

    @property
    def breakdown(self) -> str:
        return (
            f"Context size: ~{self.total / 1000:.1f}K tokens\n"
            f"  • History: {self.history / 1000:.1f}K tokens\n"
            f"  • System: {self.system_instruction / 1000:.1f}K tokens\n"
            f"  • Tools: {self.tools / 1000:.1f}K tokens"
        )


def analyze_context_size(
    history: list[Content],
    system_instruction: str | None,
    tools: list[dict[str, Any]] | None,
) -> ContextSizeInfo:
    history_tokens = estimate_tokens(history)
    system_tokens = estimate_text_tokens(system_instruction)
    tools_tokens = estimate_text_tokens(json.dumps(tools, default=str)) if tools else 0
    return ContextSizeInfo(
        total=history_tokens + system_tokens + tools_tokens,
        history=history_tokens,
        system_instruction=system_tokens,
        tools=tools_tokens,
    )


@dataclass
class TrimResult:
    trimmed_history: list[Content]
    warning: str | None = None
    breakdown: str | None = None
    removed_entries: int = 0


class ContextBudgetManager:
    """Decide what to drop from a request so it fits the model's window.

    Pure: never touches session state, returns new lists and leaves the
    input turns untouched.
    """

    def __init__(self, config: ContextConfig | None = None):
        self.config = config or ContextConfig()

    def trim_old_tool_results(self, contents: list[Content]) -> list[Content]:
        """Summarize large tool results outside the preserved recent tail."""
        preserved = self.config.preserved_entries
        if len(contents) <= preserved:
            return list(contents)

        older = contents[:-preserved] if preserved else list(contents)
        recent = contents[-preserved:] if preserved else []
        trimmed_older: list[Content] = []
        summarized = 0
        for content in older:
            if content.role != "user" or not any(p.function_response for p in content.parts):
                trimmed_older.append(content)
                continue
            parts: list[Part] = []
            changed = False
            for part in content.parts:
                summary = self._summarize_tool_result(part)
                if summary is None:
                    parts.append(part)
                    continue
                parts.append(summary)
                changed = True
                summarized += 1
            trimmed_older.append(Content(role=content.role, parts=parts) if changed else content)

        if summarized:
            log.debug("Summarized old tool results", count=summarized)
        return trimmed_older + list(recent)

    def _summarize_tool_result(self, part: Part) -> Part | None:
        response = part.function_response
        if response is None:
            return None
        output = response.response.get("output")
        if not isinstance(output, str) or len(output) < self.config.tool_result_trim_chars:
            return None
        name = response.name or "unknown_tool"
        preview_chars = self.config.tool_result_preview_chars
        preview = output[:preview_chars]
        summary = (
            f"[Tool result truncated: {name} returned {len(output)} chars. "
            f"First {preview_chars} chars: {preview}...]"
        )
        return dataclasses.replace(
            part,
            function_response=FunctionResponse(
                name=response.name,
                response={"output": summary},
                id=response.id,
            ),
        )

    def check_and_trim(
        self,
        history: list[Content],
        system_instruction: str | None,
        tools: list[dict[str, Any]] | None,
        model_limit: int,
    ) -> TrimResult:
        """Summarize old tool results, then drop oldest entries until under the safe limit."""
        history = self.trim_old_tool_results(history)
        safe_limit = math.floor(model_limit * self.config.safety_ratio)
        size = analyze_context_size(history, system_instruction, tools)

        # A context exactly at the safe limit is within budget.
        if size.total <= safe_limit:
            return TrimResult(trimmed_history=history)

        # Remaining size uses the same single rounding as analyze_context_size.
        keep = min(self.config.preserved_entries, len(history))
        fixed_tokens = size.system_instruction + size.tools
        history_chars = sum(_content_chars(content) for content in history)
        trim_index = 0
        while trim_index < len(history) - keep:
            if fixed_tokens + math.ceil(history_chars / CHARS_PER_TOKEN) <= safe_limit:
                break
            history_chars -= _content_chars(history[trim_index])
            trim_index += 1
        remaining_tokens = fixed_tokens + math.ceil(history_chars / CHARS_PER_TOKEN)

        trimmed = history[trim_index:]
        limit_k = model_limit / 1000
        if remaining_tokens > safe_limit:
            warning = (
                f"⚠️  Context too large (~{size.total / 1000:.1f}K tokens, limit: {limit_k:.0f}K).\n"
                f"Trimmed {trim_index} older history entr{'y' if trim_index == 1 else 'ies'}, "
                "but context is still large; the system instruction or tool schema alone may be oversized.\n"
                "Consider:\n"
                "  • Starting a new chat session (/clear)\n"
                "  • Reducing system instructions\n"
                "  • Disabling unused tools"
            )
            log.warning(
                "Context still over budget after trimming",
                total_tokens=size.total,
                remaining_tokens=remaining_tokens,
                safe_limit=safe_limit,
                removed_entries=trim_index,
            )
        else:
            warning = (
                f"⚠️  Context approaching limit. Trimmed {trim_index} older history "
                f"entr{'y' if trim_index == 1 else 'ies'} to prevent errors."
            )
            log.info(
                "Context trimmed",
                total_tokens=size.total,
                remaining_tokens=remaining_tokens,
                safe_limit=safe_limit,
                removed_entries=trim_index,
            )
        return TrimResult(
            trimmed_history=trimmed,
            warning=warning,
            breakdown=size.breakdown,
            removed_entries=trim_index,
        )
