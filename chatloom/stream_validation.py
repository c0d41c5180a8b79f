"""Classification of a drained model stream."""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum

from chatloom.exceptions import InvalidStreamError
from chatloom.history import is_valid_content, is_valid_non_thought_text_part
from chatloom.llm import FinishReason, Part, ResponseChunk


class InvalidStreamKind(str, Enum):
    NO_FINISH_REASON = "NO_FINISH_REASON"
    NO_RESPONSE_TEXT = "NO_RESPONSE_TEXT"


class StreamStatus(str, Enum):
    VALID = "valid"
    RETRYABLE = "retryable"
    FATAL = "fatal"


BLOCKING_FINISH_REASONS = frozenset({FinishReason.SAFETY, FinishReason.RECITATION})

NO_FINISH_REASON_MESSAGE = (
    "Model stream ended without a finish reason.\n\n"
    "This can happen due to:\n"
    "  • Temporary API issues (try again in a moment)\n"
    "  • Rate limiting (wait 30-60 seconds)\n"
    "  • Request too large (start a new chat with /clear)\n"
    "  • Safety filters (try rephrasing your request)"
)

LOCAL_SERVER_STALLED_MESSAGE = (
    "Local model server stream timed out without a complete response.\n\n"
    "Troubleshooting:\n"
    "  1. Check that the local server is running and reachable\n"
    "  2. Try a short request without tools to confirm the model answers at all\n"
    "  3. Reduce the number of tools available to the agent\n"
    "  4. Use a more capable model or raise the server's timeout settings"
)

SAFETY_MESSAGE = (
    "Model response was blocked by safety filters.\n\n"
    "The content violated safety policies. Try:\n"
    "  • Rephrasing your request in a different way\n"
    "  • Avoiding sensitive or controversial topics\n"
    "  • Starting a new chat session (/clear)"
)

RECITATION_MESSAGE = (
    "Model response was blocked due to recitation.\n\n"
    "The content matched copyrighted material. Try:\n"
    "  • Asking for a summary or paraphrase instead\n"
    "  • Requesting original content\n"
    "  • Starting a new chat session (/clear)"
)

FALLBACK_EMPTY_MESSAGE = (
    "Fallback model returned an empty response.\n\n"
    "This is usually a short rate-limit blip; retrying shortly."
)

QUOTA_EXHAUSTED_MESSAGE = (
    "Fallback model returned empty responses repeatedly (likely quota exhausted).\n\n"
    "Both the primary and the fallback model may have hit quota limits.\n"
    "Wait a moment and send your message again, or switch authentication (/auth)."
)

EMPTY_RESPONSE_MESSAGE = (
    "Model stream ended with empty response text.\n\n"
    "This usually means:\n"
    "  • Content was filtered by safety systems\n"
    "  • Request was too complex or large\n"
    "  • Temporary API issue\n\n"
    "Try:\n"
    "  • Rephrasing your request\n"
    "  • Starting a new chat session (/clear)\n"
    "  • Waiting a moment and trying again"
)


def consolidate_parts(parts: list[Part]) -> list[Part]:
    """Merge adjacent plain text parts into one; other parts pass through."""
    consolidated: list[Part] = []
    for part in parts:
        last = consolidated[-1] if consolidated else None
        if (
            last is not None
            and last.text
            and is_valid_non_thought_text_part(last)
            and is_valid_non_thought_text_part(part)
        ):
            consolidated[-1] = dataclasses.replace(last, text=last.text + (part.text or ""))
        else:
            consolidated.append(part)
    return consolidated


@dataclass
class StreamAccumulator:
    """State gathered while draining one attempt's stream."""

    parts: list[Part] = field(default_factory=list)
    thoughts: list[Part] = field(default_factory=list)
    has_tool_call: bool = False
    has_finish_reason: bool = False
    last_finish_reason: FinishReason | None = None
    chunk_count: int = 0

    def add(self, chunk: ResponseChunk) -> None:
        self.chunk_count += 1
        if any(c.finish_reason for c in chunk.candidates):
            self.has_finish_reason = True
        if chunk.finish_reason:
            self.last_finish_reason = chunk.finish_reason

        candidate = chunk.first_candidate
        if candidate is None or candidate.content is None or not is_valid_content(candidate.content):
            return
        for part in candidate.content.parts:
            if part.function_call is not None:
                self.has_tool_call = True
            if part.thought:
                self.thoughts.append(part)
            else:
                self.parts.append(part)

    def consolidated_parts(self) -> list[Part]:
        return consolidate_parts(self.parts)

    def response_text(self) -> str:
        return "".join(part.text for part in self.consolidated_parts() if part.text).strip()


@dataclass
class StreamVerdict:
    status: StreamStatus
    kind: InvalidStreamKind | None = None
    finish_reason: FinishReason | None = None
    message: str = ""

    @property
    def is_valid(self) -> bool:
        return self.status == StreamStatus.VALID


class StreamValidator:
    """Decide whether a drained stream is usable, worth retrying, or hopeless."""

    def __init__(self, local_server: bool = False):
        self.local_server = local_server

    def classify(
        self,
        *,
        has_tool_call: bool,
        has_finish_reason: bool,
        last_finish_reason: FinishReason | None,
        response_text: str,
        in_fallback_mode: bool = False,
    ) -> StreamVerdict:
        if has_tool_call:
            return StreamVerdict(StreamStatus.VALID, finish_reason=last_finish_reason)

        if not has_finish_reason:
            return StreamVerdict(
                StreamStatus.RETRYABLE,
                kind=InvalidStreamKind.NO_FINISH_REASON,
                message=LOCAL_SERVER_STALLED_MESSAGE if self.local_server else NO_FINISH_REASON_MESSAGE,
            )

        if not response_text:
            if last_finish_reason == FinishReason.SAFETY:
                return StreamVerdict(
                    StreamStatus.FATAL,
                    kind=InvalidStreamKind.NO_RESPONSE_TEXT,
                    finish_reason=last_finish_reason,
                    message=SAFETY_MESSAGE,
                )
            if last_finish_reason == FinishReason.RECITATION:
                return StreamVerdict(
                    StreamStatus.FATAL,
                    kind=InvalidStreamKind.NO_RESPONSE_TEXT,
                    finish_reason=last_finish_reason,
                    message=RECITATION_MESSAGE,
                )
            return StreamVerdict(
                StreamStatus.RETRYABLE,
                kind=InvalidStreamKind.NO_RESPONSE_TEXT,
                finish_reason=last_finish_reason,
                message=FALLBACK_EMPTY_MESSAGE if in_fallback_mode else EMPTY_RESPONSE_MESSAGE,
            )

        return StreamVerdict(StreamStatus.VALID, finish_reason=last_finish_reason)

    def classify_accumulated(
        self,
        accumulator: StreamAccumulator,
        in_fallback_mode: bool = False,
        stalled: bool = False,
    ) -> StreamVerdict:
        """Classify a drained stream; a stalled stream never counts as finished."""
        return self.classify(
            has_tool_call=accumulator.has_tool_call,
            has_finish_reason=accumulator.has_finish_reason and not stalled,
            last_finish_reason=accumulator.last_finish_reason,
            response_text=accumulator.response_text(),
            in_fallback_mode=in_fallback_mode,
        )

    @staticmethod
    def raise_for(verdict: StreamVerdict) -> None:
        """Raise InvalidStreamError for a non-valid verdict."""
        if verdict.is_valid:
            return
        raise InvalidStreamError(
            verdict.message,
            kind=verdict.kind.value if verdict.kind else InvalidStreamKind.NO_RESPONSE_TEXT.value,
            finish_reason=verdict.finish_reason.value if verdict.finish_reason else None,
            should_retry=verdict.status == StreamStatus.RETRYABLE,
        )
