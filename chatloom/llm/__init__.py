"""Content model and the content-generator interface."""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, AsyncIterator

from chatloom.logging import get_logger

log = get_logger(__name__)


class FinishReason(str, Enum):
    """Why the model stopped producing a candidate."""

    FINISH_REASON_UNSPECIFIED = "FINISH_REASON_UNSPECIFIED"
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    RECITATION = "RECITATION"
    LANGUAGE = "LANGUAGE"
    OTHER = "OTHER"
    BLOCKLIST = "BLOCKLIST"
    PROHIBITED_CONTENT = "PROHIBITED_CONTENT"
    SPII = "SPII"
    MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"


@dataclass
class FunctionCall:
    """A tool invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class FunctionResponse:
    """The result of a tool invocation, sent back to the model."""

    name: str
    response: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class InlineData:
    mime_type: str
    data: str


@dataclass
class FileData:
    mime_type: str
    file_uri: str


@dataclass
class Part:
    """One piece of a turn: text, thought, tool call/response or media."""

    text: str | None = None
    thought: bool = False
    thought_signature: str | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    inline_data: InlineData | None = None
    file_data: FileData | None = None

    def is_empty(self) -> bool:
        return not any(
            getattr(self, f.name) not in (None, False)
            for f in fields(self)
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Part":
        """Build a part from a JSON payload (camelCase or snake_case keys)."""
        call = data.get("functionCall") or data.get("function_call")
        response = data.get("functionResponse") or data.get("function_response")
        inline = data.get("inlineData") or data.get("inline_data")
        file_data = data.get("fileData") or data.get("file_data")
        return cls(
            text=data.get("text"),
            thought=bool(data.get("thought", False)),
            thought_signature=data.get("thoughtSignature") or data.get("thought_signature"),
            function_call=FunctionCall(
                name=call.get("name", ""),
                args=dict(call.get("args") or {}),
                id=call.get("id"),
            ) if call else None,
            function_response=FunctionResponse(
                name=response.get("name", ""),
                response=dict(response.get("response") or {}),
                id=response.get("id"),
            ) if response else None,
            inline_data=InlineData(
                mime_type=inline.get("mimeType") or inline.get("mime_type", ""),
                data=inline.get("data", ""),
            ) if inline else None,
            file_data=FileData(
                mime_type=file_data.get("mimeType") or file_data.get("mime_type", ""),
                file_uri=file_data.get("fileUri") or file_data.get("file_uri", ""),
            ) if file_data else None,
        )


@dataclass
class Content:
    """A turn in the conversation."""

    role: str
    parts: list[Part] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Content":
        return cls(
            role=data.get("role", ""),
            parts=[Part.from_dict(item) for item in data.get("parts") or []],
        )


@dataclass
class Candidate:
    content: Content | None = None
    finish_reason: FinishReason | None = None
    index: int = 0


@dataclass
class UsageMetadata:
    prompt_token_count: int | None = None
    candidates_token_count: int | None = None
    total_token_count: int | None = None


def _coerce_finish_reason(raw: Any) -> FinishReason | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, FinishReason):
        return raw
    try:
        return FinishReason(str(raw).upper())
    except ValueError:
        return FinishReason.OTHER


@dataclass
class ResponseChunk:
    """One streamed (or complete) response from the backend."""

    candidates: list[Candidate] = field(default_factory=list)
    usage_metadata: UsageMetadata | None = None

    @property
    def first_candidate(self) -> Candidate | None:
        return self.candidates[0] if self.candidates else None

    @property
    def parts(self) -> list[Part]:
        candidate = self.first_candidate
        if candidate is None or candidate.content is None:
            return []
        return candidate.content.parts

    @property
    def finish_reason(self) -> FinishReason | None:
        candidate = self.first_candidate
        return candidate.finish_reason if candidate else None

    @property
    def text(self) -> str:
        """Concatenated non-thought text of the first candidate."""
        return "".join(
            part.text for part in self.parts
            if part.text and not part.thought
        )

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [part.function_call for part in self.parts if part.function_call]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResponseChunk":
        """Build a chunk from a JSON payload (camelCase or snake_case keys)."""
        candidates = []
        for idx, raw in enumerate(data.get("candidates") or []):
            content = raw.get("content")
            candidates.append(Candidate(
                content=Content.from_dict(content) if content else None,
                finish_reason=_coerce_finish_reason(
                    raw.get("finishReason", raw.get("finish_reason"))
                ),
                index=int(raw.get("index", idx)),
            ))
        usage_raw = data.get("usageMetadata") or data.get("usage_metadata")
        usage = None
        if usage_raw:
            usage = UsageMetadata(
                prompt_token_count=usage_raw.get("promptTokenCount", usage_raw.get("prompt_token_count")),
                candidates_token_count=usage_raw.get(
                    "candidatesTokenCount", usage_raw.get("candidates_token_count")
                ),
                total_token_count=usage_raw.get("totalTokenCount", usage_raw.get("total_token_count")),
            )
        return cls(candidates=candidates, usage_metadata=usage)


@dataclass
class GenerateContentConfig:
    """Per-request generation settings."""

    system_instruction: str | None = None
    tools: list[dict[str, Any]] | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None

    def merged(self, override: "GenerateContentConfig | None") -> "GenerateContentConfig":
        """Return a copy with non-None values from ``override`` applied."""
        merged = copy.deepcopy(self)
        if override is None:
            return merged
        for f in fields(override):
            value = getattr(override, f.name)
            if value is not None:
                setattr(merged, f.name, copy.deepcopy(value))
        return merged


@dataclass
class GenerateContentRequest:
    model: str
    contents: list[Content]
    config: GenerateContentConfig = field(default_factory=GenerateContentConfig)


def user_content(message: "str | Part | list[str | Part]") -> Content:
    """Normalize a user message into a user turn."""
    items = message if isinstance(message, list) else [message]
    parts = [
        Part(text=item) if isinstance(item, str) else copy.deepcopy(item)
        for item in items
    ]
    return Content(role="user", parts=parts)


def is_function_response(content: Content) -> bool:
    """True when a user turn carries only tool results."""
    return (
        content.role == "user"
        and bool(content.parts)
        and all(part.function_response is not None for part in content.parts)
    )


def parts_to_text(parts: list[Part]) -> str:
    """Flatten parts into readable text for recording."""
    chunks: list[str] = []
    for part in parts:
        if part.text is not None:
            chunks.append(part.text)
        elif part.function_call is not None:
            chunks.append(f"[Function Call: {part.function_call.name}]")
        elif part.function_response is not None:
            chunks.append(f"[Function Response: {part.function_response.name}]")
        elif part.inline_data is not None:
            chunks.append(f"<{part.inline_data.mime_type}>")
        elif part.file_data is not None:
            chunks.append(f"File: {part.file_data.file_uri}")
    return "".join(chunks)


class ContentGenerator(ABC):
    """Abstract model backend."""

    @abstractmethod
    async def generate_content(
        self,
        request: GenerateContentRequest,
        prompt_id: str,
    ) -> ResponseChunk:
        pass

    @abstractmethod
    async def generate_content_stream(
        self,
        request: GenerateContentRequest,
        prompt_id: str,
    ) -> AsyncIterator[ResponseChunk]:
        """Open a stream. Opening may fail before any chunk is produced."""
        pass

    @abstractmethod
    async def count_tokens(self, request: GenerateContentRequest) -> int:
        pass

    @abstractmethod
    async def embed_content(self, texts: list[str]) -> list[list[float]]:
        pass


def create_content_generator(kind: str = "fake", **kwargs: Any) -> ContentGenerator:
    """Create a content generator.

    Args:
        kind: Generator kind. Only ``fake`` ships with chatloom; real backends
            are constructed by the embedding application and installed with
            ``set_content_generator``.
        **kwargs: ``responses`` (dict) or ``path`` (JSON file) for ``fake``

    Returns:
        Configured ContentGenerator instance
    """
    log.debug("Creating content generator", kind=kind)
    if kind == "fake":
        from chatloom.llm.fake import FakeContentGenerator

        path = kwargs.get("path")
        if path:
            return FakeContentGenerator.from_file(path)
        return FakeContentGenerator(kwargs.get("responses") or {})
    raise ValueError(f"Content generator '{kind}' not supported. Install one with set_content_generator().")


# Global content generator instance
_generator: ContentGenerator | None = None


def get_content_generator() -> ContentGenerator:
    """Get the global content generator instance."""
    if _generator is None:
        raise RuntimeError("No content generator configured")
    return _generator


def set_content_generator(generator: ContentGenerator | None) -> None:
    """Set the global content generator instance."""
    global _generator
    _generator = generator
