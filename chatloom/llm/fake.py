"""Content generator that replays canned responses."""

import json
from pathlib import Path
from typing import Any, AsyncIterator

from chatloom.exceptions import LLMError
from chatloom.llm import ContentGenerator, GenerateContentRequest, ResponseChunk

_METHODS = ("generate_content", "generate_content_stream", "count_tokens", "embed_content")


class FakeContentGenerator(ContentGenerator):
    """Replay responses in order, one list per method.

    ``generate_content_stream`` entries are lists of chunks; every call
    consumes one entry and streams its chunks.
    """

    def __init__(self, responses: dict[str, list[Any]]):
        self.responses: dict[str, list[Any]] = {
            method: list(responses.get(method) or []) for method in _METHODS
        }
        self.call_counters: dict[str, int] = {method: 0 for method in _METHODS}
        self.requests: list[GenerateContentRequest] = []

    @classmethod
    def from_file(cls, path: Path | str) -> "FakeContentGenerator":
        """Load responses from a JSON file keyed by method name (camelCase allowed)."""
        raw = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        aliases = {
            "generateContent": "generate_content",
            "generateContentStream": "generate_content_stream",
            "countTokens": "count_tokens",
            "embedContent": "embed_content",
        }
        responses: dict[str, list[Any]] = {}
        for key, value in (raw or {}).items():
            method = aliases.get(key, key)
            if method == "generate_content":
                value = [ResponseChunk.from_dict(item) for item in value]
            elif method == "generate_content_stream":
                value = [[ResponseChunk.from_dict(item) for item in stream] for stream in value]
            responses[method] = value
        return cls(responses)

    def _next_response(self, method: str, request: Any) -> Any:
        index = self.call_counters[method]
        self.call_counters[method] = index + 1
        queue = self.responses[method]
        if index >= len(queue):
            raise LLMError(f"No more mock responses for {method}, got request: {request!r}")
        response = queue[index]
        if isinstance(response, Exception):
            raise response
        return response

    async def generate_content(
        self,
        request: GenerateContentRequest,
        prompt_id: str,
    ) -> ResponseChunk:
        self.requests.append(request)
        return self._next_response("generate_content", request)

    async def generate_content_stream(
        self,
        request: GenerateContentRequest,
        prompt_id: str,
    ) -> AsyncIterator[ResponseChunk]:
        self.requests.append(request)
        chunks = self._next_response("generate_content_stream", request)

        async def stream() -> AsyncIterator[ResponseChunk]:
            for chunk in chunks:
                yield chunk

        return stream()

    async def count_tokens(self, request: GenerateContentRequest) -> int:
        return int(self._next_response("count_tokens", request))

    async def embed_content(self, texts: list[str]) -> list[list[float]]:
        return self._next_response("embed_content", texts)
