"""Attempt loop for one send: backoff, retry ceilings and fallback switching."""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from chatloom.config import Config, get_config
from chatloom.exceptions import (
    FallbackAbortedError,
    InvalidStreamError,
    PersistentQuotaError,
    StreamAbortedError,
)
from chatloom.fallback import FallbackIntent, FallbackModelHandler, resolve_fallback_intent
from chatloom.llm import ResponseChunk
from chatloom.logging import get_logger
from chatloom.models import get_effective_model
from chatloom.stream_validation import QUOTA_EXHAUSTED_MESSAGE

log = get_logger(__name__)


class StreamEventType(str, Enum):
    CHUNK = "chunk"
    RETRY = "retry"


@dataclass
class ChunkEvent:
    """A content chunk from the model."""

    value: ResponseChunk
    type: StreamEventType = field(default=StreamEventType.CHUNK, init=False)


@dataclass
class RetryEvent:
    """A failed attempt.

    Non-terminal: another attempt follows after ``wait_seconds``; any partial
    output from the failed attempt should be discarded. Terminal: the send
    gave up and ``error`` explains why.
    """

    error: str
    terminal: bool = False
    fatal: bool = False
    kind: str | None = None
    attempt: int = 0
    max_attempts: int = 0
    wait_seconds: float = 0.0
    type: StreamEventType = field(default=StreamEventType.RETRY, init=False)


StreamEvent = ChunkEvent | RetryEvent


@dataclass
class FallbackState:
    """Whether the session runs on the fallback model, and its empty-reply streak."""

    active: bool = False
    consecutive_empty_failures: int = 0


class RetryFallbackController:
    """Owns fallback state and drives the attempt loop of one send at a time.

    Attempting(n) -> Done on a valid stream; -> Backoff(n) -> Attempting(n+1)
    on a retryable failure while attempts remain; -> Failed otherwise.
    Failures end in a terminal RetryEvent instead of an exception.
    """

    def __init__(
        self,
        config: Config | None = None,
        fallback_handler: FallbackModelHandler | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        state: FallbackState | None = None,
    ):
        self.config = config or get_config()
        self.fallback_handler = fallback_handler
        self.sleep = sleep
        self.state = state or FallbackState()

    @property
    def in_fallback_mode(self) -> bool:
        return self.state.active

    @property
    def fallback_model(self) -> str:
        return self.config.model.fallback_model

    def set_fallback_handler(self, handler: FallbackModelHandler | None) -> None:
        self.fallback_handler = handler

    def reset_fallback(self) -> None:
        """Leave fallback mode (explicit user action only)."""
        if self.state.active:
            log.info("Fallback mode reset by user")
        self.state = FallbackState()

    def _activate_fallback(self, failed_model: str) -> None:
        if self.state.active:
            return
        self.state.active = True
        self.state.consecutive_empty_failures = 0
        log.warning("Fallback mode activated", failed_model=failed_model, fallback_model=self.fallback_model)

    def effective_model(self, requested_model: str) -> str:
        return get_effective_model(self.state.active, requested_model, self.fallback_model)

    def max_attempts(self) -> int:
        retry = self.config.retry
        ceiling = retry.fallback_max_attempts if self.state.active else retry.primary_max_attempts
        return max(1, ceiling)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (0-based)."""
        retry = self.config.retry
        if self.state.active:
            return retry.fallback_delay_seconds
        return retry.primary_initial_delay_seconds * (attempt + 1)

    def record_success(self) -> None:
        self.state.consecutive_empty_failures = 0

    def record_invalid(self, error: InvalidStreamError) -> InvalidStreamError:
        """Track fallback-mode failures; repeated ones are reported as quota exhaustion."""
        if not self.state.active or not error.should_retry:
            return error
        self.state.consecutive_empty_failures += 1
        if self.state.consecutive_empty_failures < self.config.retry.quota_failure_threshold:
            return error
        log.warning(
            "Repeated empty responses in fallback mode; likely quota exhaustion",
            failures=self.state.consecutive_empty_failures,
        )
        return InvalidStreamError(
            QUOTA_EXHAUSTED_MESSAGE,
            kind=error.kind,
            finish_reason=error.finish_reason,
            should_retry=True,
        )

    async def handle_persistent_quota(
        self,
        failed_model: str,
        error: BaseException | None,
    ) -> FallbackIntent | None:
        """Consult the fallback handler and apply its intent to the fallback state.

        Returns None when fallback does not apply (disabled, already on the
        fallback model, no handler, or the handler gave no usable answer).
        """
        if not self.config.model.fallback_enabled:
            return None
        if failed_model == self.fallback_model:
            log.info("Already on fallback model; no further fallback", model=failed_model)
            return None
        if self.fallback_handler is None:
            return None

        intent = await resolve_fallback_intent(self.fallback_handler, failed_model, self.fallback_model, error)
        log.info("Fallback decision", failed_model=failed_model, intent=intent.value if intent else None)
        if intent in (FallbackIntent.RETRY, FallbackIntent.STOP):
            self._activate_fallback(failed_model)
        return intent

    async def open_stream(
        self,
        api_call: Callable[[str], Awaitable[AsyncIterator[ResponseChunk]]],
        requested_model: str,
    ) -> AsyncIterator[ResponseChunk]:
        """Open a stream, switching to the fallback model on persistent 429s."""
        while True:
            model = self.effective_model(requested_model)
            try:
                return await api_call(model)
            except PersistentQuotaError as e:
                intent = await self.handle_persistent_quota(model, e)
                if intent == FallbackIntent.RETRY:
                    continue
                if intent == FallbackIntent.STOP:
                    raise FallbackAbortedError(
                        f"Switched to fallback model {self.fallback_model}. "
                        "Send your message again to continue.",
                        intent=FallbackIntent.STOP.value,
                    ) from e
                if intent == FallbackIntent.AUTH:
                    raise FallbackAbortedError(
                        f"Request to {model} stopped after repeated quota errors. "
                        "Change authentication (/auth) and try again.",
                        intent=FallbackIntent.AUTH.value,
                    ) from e
                raise

    def _model_label(self) -> str:
        return "Fallback model" if self.state.active else "Model"

    async def run(
        self,
        attempt_fn: Callable[[int], AsyncIterator[ResponseChunk]],
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run attempts until one succeeds, the ceiling is hit, or a fatal error occurs."""
        attempt = 0
        while True:
            try:
                async with aclosing(attempt_fn(attempt)) as chunks:
                    async for chunk in chunks:
                        yield ChunkEvent(chunk)
                self.record_success()
                return
            except StreamAbortedError:
                log.info("Send aborted", attempt=attempt + 1)
                return
            except InvalidStreamError as e:
                error = self.record_invalid(e)
                ceiling = self.max_attempts()
                if not error.should_retry:
                    log.warning("Fatal invalid stream", kind=error.kind, finish_reason=error.finish_reason)
                    yield RetryEvent(
                        error=str(error),
                        terminal=True,
                        fatal=True,
                        kind=error.kind,
                        attempt=attempt + 1,
                        max_attempts=ceiling,
                    )
                    return
                if attempt + 1 >= ceiling:
                    log.error(
                        "Retries exhausted",
                        kind=error.kind,
                        attempts=attempt + 1,
                        fallback=self.state.active,
                    )
                    yield RetryEvent(
                        error=f"{error}\n\nGave up after {attempt + 1} attempt(s).",
                        terminal=True,
                        kind=error.kind,
                        attempt=attempt + 1,
                        max_attempts=ceiling,
                    )
                    return

                delay = self.backoff_delay(attempt)
                log.info(
                    "Retrying invalid stream",
                    kind=error.kind,
                    attempt=attempt + 1,
                    max_attempts=ceiling,
                    delay_seconds=delay,
                    fallback=self.state.active,
                )
                yield RetryEvent(
                    error=(
                        f"[RETRY] {self._model_label()} returned an invalid response "
                        f"(attempt {attempt + 1}/{ceiling}). Waiting {delay:g}s before retry...\n\n{error}"
                    ),
                    kind=error.kind,
                    attempt=attempt + 1,
                    max_attempts=ceiling,
                    wait_seconds=delay,
                )
                await self.sleep(delay)
                if abort_event is not None and abort_event.is_set():
                    log.info("Send aborted during backoff", attempt=attempt + 1)
                    return
                attempt += 1
            except FallbackAbortedError as e:
                yield RetryEvent(error=str(e), terminal=True, kind=e.intent, attempt=attempt + 1)
                return
            except Exception as e:
                log.error("Model request failed", error=str(e), attempt=attempt + 1)
                yield RetryEvent(error=str(e), terminal=True, attempt=attempt + 1)
                return
