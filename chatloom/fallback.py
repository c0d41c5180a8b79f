"""Fallback-model decisions after persistent quota errors."""

import asyncio
import inspect
from enum import Enum
from typing import Awaitable, Callable

from rich.console import Console
from rich.prompt import Prompt

from chatloom.logging import get_logger

log = get_logger(__name__)


class FallbackIntent(str, Enum):
    """What the caller wants to happen after the primary model is exhausted."""

    RETRY = "retry"  # switch to the fallback model and keep going
    STOP = "stop"  # switch to the fallback model but end this request
    AUTH = "auth"  # keep the primary model; the user will change credentials


FallbackModelHandler = Callable[
    [str, str, BaseException | None],
    "FallbackIntent | str | None | Awaitable[FallbackIntent | str | None]",
]


async def resolve_fallback_intent(
    handler: FallbackModelHandler,
    failed_model: str,
    fallback_model: str,
    error: BaseException | None,
) -> FallbackIntent | None:
    """Ask the handler for an intent; handler failures and unknown answers yield None."""
    try:
        raw = handler(failed_model, fallback_model, error)
        if inspect.isawaitable(raw):
            raw = await raw
    except Exception as e:
        log.error("Fallback handler failed", failed_model=failed_model, error=str(e))
        return None

    if raw is None:
        return None
    try:
        return FallbackIntent(raw)
    except ValueError:
        log.error("Unexpected fallback intent", intent=str(raw), failed_model=failed_model)
        return None


def auto_fallback_handler(
    failed_model: str,
    fallback_model: str,
    error: BaseException | None,
) -> FallbackIntent:
    """Non-interactive policy: always switch and retry."""
    log.warning(
        "Switching to fallback model",
        failed_model=failed_model,
        fallback_model=fallback_model,
        error=str(error) if error else None,
    )
    return FallbackIntent.RETRY


def make_console_fallback_handler(console: Console | None = None) -> FallbackModelHandler:
    """Build a handler that asks the user in the terminal."""
    out = console or Console()

    async def handler(
        failed_model: str,
        fallback_model: str,
        error: BaseException | None,
    ) -> FallbackIntent:
        out.print(
            f"[yellow]⚡ {failed_model} keeps hitting quota limits.[/yellow]\n"
            f"   retry: switch to {fallback_model} and continue\n"
            f"   stop:  switch to {fallback_model} for the next request\n"
            "   auth:  keep the current model and change authentication"
        )
        choice = await asyncio.to_thread(
            Prompt.ask,
            "What should happen next?",
            choices=[intent.value for intent in FallbackIntent],
            default=FallbackIntent.RETRY.value,
            console=out,
        )
        return FallbackIntent(choice)

    return handler
