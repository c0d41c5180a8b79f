import pytest
from rich.console import Console

from chatloom.fallback import (
    FallbackIntent,
    auto_fallback_handler,
    make_console_fallback_handler,
    resolve_fallback_intent,
)


@pytest.mark.asyncio
async def test_sync_handler_string_answer_is_coerced():
    intent = await resolve_fallback_intent(lambda *_: "stop", "pro", "flash", None)

    assert intent is FallbackIntent.STOP


@pytest.mark.asyncio
async def test_async_handler_is_awaited():
    async def handler(failed_model, fallback_model, error):
        assert (failed_model, fallback_model) == ("pro", "flash")
        return FallbackIntent.AUTH

    assert await resolve_fallback_intent(handler, "pro", "flash", RuntimeError("429")) is FallbackIntent.AUTH


@pytest.mark.asyncio
async def test_handler_failure_and_unknown_answers_yield_none():
    def broken(*_):
        raise RuntimeError("prompt closed")

    assert await resolve_fallback_intent(broken, "pro", "flash", None) is None
    assert await resolve_fallback_intent(lambda *_: "maybe", "pro", "flash", None) is None
    assert await resolve_fallback_intent(lambda *_: None, "pro", "flash", None) is None


def test_auto_handler_always_retries():
    assert auto_fallback_handler("pro", "flash", None) is FallbackIntent.RETRY


@pytest.mark.asyncio
async def test_console_handler_returns_the_chosen_intent(monkeypatch):
    asked: list[dict] = []

    def fake_ask(question, **kwargs):
        asked.append(kwargs)
        return "stop"

    monkeypatch.setattr("chatloom.fallback.Prompt.ask", fake_ask)
    console = Console(record=True, width=100)
    handler = make_console_fallback_handler(console)

    intent = await resolve_fallback_intent(handler, "gemini-2.5-pro", "gemini-2.5-flash", None)

    assert intent is FallbackIntent.STOP
    assert asked[0]["choices"] == ["retry", "stop", "auth"]
    assert "gemini-2.5-pro keeps hitting quota limits" in console.export_text()
