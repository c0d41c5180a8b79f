import json

import pytest
import structlog

import chatloom.logging as logging_module
from chatloom.chat import ChatSession
from chatloom.config import Config, get_config, set_config
from chatloom.llm import Candidate, FinishReason, ResponseChunk
from chatloom.llm.fake import FakeContentGenerator
from chatloom.logging import (
    bind_send_context,
    configure_logging,
    ensure_logging,
    get_logger,
    set_system_log_sink,
)
from chatloom.tools.registry import ToolRegistry


def json_config(level: str) -> Config:
    cfg = get_config().model_copy(deep=True)
    cfg.logging.format = "json"
    cfg.logging.level = level
    return cfg


def test_json_logs_are_routed_to_the_system_sink():
    old_cfg = get_config().model_copy(deep=True)
    set_config(json_config("DEBUG"))
    lines: list[str] = []
    set_system_log_sink(lines.append)
    try:
        configure_logging()
        get_logger("chatloom.tests").info("Fallback decision", intent="retry")
    finally:
        set_system_log_sink(None)
        set_config(old_cfg)
        configure_logging()

    event = json.loads(lines[-1])
    assert event["event"] == "Fallback decision"
    assert event["intent"] == "retry"
    assert event["level"] == "info"
    assert "timestamp" in event


def test_level_filter_drops_debug_events():
    lines: list[str] = []
    set_system_log_sink(lines.append)
    try:
        configure_logging(json_config("WARNING"))
        log = get_logger("chatloom.tests.filter")
        log.debug("noise")
        log.warning("Model stream stalled", chunks=3)
    finally:
        set_system_log_sink(None)
        configure_logging()

    assert [json.loads(line)["event"] for line in lines] == ["Model stream stalled"]


def test_sink_switch_reaches_existing_loggers():
    log = get_logger("chatloom.tests.switch")
    first: list[str] = []
    second: list[str] = []
    try:
        configure_logging(json_config("INFO"))
        set_system_log_sink(first.append)
        log.info("one")
        set_system_log_sink(second.append)
        log.info("two")
    finally:
        set_system_log_sink(None)
        configure_logging()

    assert [json.loads(line)["event"] for line in first] == ["one"]
    assert [json.loads(line)["event"] for line in second] == ["two"]


def test_send_context_is_bound_only_inside_the_block():
    lines: list[str] = []
    set_system_log_sink(lines.append)
    try:
        configure_logging(json_config("INFO"))
        log = get_logger("chatloom.tests.context")
        with bind_send_context("prompt-7", "gemini-2.5-pro"):
            log.info("inside")
        log.info("outside")
    finally:
        set_system_log_sink(None)
        configure_logging()

    inside, outside = (json.loads(line) for line in lines)
    assert inside["prompt_id"] == "prompt-7"
    assert inside["model"] == "gemini-2.5-pro"
    assert "prompt_id" not in outside
    assert "model" not in outside


@pytest.mark.asyncio
async def test_session_events_carry_the_prompt_id():
    generator = FakeContentGenerator({"generate_content_stream": [
        [ResponseChunk(candidates=[Candidate(finish_reason=FinishReason.SAFETY)])],
    ]})
    lines: list[str] = []
    set_system_log_sink(lines.append)
    try:
        configure_logging(json_config("INFO"))
        session = ChatSession(generator, ToolRegistry(), config=Config())
        async for _ in session.send_message_stream("gemini-2.5-pro", "hi", "prompt-42"):
            pass
    finally:
        set_system_log_sink(None)
        configure_logging()

    events = [json.loads(line) for line in lines]
    rollback = next(e for e in events if e["event"] == "Removed uncommitted user turn")
    assert rollback["prompt_id"] == "prompt-42"
    assert rollback["model"] == "gemini-2.5-pro"


def test_ensure_logging_leaves_host_configuration_alone(monkeypatch):
    monkeypatch.setattr(logging_module, "_active_config", None)
    structlog.reset_defaults()
    host_processors = [structlog.processors.JSONRenderer()]
    structlog.configure(processors=host_processors)
    try:
        ensure_logging(json_config("DEBUG"))

        assert structlog.get_config()["processors"] == host_processors
        assert logging_module._active_config is None
    finally:
        configure_logging()
