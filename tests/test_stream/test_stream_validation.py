import pytest

from chatloom.exceptions import InvalidStreamError
from chatloom.llm import Candidate, Content, FinishReason, FunctionCall, Part, ResponseChunk
from chatloom.stream_validation import (
    EMPTY_RESPONSE_MESSAGE,
    FALLBACK_EMPTY_MESSAGE,
    LOCAL_SERVER_STALLED_MESSAGE,
    NO_FINISH_REASON_MESSAGE,
    InvalidStreamKind,
    StreamAccumulator,
    StreamStatus,
    StreamValidator,
    consolidate_parts,
)


def chunk(parts: list[Part] | None, finish: FinishReason | None = None) -> ResponseChunk:
    content = Content(role="model", parts=parts) if parts is not None else None
    return ResponseChunk(candidates=[Candidate(content=content, finish_reason=finish)])


def test_tool_call_without_finish_reason_is_valid():
    acc = StreamAccumulator()
    acc.add(chunk([Part(function_call=FunctionCall(name="read_file", args={"path": "a.py"}))]))

    verdict = StreamValidator().classify_accumulated(acc)

    assert verdict.status == StreamStatus.VALID
    assert acc.has_tool_call is True
    assert acc.has_finish_reason is False


def test_missing_finish_reason_is_retryable():
    verdict = StreamValidator().classify(
        has_tool_call=False,
        has_finish_reason=False,
        last_finish_reason=None,
        response_text="half an answer",
    )

    assert verdict.status == StreamStatus.RETRYABLE
    assert verdict.kind == InvalidStreamKind.NO_FINISH_REASON
    assert verdict.message == NO_FINISH_REASON_MESSAGE


def test_local_server_gets_troubleshooting_message():
    verdict = StreamValidator(local_server=True).classify(
        has_tool_call=False,
        has_finish_reason=False,
        last_finish_reason=None,
        response_text="",
    )

    assert verdict.message == LOCAL_SERVER_STALLED_MESSAGE


@pytest.mark.parametrize(
    ("reason", "expected"),
    [(FinishReason.SAFETY, "safety filters"), (FinishReason.RECITATION, "recitation")],
)
def test_blocked_empty_responses_are_fatal(reason, expected):
    acc = StreamAccumulator()
    acc.add(chunk(None, reason))

    verdict = StreamValidator().classify_accumulated(acc)

    assert verdict.status == StreamStatus.FATAL
    assert expected in verdict.message
    with pytest.raises(InvalidStreamError) as exc_info:
        StreamValidator.raise_for(verdict)
    assert exc_info.value.should_retry is False
    assert exc_info.value.finish_reason == reason.value


def test_empty_text_with_stop_is_retryable_and_fallback_wording_differs():
    validator = StreamValidator()
    kwargs = dict(has_tool_call=False, has_finish_reason=True, last_finish_reason=FinishReason.STOP, response_text="")

    primary = validator.classify(**kwargs)
    fallback = validator.classify(**kwargs, in_fallback_mode=True)

    assert primary.status == StreamStatus.RETRYABLE
    assert primary.kind == InvalidStreamKind.NO_RESPONSE_TEXT
    assert primary.message == EMPTY_RESPONSE_MESSAGE
    assert fallback.message == FALLBACK_EMPTY_MESSAGE


def test_finish_reason_on_any_chunk_counts():
    acc = StreamAccumulator()
    acc.add(chunk([Part(text="Hello")], FinishReason.STOP))
    acc.add(chunk([Part(text=" world")]))

    assert acc.has_finish_reason is True
    assert StreamValidator().classify_accumulated(acc).is_valid


def test_consolidate_merges_adjacent_text_only():
    call = Part(function_call=FunctionCall(name="ls"))
    parts = [Part(text="a"), Part(text="b"), call, Part(text="c"), Part(text="d", thought=True)]

    merged = consolidate_parts(parts)

    assert [p.text for p in merged] == ["ab", None, "c", "d"]
    assert merged[1] is call
    assert parts[0].text == "a"


def test_accumulator_keeps_thoughts_out_of_response_text():
    acc = StreamAccumulator()
    acc.add(chunk([Part(text="**Plan** think", thought=True), Part(text="  answer ")], FinishReason.STOP))
    acc.add(chunk([Part(text="")]))

    assert acc.response_text() == "answer"
    assert len(acc.thoughts) == 1
    assert acc.chunk_count == 2


def test_raise_for_valid_verdict_is_a_no_op():
    verdict = StreamValidator().classify(
        has_tool_call=False,
        has_finish_reason=True,
        last_finish_reason=FinishReason.STOP,
        response_text="done",
    )

    StreamValidator.raise_for(verdict)


def test_stalled_stream_counts_as_unfinished_unless_it_made_a_call():
    text_only = StreamAccumulator()
    text_only.add(chunk([Part(text="done")], FinishReason.STOP))
    with_call = StreamAccumulator()
    with_call.add(chunk([Part(function_call=FunctionCall(name="read_file", args={"path": "a.py"}))]))

    validator = StreamValidator()
    stalled_text = validator.classify_accumulated(text_only, stalled=True)
    stalled_call = validator.classify_accumulated(with_call, stalled=True)

    assert stalled_text.status == StreamStatus.RETRYABLE
    assert stalled_text.kind == InvalidStreamKind.NO_FINISH_REASON
    assert stalled_call.status == StreamStatus.VALID
