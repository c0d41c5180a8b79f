from chatloom.config import ContextConfig
from chatloom.context_budget import (
    ContextBudgetManager,
    analyze_context_size,
    estimate_text_tokens,
    estimate_tokens,
)
from chatloom.llm import Content, FunctionResponse, Part


def turn(role: str, chars: int) -> Content:
    return Content(role=role, parts=[Part(text="x" * chars)])


def ten_turns() -> list[Content]:
    # 400 chars -> 100 tokens per turn, 1000 tokens in total
    return [turn("user" if i % 2 == 0 else "model", 400) for i in range(10)]


def tool_result(name: str, output: str) -> Content:
    return Content(
        role="user",
        parts=[Part(function_response=FunctionResponse(name=name, response={"output": output}, id=f"{name}-1"))],
    )


def test_estimates_use_four_chars_per_token():
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abcde") == 2
    assert estimate_tokens(ten_turns()) == 1000


def test_analyze_context_size_breaks_down_sources():
    info = analyze_context_size(ten_turns(), "s" * 40, [{"name": "read_file"}])

    assert info.history == 1000
    assert info.system_instruction == 10
    assert info.tools > 0
    assert info.total == info.history + info.system_instruction + info.tools
    assert "History: 1.0K tokens" in info.breakdown


def test_under_budget_history_is_returned_untouched():
    manager = ContextBudgetManager()
    history = ten_turns()

    result = manager.check_and_trim(history, None, None, model_limit=1_000_000)

    assert result.trimmed_history == history
    assert result.warning is None
    assert result.removed_entries == 0


def test_trims_three_oldest_entries_and_reports_count():
    manager = ContextBudgetManager()
    history = ten_turns()

    # safe limit = 700 tokens -> 300 tokens (three turns) must go
    result = manager.check_and_trim(history, "", None, model_limit=1000)

    assert result.removed_entries == 3
    assert result.trimmed_history == history[3:]
    assert len(result.trimmed_history) >= 4
    assert "Trimmed 3 older history entries" in result.warning
    assert result.breakdown is not None
    assert len(history) == 10


def test_trimming_is_a_fixed_point():
    manager = ContextBudgetManager()
    first = manager.check_and_trim(ten_turns(), "", None, model_limit=1000)

    second = manager.check_and_trim(first.trimmed_history, "", None, model_limit=1000)

    assert second.trimmed_history == first.trimmed_history
    assert second.removed_entries == 0
    assert second.warning is None


def test_preserved_tail_survives_and_warning_flags_oversized_context():
    manager = ContextBudgetManager()

    result = manager.check_and_trim(ten_turns(), "", None, model_limit=100)

    assert len(result.trimmed_history) == 4
    assert result.removed_entries == 6
    assert "Trimmed 6 older history entries" in result.warning
    assert "oversized" in result.warning


def test_old_tool_results_are_summarized_not_removed():
    manager = ContextBudgetManager(ContextConfig(preserved_entries=4))
    big_output = "line\n" * 300
    recent_output = "y" * 5000
    history = [
        Content(role="user", parts=[Part(text="read it")]),
        tool_result("read_file", big_output),
        turn("model", 10),
        turn("user", 10),
        turn("model", 10),
        tool_result("grep", recent_output),
    ]

    trimmed = manager.trim_old_tool_results(history)

    summary = trimmed[1].parts[0].function_response
    assert summary.name == "read_file"
    assert summary.id == "read_file-1"
    assert summary.response["output"].startswith(
        f"[Tool result truncated: read_file returned {len(big_output)} chars. First 200 chars: "
    )
    assert summary.response["output"].endswith("...]")
    assert trimmed[5].parts[0].function_response.response["output"] == recent_output
    assert history[1].parts[0].function_response.response["output"] == big_output


def test_short_tool_results_are_left_alone():
    manager = ContextBudgetManager()
    history = [tool_result("ls", "a\nb\n")] + [turn("model", 5) for _ in range(4)]

    trimmed = manager.trim_old_tool_results(history)

    assert trimmed[0] is history[0]


def test_many_small_entries_trim_to_a_fixed_point():
    manager = ContextBudgetManager()
    history = [turn("user" if i % 2 == 0 else "model", 1) for i in range(20)]

    # 20 chars -> 5 tokens, safe limit = 3 tokens (12 chars)
    first = manager.check_and_trim(history, "", None, model_limit=5)
    second = manager.check_and_trim(first.trimmed_history, "", None, model_limit=5)

    assert first.removed_entries == 8
    assert analyze_context_size(first.trimmed_history, "", None).total <= 3
    assert "approaching limit" in first.warning
    assert second.removed_entries == 0
    assert second.warning is None


def test_uneven_entries_stay_under_the_safe_limit():
    manager = ContextBudgetManager()
    history = [turn("user", 3), turn("model", 5), turn("user", 2), turn("model", 7)] + [
        turn("user" if i % 2 == 0 else "model", 1) for i in range(8)
    ]

    # 25 chars -> 7 tokens, safe limit = floor(10 * 0.7) = 7 is not exceeded
    untouched = manager.check_and_trim(history, "", None, model_limit=10)
    # safe limit = floor(8 * 0.7) = 5 tokens (20 chars): dropping the 3- and 5-char turns is enough
    trimmed = manager.check_and_trim(history, "", None, model_limit=8)

    assert untouched.removed_entries == 0
    assert trimmed.removed_entries == 2
    assert trimmed.trimmed_history == history[2:]
    assert manager.check_and_trim(trimmed.trimmed_history, "", None, model_limit=8).removed_entries == 0


def test_context_exactly_at_the_safe_limit_is_not_trimmed():
    manager = ContextBudgetManager()
    history = ten_turns()[:7]

    # 700 tokens against a safe limit of 700
    result = manager.check_and_trim(history, "", None, model_limit=1000)

    assert result.removed_entries == 0
    assert result.trimmed_history == history
    assert result.warning is None
