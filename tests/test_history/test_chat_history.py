import pytest

from chatloom.exceptions import InvalidRoleError
from chatloom.history import ChatHistory, extract_curated_history, is_valid_content
from chatloom.llm import Content, FunctionCall, Part


def user(text: str) -> Content:
    return Content(role="user", parts=[Part(text=text)])


def model(text: str) -> Content:
    return Content(role="model", parts=[Part(text=text)])


def _is_subsequence(sub: list[Content], full: list[Content]) -> bool:
    it = iter(full)
    return all(any(item is candidate for candidate in it) for item in sub)


def test_is_valid_content_rejects_empty_parts_and_empty_text():
    assert is_valid_content(model("hi")) is True
    assert is_valid_content(Content(role="model", parts=[])) is False
    assert is_valid_content(Content(role="model", parts=[Part()])) is False
    assert is_valid_content(Content(role="model", parts=[Part(text="")])) is False
    assert is_valid_content(Content(role="model", parts=[Part(text="", thought=True)])) is True
    assert is_valid_content(
        Content(role="model", parts=[Part(function_call=FunctionCall(name="read_file"))])
    ) is True


def test_curated_history_drops_whole_model_run_when_any_turn_is_invalid():
    comprehensive = [
        user("one"),
        model("fine"),
        user("two"),
        model("partial"),
        Content(role="model", parts=[]),
        model("after"),
        user("three"),
    ]

    curated = extract_curated_history(comprehensive)

    assert [c.parts[0].text for c in curated] == ["one", "fine", "two", "three"]
    assert _is_subsequence(curated, comprehensive)


def test_curated_history_keeps_user_turns_even_when_invalid():
    comprehensive = [Content(role="user", parts=[]), model("ok")]

    curated = extract_curated_history(comprehensive)

    assert len(curated) == 2


def test_constructor_rejects_unknown_roles():
    with pytest.raises(InvalidRoleError, match="Role must be user or model, but got system."):
        ChatHistory([Content(role="system", parts=[Part(text="x")])])


def test_set_history_validates_roles_and_keeps_previous_turns_on_failure():
    history = ChatHistory([user("hello")])

    with pytest.raises(InvalidRoleError):
        history.set_history([user("a"), Content(role="tool", parts=[Part(text="b")])])

    assert len(history) == 1


def test_get_history_returns_deep_copies():
    history = ChatHistory([user("hello"), model("hi")])

    copy_one = history.get_history()
    copy_one[0].parts[0].text = "mutated"
    copy_one.append(user("extra"))

    fresh = history.get_history()
    assert fresh[0].parts[0].text == "hello"
    assert len(fresh) == 2


def test_pop_if_last_matches_by_identity():
    history = ChatHistory()
    turn = user("hello")
    lookalike = user("hello")
    history.append(turn)

    assert history.pop_if_last(lookalike) is False
    assert history.pop_if_last(turn) is True
    assert len(history) == 0


def test_strip_thought_signatures_replaces_signed_turns():
    signed = Content(role="model", parts=[Part(text="answer", thought_signature="sig")])
    history = ChatHistory([user("q"), signed])

    history.strip_thought_signatures()

    turns = history.get_history()
    assert turns[1].parts[0].thought_signature is None
    assert turns[1].parts[0].text == "answer"
    assert signed.parts[0].thought_signature == "sig"
