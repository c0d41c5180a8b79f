"""Conversation history with comprehensive and curated views."""

import copy
import dataclasses

from chatloom.exceptions import InvalidRoleError
from chatloom.llm import Content, Part
from chatloom.logging import get_logger

log = get_logger(__name__)

VALID_ROLES = ("user", "model")


def is_valid_non_thought_text_part(part: Part) -> bool:
    """True for a plain text part (not a thought, call, response or media)."""
    return (
        isinstance(part.text, str)
        and not part.thought
        and part.function_call is None
        and part.function_response is None
        and part.inline_data is None
        and part.file_data is None
    )


def is_valid_content(content: Content) -> bool:
    """A turn is valid when it has parts, none empty, and no empty non-thought text."""
    if not content.parts:
        return False
    for part in content.parts:
        if part is None or part.is_empty():
            return False
        if not part.thought and part.text is not None and part.text == "":
            return False
    return True


def validate_history(history: list[Content]) -> None:
    """Raise InvalidRoleError if any turn has a role other than user/model."""
    for content in history:
        if content.role not in VALID_ROLES:
            raise InvalidRoleError(content.role)


def extract_curated_history(comprehensive: list[Content]) -> list[Content]:
    """Keep user turns and only those runs of model turns that are entirely valid."""
    curated: list[Content] = []
    idx = 0
    length = len(comprehensive)
    while idx < length:
        if comprehensive[idx].role == "user":
            curated.append(comprehensive[idx])
            idx += 1
            continue
        model_run: list[Content] = []
        run_valid = True
        while idx < length and comprehensive[idx].role == "model":
            model_run.append(comprehensive[idx])
            if run_valid and not is_valid_content(comprehensive[idx]):
                run_valid = False
            idx += 1
        if run_valid:
            curated.extend(model_run)
    return curated


class ChatHistory:
    """Ordered turns owned by one chat session.

    Appends are unvalidated so invalid model output is still kept for audit;
    the curated view is recomputed on every read. Callers only ever receive
    deep copies.
    """

    def __init__(self, turns: list[Content] | None = None):
        initial = list(turns or [])
        validate_history(initial)
        self._turns: list[Content] = initial

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turn: Content) -> None:
        self._turns.append(turn)

    def pop_if_last(self, turn: Content) -> bool:
        """Remove ``turn`` if it is (by identity) the most recent entry."""
        if self._turns and self._turns[-1] is turn:
            self._turns.pop()
            return True
        return False

    def get_history(self, curated: bool = False) -> list[Content]:
        turns = extract_curated_history(self._turns) if curated else self._turns
        return copy.deepcopy(turns)

    def clear(self) -> None:
        self._turns = []

    def set_history(self, turns: list[Content]) -> None:
        replacement = list(turns)
        validate_history(replacement)
        self._turns = replacement

    def strip_thought_signatures(self) -> None:
        """Drop thought signatures; turns with signed parts are replaced, not edited."""
        stripped: list[Content] = []
        removed = 0
        for turn in self._turns:
            if not any(part.thought_signature for part in turn.parts):
                stripped.append(turn)
                continue
            parts = []
            for part in turn.parts:
                if part.thought_signature:
                    removed += 1
                    part = dataclasses.replace(part, thought_signature=None)
                parts.append(part)
            stripped.append(Content(role=turn.role, parts=parts))
        self._turns = stripped
        if removed:
            log.debug("Stripped thought signatures", parts=removed)
