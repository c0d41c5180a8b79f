"""Tracking of unresolved tool calls with one "all resolved" signal."""

import asyncio

from chatloom.exceptions import ToolCallsCancelledError
from chatloom.logging import get_logger

log = get_logger(__name__)


def _mark_retrieved(future: asyncio.Future[None]) -> None:
    if not future.cancelled():
        future.exception()


class PendingToolCalls:
    """Call id -> last known status for calls that have not settled yet.

    ``wait_for_all`` resolves once the map drains; ``cancel_all`` rejects
    current waiters with ToolCallsCancelledError instead of leaving them hanging.
    """

    def __init__(self):
        self._statuses: dict[str, str] = {}
        self._signal: asyncio.Future[None] | None = None

    def __len__(self) -> int:
        return len(self._statuses)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._statuses

    @property
    def call_ids(self) -> list[str]:
        return list(self._statuses)

    def status(self, call_id: str) -> str | None:
        return self._statuses.get(call_id)

    def register(self, call_id: str, status: str) -> None:
        """Add or update a pending call."""
        if not self._statuses:
            self._signal = None
        self._statuses[call_id] = status
        log.debug("Registered pending tool call", call_id=call_id, status=status, pending=len(self._statuses))

    def resolve(self, call_id: str) -> None:
        if self._statuses.pop(call_id, None) is None:
            return
        log.debug("Resolved pending tool call", call_id=call_id, pending=len(self._statuses))
        if not self._statuses and self._signal is not None and not self._signal.done():
            self._signal.set_result(None)

    async def wait_for_all(self) -> None:
        """Wait until every registered call is resolved.

        Raises:
            ToolCallsCancelledError if the calls are cancelled first
        """
        if not self._statuses:
            return
        if self._signal is None:
            self._signal = asyncio.get_running_loop().create_future()
            self._signal.add_done_callback(_mark_retrieved)
        log.debug("Waiting for pending tool calls", pending=len(self._statuses))
        await asyncio.shield(self._signal)

    def cancel_all(self, reason: str) -> None:
        if self._statuses:
            log.info("Cancelling pending tool calls", pending=len(self._statuses), reason=reason)
        self._statuses.clear()
        signal, self._signal = self._signal, None
        if signal is not None and not signal.done():
            signal.set_exception(ToolCallsCancelledError(reason))
