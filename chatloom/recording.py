"""Chat recording sinks: in-memory and SQLite."""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from chatloom.config import Config, get_config
from chatloom.llm import UsageMetadata
from chatloom.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class ChatRecord:
    """One recorded event of a chat session."""

    kind: str  # "message", "thought", "tokens", "tool_calls"
    payload: dict[str, Any]
    timestamp: str = field(default_factory=_utcnow_iso)


class ChatRecorder(ABC):
    """Receives committed messages, thoughts, token usage and tool calls."""

    @abstractmethod
    async def _append(self, record: ChatRecord) -> None:
        pass

    async def record_message(self, model: str, type: str, content: str) -> None:
        await self._append(ChatRecord("message", {"model": model, "type": type, "content": content}))

    async def record_thought(self, subject: str, description: str) -> None:
        await self._append(ChatRecord("thought", {"subject": subject, "description": description}))

    async def record_message_tokens(self, usage: UsageMetadata) -> None:
        await self._append(ChatRecord("tokens", asdict(usage)))

    async def record_tool_calls(self, calls: list[dict[str, Any]]) -> None:
        await self._append(ChatRecord("tool_calls", {"calls": calls}))


class InMemoryChatRecorder(ChatRecorder):
    """Keeps records in a list."""

    def __init__(self):
        self.records: list[ChatRecord] = []

    async def _append(self, record: ChatRecord) -> None:
        self.records.append(record)

    def of_kind(self, kind: str) -> list[ChatRecord]:
        return [record for record in self.records if record.kind == kind]


class SqliteChatRecorder(ChatRecorder):
    """Persists records of one session to SQLite."""

    def __init__(self, db_path: Path | str | None = None, session_id: str | None = None):
        """Initialize the recorder.

        Args:
            db_path: Optional database path override
            session_id: Session to record under (random when omitted)
        """
        if db_path is None:
            self.db_path = Path(get_config().recording.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.session_id = session_id or str(uuid.uuid4())

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS chat_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_chat_records_session ON chat_records(session_id, id)"
            )
            await self._db.commit()
            log.debug("Opened chat recording", path=str(self.db_path), session_id=self.session_id)

    async def _append(self, record: ChatRecord) -> None:
        await self._ensure_db()
        await self._db.execute(
            "INSERT INTO chat_records (session_id, kind, payload, created_at) VALUES (?, ?, ?, ?)",
            (self.session_id, record.kind, json.dumps(record.payload, default=str), record.timestamp),
        )
        await self._db.commit()

    async def load_records(self) -> list[ChatRecord]:
        """Load this session's records in insertion order."""
        await self._ensure_db()

        async with self._db.execute(
            "SELECT kind, payload, created_at FROM chat_records WHERE session_id = ? ORDER BY id",
            (self.session_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            ChatRecord(kind=row[0], payload=json.loads(row[1]), timestamp=row[2])
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def create_recorder(config: Config | None = None, session_id: str | None = None) -> ChatRecorder | None:
    """Build the recorder selected by configuration, or None when recording is off."""
    cfg = config or get_config()
    if not cfg.recording.enabled:
        return None
    return SqliteChatRecorder(cfg.recording.path, session_id=session_id)
