"""Chat transcript storage: a Protocol plus the PostgreSQL implementation."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import ChatRecord, ChatSummary, StoredChatMessage

DEFAULT_CHAT_TITLE = "New Chat"


class ChatStorage(Protocol):
    def migrate(self) -> None: ...

    def save_chat(
        self,
        *,
        user_id: str,
        chat_id: str | None,
        title: str | None,
        messages: list[StoredChatMessage],
    ) -> ChatRecord | None:
        """Create a chat, or replace the messages of an existing one.

        Returns None when `chat_id` does not belong to the user.
        """
        ...

    def list_chats(self, user_id: str) -> list[ChatSummary]: ...

    def get_chat(self, user_id: str, chat_id: str) -> ChatRecord | None: ...

    def delete_chat(self, user_id: str, chat_id: str) -> bool: ...


class PostgresChatStorage:
    """Persist orchestrator chats in PostgreSQL (`orchestrator_chats`)."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("TASKCHAIN_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS orchestrator_chats (
                    id UUID PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title VARCHAR(256),
                    messages JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orchestrator_chats_user_updated
                ON orchestrator_chats(user_id, updated_at DESC)
                """)
            conn.commit()

    def save_chat(
        self,
        *,
        user_id: str,
        chat_id: str | None,
        title: str | None,
        messages: list[StoredChatMessage],
    ) -> ChatRecord | None:
        now = datetime.now(tz=UTC)
        messages_payload = self._json_wrapper(
            [message.model_dump(mode="json", by_alias=True, exclude_none=True) for message in messages]
        )
        with self._lock, self._connect() as conn:
            if chat_id is None:
                chat_id = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO orchestrator_chats (id, user_id, title, messages, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (chat_id, user_id, title or None, messages_payload, now, now),
                )
            else:
                row = conn.execute(
                    """
                    UPDATE orchestrator_chats
                    SET messages = %s,
                        title = COALESCE(%s, title),
                        updated_at = %s
                    WHERE id::text = %s AND user_id = %s
                    RETURNING id
                    """,
                    (messages_payload, title or None, now, chat_id, user_id),
                ).fetchone()
                if row is None:
                    return None
            conn.commit()
        return self.get_chat(user_id, chat_id)

    def list_chats(self, user_id: str) -> list[ChatSummary]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, title, created_at, updated_at
                FROM orchestrator_chats
                WHERE user_id = %s
                ORDER BY updated_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [
            ChatSummary(
                id=str(row["id"]),
                title=row["title"] or DEFAULT_CHAT_TITLE,
                created_at=self._parse_datetime(row["created_at"]),
                updated_at=self._parse_datetime(row["updated_at"]),
            )
            for row in rows
        ]

    def get_chat(self, user_id: str, chat_id: str) -> ChatRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM orchestrator_chats WHERE id::text = %s AND user_id = %s",
                (chat_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_chat(row)

    def delete_chat(self, user_id: str, chat_id: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "DELETE FROM orchestrator_chats WHERE id::text = %s AND user_id = %s RETURNING id",
                (chat_id, user_id),
            ).fetchone()
            conn.commit()
        return row is not None

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_messages(raw: Any) -> list[StoredChatMessage]:
        if raw is None:
            return []
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, list):
            return []
        return [StoredChatMessage.model_validate(item) for item in parsed if isinstance(item, dict)]

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_chat(cls, row: Any) -> ChatRecord:
        return ChatRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            messages=cls._parse_messages(row["messages"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
