from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chatrelay.chat.types import UIMessage
from chatrelay.memory.config import build_postgres_dsn, load_database_config

DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 50


def _connect(dsn: str):
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)


def _dsn() -> Optional[str]:
    return build_postgres_dsn(load_database_config())


@dataclass(frozen=True)
class DBMessage:
    id: str
    chat_id: str
    role: str
    parts: List[Dict[str, Any]]
    created_at: datetime


def chat_title(messages: Sequence[UIMessage]) -> str:
    """Title from the first user message, else the default."""
    for m in messages:
        if m.role != "user":
            continue
        text = " ".join(m.text().split())
        if not text:
            continue
        if len(text) <= TITLE_MAX_CHARS:
            return text
        return text[: TITLE_MAX_CHARS - 3].rstrip() + "..."
    return DEFAULT_TITLE


def convert_to_db_messages(
    messages: Sequence[UIMessage], chat_id: str, *, now: Optional[datetime] = None
) -> List[DBMessage]:
    """
    Pure transform from UI messages to storage records.

    Messages without parts store their content as a single text part. Timestamps are
    spaced one microsecond apart so conversation order survives ORDER BY created_at.
    """
    base = now or datetime.now(timezone.utc)
    out: List[DBMessage] = []
    for i, m in enumerate(messages):
        parts = [p.model_dump(mode="json", by_alias=True, exclude_none=True) for p in m.parts]
        if not parts:
            parts = [{"type": "text", "text": m.content or ""}]
        out.append(
            DBMessage(
                id=m.id or f"msg-{uuid.uuid4().hex[:24]}",
                chat_id=chat_id,
                role=m.role,
                parts=parts,
                created_at=base + timedelta(microseconds=i),
            )
        )
    return out


def chat_exists(*, chat_id: str, user_id: str) -> Tuple[bool, str, Optional[bool]]:
    """Returns (ok, msg, exists). exists is None when the lookup could not run."""
    dsn = _dsn()
    if not dsn:
        return False, "Postgres not configured", None
    cid = (chat_id or "").strip()
    uid = (user_id or "").strip()
    if not cid or not uid:
        return True, "ok", False
    with _connect(dsn) as conn:
        row = conn.execute("SELECT 1 FROM chats WHERE id = %s AND user_id = %s;", (cid, uid)).fetchone()
        return True, "ok", row is not None


def _claim_chat(conn, *, chat_id: str, user_id: str, messages: Sequence[UIMessage]) -> bool:
    """Create the chat or touch it; False when the id belongs to another user."""
    conn.execute(
        "INSERT INTO users(id) VALUES (%s) ON CONFLICT (id) DO UPDATE SET updated_at = now();",
        (user_id,),
    )
    # The title is only set on creation. A conflicting row owned by someone else is
    # neither updated nor returned.
    row = conn.execute(
        """
        INSERT INTO chats(id, user_id, title)
        VALUES (%s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET updated_at = now()
        WHERE chats.user_id = EXCLUDED.user_id
        RETURNING id;
        """,
        (chat_id, user_id, chat_title(messages)),
    ).fetchone()
    return row is not None


def _insert_messages(conn, messages: Sequence[DBMessage]) -> None:
    from psycopg.types.json import Jsonb  # type: ignore[import-not-found]

    # Stored messages are immutable; ids seen before are skipped.
    for m in messages:
        conn.execute(
            """
            INSERT INTO messages(id, chat_id, role, parts, created_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING;
            """,
            (m.id, m.chat_id, m.role, Jsonb(m.parts), m.created_at),
        )


def append_transcript(*, chat_id: str, user_id: str, messages: Sequence[UIMessage]) -> Tuple[bool, str]:
    """
    Persist a whole conversation (chat row + new messages) in one transaction.

    Nothing is written when the chat id belongs to another user.
    """
    dsn = _dsn()
    if not dsn:
        return False, "Postgres not configured"
    cid = (chat_id or "").strip()
    uid = (user_id or "").strip()
    if not cid:
        return False, "chat_id_required"
    if not uid:
        return False, "user_id_required"
    from psycopg import Rollback  # type: ignore[import-not-found]

    records = convert_to_db_messages(messages, cid)
    with _connect(dsn) as conn:
        with conn.transaction():
            owned = _claim_chat(conn, chat_id=cid, user_id=uid, messages=messages)
            if not owned:
                raise Rollback()
            _insert_messages(conn, records)
    if not owned:
        return False, "chat_owned_by_other_user"
    return True, "ok"


def check_health() -> Tuple[bool, Dict[str, Any]]:
    """Connectivity plus table existence. Returns (ok, body)."""
    dsn = _dsn()
    if not dsn:
        return False, {"status": "unhealthy", "error": "Postgres not configured"}
    try:
        with _connect(dsn) as conn:
            conn.execute("SELECT 1;")
            conn.execute("SELECT 1 FROM chats LIMIT 1;")
            conn.execute("SELECT 1 FROM messages LIMIT 1;")
    except Exception as e:
        return False, {"status": "unhealthy", "error": type(e).__name__}
    return True, {"status": "healthy", "database": "connected", "tables": "exist"}
