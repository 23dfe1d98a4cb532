from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
DEFAULT_CONVERSATION_NAME = "New Conversation"

STATUS_ACTIVE = "active"
STATUS_DELETED = "deleted"

# Roles returned when a conversation is read back.
VISIBLE_ROLES = {"user", "assistant", "tool_call", "tool_result"}


def utcnow() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def _append_jsonl(path: Path, payload: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False))
        handle.write("\n")


def _iter_jsonl(path: Path) -> Iterable[Dict]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)


@dataclass
class ConversationRecord:
    guid: str
    chatbot_card: str
    created_by: Optional[str]
    name: str = DEFAULT_CONVERSATION_NAME
    summary: Optional[str] = None
    status: str = STATUS_ACTIVE
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConversationStore:
    """
    Append-only conversation store backed by JSONL files on disk.

    Each conversation lives in its own file. The first entry holds the
    conversation metadata, later ``status`` entries update it, and ``message``
    entries carry the exchanged messages in write order.
    """

    def __init__(self, root: Path) -> None:
        self.root = root / "conversations"
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _conversation_path(self, guid: str) -> Path:
        return self.root / f"conversation_{guid}.jsonl"

    def _append(self, guid: str, entry: Dict) -> None:
        payload = dict(entry)
        payload.setdefault("id", uuid4().hex)
        payload.setdefault("timestamp", utcnow())
        with self._lock:
            _append_jsonl(self._conversation_path(guid), payload)

    def create_conversation(self, *, chatbot_card: str, created_by: Optional[str]) -> ConversationRecord:
        record = ConversationRecord(
            guid=str(uuid4()),
            chatbot_card=chatbot_card,
            created_by=created_by,
        )
        self._append(
            record.guid,
            {
                "type": "metadata",
                "timestamp": record.created_at,
                "content": record.to_dict(),
            },
        )
        return record

    def get_conversation(self, guid: str) -> Optional[ConversationRecord]:
        if not _is_safe_guid(guid):
            return None
        record: Optional[ConversationRecord] = None
        for entry in _iter_jsonl(self._conversation_path(guid)):
            kind = entry.get("type")
            if kind == "metadata":
                record = ConversationRecord(**entry.get("content") or {})
            elif kind == "status" and record is not None:
                record.status = (entry.get("content") or {}).get("status", record.status)
                record.updated_at = entry.get("timestamp") or record.updated_at
        return record

    def list_conversations(
        self,
        *,
        chatbot_card: Optional[str] = None,
        created_by: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[ConversationRecord]:
        items: List[ConversationRecord] = []
        for file in sorted(self.root.glob("conversation_*.jsonl")):
            try:
                guid = file.stem.split("_", 1)[1]
            except IndexError:
                continue
            record = self.get_conversation(guid)
            if record is None:
                continue
            if not include_deleted and not record.active:
                continue
            if chatbot_card is not None and record.chatbot_card != chatbot_card:
                continue
            if created_by is not None and record.created_by != created_by:
                continue
            items.append(record)
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    def mark_deleted(self, guid: str) -> Optional[ConversationRecord]:
        record = self.get_conversation(guid)
        if record is None:
            return None
        self._append(guid, {"type": "status", "content": {"status": STATUS_DELETED}})
        return self.get_conversation(guid)

    def append_message(
        self,
        guid: str,
        role: str,
        content: Any,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        entry_id = uuid4().hex
        entry = {
            "id": entry_id,
            "type": "message",
            "role": role,
            "content": content,
            "user_id": user_id,
            "metadata": metadata or {},
        }
        self._append(guid, entry)
        return entry_id

    def load_messages(self, guid: str) -> List[Dict]:
        if not _is_safe_guid(guid):
            return []
        return [
            entry
            for entry in _iter_jsonl(self._conversation_path(guid))
            if entry.get("type") == "message" and entry.get("role") in VISIBLE_ROLES
        ]

    def writable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)


def _is_safe_guid(guid: str) -> bool:
    # Conversation ids end up in file names.
    return bool(guid) and all(ch.isalnum() or ch == "-" for ch in guid)
