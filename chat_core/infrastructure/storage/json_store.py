import json
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, PersistenceService
from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.logging.logger import logger


@dataclass
class ConversationMetadata:
    """meta.json 中保存的会话摘要（不含消息正文）。"""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    total_tokens: int = 0
    message_count: int = 0
    last_model: Optional[str] = None


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonPersistenceService(PersistenceService):
    """每个会话一个目录、一个 meta.json 的本地持久化实现。

    目录结构：<storage_root>/conversations/<conversation_id>/meta.json
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def save_conversation_metadata(self, conversation: Conversation) -> ConversationMetadata:
        last = conversation.last_message
        meta = ConversationMetadata(
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            total_tokens=conversation.total_tokens,
            message_count=len(conversation.messages),
            last_model=last.model_used if last is not None else None,
        )
        cdir = self._conv_root / conversation.id
        try:
            cdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), conversation_id=conversation.id)
        self._write_meta(cdir, meta)
        logger.info(
            "Conversation metadata saved",
            extra={"extra": {"conversation_id": conversation.id, "message_count": meta.message_count}},
        )
        return meta

    def get_conversation_metadata(self, conversation_id: str) -> ConversationMetadata:
        meta_path = self._conv_root / conversation_id / "meta.json"
        if not meta_path.exists():
            raise BusinessError(
                code="CONVERSATION_NOT_FOUND",
                message=conversation_id,
                http_status=404,
            )
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            return self._to_metadata(data)
        except (OSError, ValueError, KeyError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), conversation_id=conversation_id)

    def list_conversation_metadata(self) -> List[ConversationMetadata]:
        """列出所有会话摘要，最近更新的在前；损坏的 meta.json 记录日志后跳过。"""

        items: List[ConversationMetadata] = []
        for cdir in sorted(self._conv_root.glob("*/")):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                data = json.loads(meta_path.read_text(encoding="utf-8"))
                items.append(self._to_metadata(data))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(
                    "Skipping unreadable conversation metadata",
                    extra={"extra": {"path": str(meta_path), "error": str(e)}},
                )
        items.sort(key=lambda m: m.updated_at, reverse=True)
        return items

    def delete_conversation_metadata(self, conversation_id: str) -> None:
        cdir = self._conv_root / conversation_id
        if not cdir.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), conversation_id=conversation_id)

    def _write_meta(self, cdir: Path, meta: ConversationMetadata) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": meta.id,
            "title": meta.title,
            "created_at": _iso(meta.created_at),
            "updated_at": _iso(meta.updated_at),
            "total_tokens": meta.total_tokens,
            "message_count": meta.message_count,
            "last_model": meta.last_model,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), conversation_id=meta.id)

    def _to_metadata(self, data: Dict[str, Any]) -> ConversationMetadata:
        return ConversationMetadata(
            id=data["id"],
            title=data.get("title") or "",
            created_at=_parse_iso(data["created_at"]),
            updated_at=_parse_iso(data["updated_at"]),
            total_tokens=int(data.get("total_tokens") or 0),
            message_count=int(data.get("message_count") or 0),
            last_model=data.get("last_model"),
        )
