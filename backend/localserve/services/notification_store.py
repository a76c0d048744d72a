from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from localserve.models import NotificationRecord
from localserve.services.push_sender import PushSender, push_sender

MAX_NOTIFICATIONS_PER_USER = 100


class NotificationStore:
    """In-app inbox per user, mirrored to registered devices as push messages."""

    def __init__(self, sender: PushSender = push_sender):
        self._lock = Lock()
        self._sender = sender
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = sorted(self._device_tokens.get(user_id, set()))
        invalid_tokens = self._sender.send_record(tokens=tokens, record=record)
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def create_for_users(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> List[NotificationRecord]:
        seen: set[str] = set()
        records: List[NotificationRecord] = []
        for user_id in user_ids:
            if not user_id or user_id in seen:
                continue
            seen.add(user_id)
            records.append(self.create(user_id=user_id, title=title, body=body, category=category, deep_link=deep_link))
        return records

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:MAX_NOTIFICATIONS_PER_USER]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
