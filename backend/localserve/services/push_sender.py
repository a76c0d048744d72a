import logging
import os
from threading import Lock
from typing import Dict, List, Optional

from localserve.models import NotificationRecord

logger = logging.getLogger(__name__)

INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not found")

ANDROID_CHANNELS = {
    "request": "service_requests",
    "application": "provider_applications",
    "payment": "payments",
    "system": "general",
}

# deep-link prefix -> data key the mobile client routes on
_DEEP_LINK_KEYS = {
    "request": "request_id",
    "application": "applicant_user_id",
}


def build_push_data(record: NotificationRecord) -> Dict[str, str]:
    """Flatten a notification into the string-only data map FCM accepts."""
    data = {
        "notification_id": record.id,
        "category": record.category,
        "deep_link": record.deep_link or "",
    }
    if record.deep_link and ":" in record.deep_link:
        kind, target = record.deep_link.split(":", 1)
        key = _DEEP_LINK_KEYS.get(kind)
        if key and target:
            data[key] = target
    return data


class PushSender:
    """Firebase Cloud Messaging fan-out for marketplace notifications.

    Initialised on first send. Without credentials the sender stays disabled
    and every send is a no-op.
    """

    def __init__(self, credentials_path: Optional[str] = None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            credentials_path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
            if not credentials_path:
                self._initialized = True
                logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                self._initialized = True
                logger.exception("Push sender disabled: firebase-admin is not installed")
                return

            try:
                cred = credentials.Certificate(credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except (ValueError, OSError):
                logger.exception("Push sender disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send_record(self, tokens: List[str], record: NotificationRecord) -> List[str]:
        """Push ``record`` to every device token and return the tokens Firebase reported as dead."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        messaging = self._messaging
        message = messaging.MulticastMessage(
            notification=messaging.Notification(title=record.title, body=record.body),
            data=build_push_data(record),
            android=messaging.AndroidConfig(
                priority="high" if record.category in {"request", "payment"} else "normal",
                notification=messaging.AndroidNotification(
                    channel_id=ANDROID_CHANNELS.get(record.category, "general"),
                ),
            ),
            tokens=tokens,
        )
        try:
            batch = messaging.send_each_for_multicast(message)
        except Exception:
            logger.exception("Push send failed for notification %s (%d tokens)", record.id, len(tokens))
            return []
        invalid: List[str] = []
        for idx, response in enumerate(batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if any(marker in error_text for marker in INVALID_TOKEN_MARKERS):
                invalid.append(tokens[idx])
        if invalid:
            logger.info("Dropping %d invalid push tokens for %s", len(invalid), record.user_id)
        return invalid


push_sender = PushSender()
