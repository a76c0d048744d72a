import logging
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional
from uuid import uuid4

from localserve.models import ServiceRequest

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[ServiceRequest], None]


@dataclass(frozen=True)
class _Subscription:
    callback: SnapshotCallback
    request_id: Optional[str] = None
    customer_user_id: Optional[str] = None

    def matches(self, snapshot: ServiceRequest) -> bool:
        if self.request_id is not None and snapshot.id != self.request_id:
            return False
        if self.customer_user_id is not None and snapshot.customer_user_id != self.customer_user_id:
            return False
        return True


class RequestFeed:
    """Fan-out of committed service-request snapshots to live subscribers.

    Every publish carries the full record, so subscribers never need earlier
    deliveries to make sense of the latest one.
    """

    def __init__(self):
        self._lock = Lock()
        self._subscriptions: Dict[str, _Subscription] = {}

    def subscribe(
        self,
        callback: SnapshotCallback,
        *,
        request_id: Optional[str] = None,
        customer_user_id: Optional[str] = None,
    ) -> Callable[[], None]:
        token = uuid4().hex
        with self._lock:
            self._subscriptions[token] = _Subscription(
                callback=callback,
                request_id=request_id,
                customer_user_id=customer_user_id,
            )

        def unsubscribe() -> None:
            with self._lock:
                self._subscriptions.pop(token, None)

        return unsubscribe

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, snapshot: ServiceRequest) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(snapshot)]
        for sub in targets:
            try:
                sub.callback(snapshot.model_copy(deep=True))
            except Exception:
                logger.exception("Request feed subscriber failed for request %s", snapshot.id)


request_feed = RequestFeed()
