import logging
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from pipeline.models import ProgressEvent

logger = logging.getLogger(__name__)

Observer = Callable[[ProgressEvent], None]


@dataclass
class Subscription:
    id: str
    observer: Observer
    file_id: int | None = None
    run_id: str | None = None

    def matches(self, event: ProgressEvent) -> bool:
        if self.run_id is not None and self.run_id != event.run_id:
            return False
        if self.file_id is not None and self.file_id != event.file_id:
            return False
        return True


class ProgressChannel:
    """
    Fan-out of run events to subscribed observers.

    Delivery is best effort and unbuffered: observers are called on the
    publishing thread, must not block, and miss anything published before
    they subscribe or after they unsubscribe.
    """

    def __init__(self):
        self._lock = Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        observer: Observer,
        file_id: int | None = None,
        run_id: str | None = None,
    ) -> Subscription:
        subscription = Subscription(
            id=uuid.uuid4().hex,
            observer=observer,
            file_id=file_id,
            run_id=run_id,
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ProgressEvent) -> int:
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(event)]

        delivered = 0
        for subscription in targets:
            try:
                subscription.observer(event)
                delivered += 1
            except Exception:
                logger.exception(f"Observer {subscription.id} failed on {event.type} event")
        return delivered
