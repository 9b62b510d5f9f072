"""
In-process change hub backing the live product and order views.

Writers refresh a topic after their write commits: the snapshot is built
and delivered under that topic's lock, so subscribers see snapshots in commit
order and never end on a stale one. A subscription holds a watch
handle until `unsubscribe()` is called, which is safe to call more than once.
"""
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

Callback = Callable[[Any], None]
Snapshot = Callable[[], Any]


class Subscription:
    def __init__(self, hub: "ChangeHub", topic: str, callback: Callback):
        self.hub = hub
        self.topic = topic
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.hub._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.unsubscribe()


class ChangeHub:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self._topic_locks: Dict[str, threading.RLock] = {}

    def _topic_lock(self, topic: str) -> threading.RLock:
        with self._lock:
            return self._topic_locks.setdefault(topic, threading.RLock())

    def subscribe(self, topic: str, callback: Callback, snapshot: Optional[Snapshot] = None) -> Subscription:
        """Register `callback` on `topic`.

        With `snapshot`, the current state is delivered before any later
        refresh can reach the new subscriber. If that first delivery fails
        the subscription is released and the error propagates.
        """
        subscription = Subscription(self, topic, callback)
        with self._topic_lock(topic):
            with self._lock:
                self._subscriptions[topic].append(subscription)
            logger.debug("subscription_opened", topic=topic)
            if snapshot is not None:
                try:
                    callback(snapshot())
                except Exception:
                    subscription.unsubscribe()
                    raise
        return subscription

    def _remove(self, subscription: Subscription):
        with self._lock:
            subs = self._subscriptions.get(subscription.topic, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscriptions.pop(subscription.topic, None)
        logger.debug("subscription_closed", topic=subscription.topic)

    def has_subscribers(self, topic: str) -> bool:
        with self._lock:
            return bool(self._subscriptions.get(topic))

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(topic, []))

    def topics(self) -> List[str]:
        with self._lock:
            return list(self._subscriptions)

    def publish(self, topic: str, payload: Any):
        with self._lock:
            targets = list(self._subscriptions.get(topic, []))
        for subscription in targets:
            try:
                subscription.callback(payload)
            except Exception:
                # a failing subscriber is treated as terminated
                logger.exception("subscriber_failed", topic=topic)
                subscription.unsubscribe()

    def refresh(self, topic: str, snapshot: Snapshot):
        """Build a snapshot and publish it while holding the topic's lock.

        Two writers refreshing the same topic deliver in the order they
        build, so the last snapshot delivered includes both commits.
        """
        if not self.has_subscribers(topic):
            return
        with self._topic_lock(topic):
            self.publish(topic, snapshot())


hub = ChangeHub()
