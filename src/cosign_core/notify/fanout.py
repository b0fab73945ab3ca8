# src/cosign_core/notify/fanout.py

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from ..core.ports import PresenceGraph
from .messages import EventType, encode_message
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class Notifier:
    """
    Best-effort notification fan-out.

    - targets are computed by the caller (the use case that triggered the event)
    - one encode, one registry.send per distinct target
    - no persistence, no retry, no ordering across targets
    - presence broadcasts run on a bounded worker pool instead of a thread per event
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        graph: PresenceGraph | None = None,
        max_workers: int = 4,
    ) -> None:
        self._registry = registry
        self._graph = graph
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="cosign-fanout",
        )

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    def notify(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        targets: Iterable[str | None],
    ) -> int:
        """Send one message to every connected target. Returns the delivered count."""
        data = encode_message(event_type, payload)
        delivered = 0
        seen: set[str] = set()
        for user_id in targets:
            if not user_id or user_id in seen:
                continue
            seen.add(user_id)
            try:
                if self._registry.send(user_id, data):
                    delivered += 1
            except Exception:
                logger.exception("Fan-out failed event=%s user=%s", event_type.value, user_id)
        logger.debug(
            "Fan-out event=%s targets=%d delivered=%d",
            event_type.value,
            len(seen),
            delivered,
        )
        return delivered

    def presence_audience(self, user_id: str) -> list[str]:
        """
        Who should hear about user_id going online/offline:
        - the user's saved verifiers
        - the users who saved this user as a verifier
        """
        if self._graph is None:
            return []
        audience = list(self._graph.list_saved_verifiers(user_id))
        audience.extend(self._graph.list_users_who_saved(user_id))
        return audience

    def _broadcast_presence_now(self, user_id: str, online: bool) -> int:
        try:
            audience = self.presence_audience(user_id)
        except Exception:
            logger.exception("Failed to compute presence audience for user %s", user_id)
            return 0
        return self.notify(
            EventType.PRESENCE_CHANGED,
            {"userId": user_id, "isOnline": online},
            audience,
        )

    def broadcast_presence(self, user_id: str, online: bool) -> Future[int] | None:
        """Queue a presence broadcast on the worker pool (does not block the caller)."""
        try:
            return self._pool.submit(self._broadcast_presence_now, user_id, online)
        except RuntimeError:
            # Pool already shut down (process is stopping).
            logger.debug("Presence broadcast dropped after shutdown user=%s", user_id)
            return None

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        logger.info("Notifier stopped")
