# src/cosign_core/notify/registry.py

from __future__ import annotations

import logging
import threading
import zlib
from collections.abc import Callable

from ..core.errors import DeliveryFailure
from ..core.ports import PushChannel

logger = logging.getLogger(__name__)

PresenceListener = Callable[[str, bool], None]


class ConnectionRegistry:
    """
    Live push channels, at most one per user identity.

    Locking:
    - operations on one identity (register/unregister/send) are serialized by a striped
      lock, so a send never writes to a channel that a concurrent unregister just closed
    - different identities mostly land on different stripes and do not contend

    Presence:
    - the optional presence listener is called after the lock is released; it is expected
      to hand the work off (Notifier dispatches it onto a bounded pool)
    """

    def __init__(
        self,
        *,
        stripes: int = 64,
        presence_listener: PresenceListener | None = None,
    ) -> None:
        self._channels: dict[str, PushChannel] = {}
        self._stripes = [threading.Lock() for _ in range(max(1, int(stripes)))]
        self._presence_listener = presence_listener

    def set_presence_listener(self, listener: PresenceListener | None) -> None:
        self._presence_listener = listener

    def _lock_for(self, user_id: str) -> threading.Lock:
        return self._stripes[zlib.crc32(user_id.encode("utf-8")) % len(self._stripes)]

    @staticmethod
    def _close_quietly(user_id: str, channel: PushChannel) -> None:
        try:
            if channel.is_open():
                channel.close()
        except Exception:
            logger.exception("Error closing channel for user %s", user_id)

    def _announce(self, user_id: str, online: bool) -> None:
        listener = self._presence_listener
        if listener is None:
            return
        try:
            listener(user_id, online)
        except Exception:
            logger.exception("Presence listener failed user=%s online=%s", user_id, online)

    # ---- public API ----

    def register(self, user_id: str, channel: PushChannel) -> None:
        if not user_id:
            raise ValueError("user_id is required")

        with self._lock_for(user_id):
            previous = self._channels.get(user_id)
            self._channels[user_id] = channel
            if previous is not None and previous is not channel:
                logger.info("User %s reconnected; closing superseded channel", user_id)
                self._close_quietly(user_id, previous)

        logger.info("User %s connected", user_id)
        self._announce(user_id, True)

    def unregister(self, user_id: str, channel: PushChannel | None = None) -> bool:
        """
        Remove and close the user's channel.

        With `channel` given, only removes it if it is still the registered one: a
        superseded socket that closes late must not evict its replacement.
        Returns True if a channel was removed.
        """
        with self._lock_for(user_id):
            current = self._channels.get(user_id)
            if current is None or (channel is not None and current is not channel):
                return False
            del self._channels[user_id]
            self._close_quietly(user_id, current)

        logger.info("User %s disconnected", user_id)
        self._announce(user_id, False)
        return True

    def is_online(self, user_id: str) -> bool:
        channel = self._channels.get(user_id)
        return channel is not None and channel.is_open()

    def online_users(self) -> list[str]:
        return sorted(self._channels.copy())

    def _deliver(self, user_id: str, data: bytes) -> None:
        channel = self._channels.get(user_id)
        if channel is None:
            raise DeliveryFailure(user_id, "offline")
        if not channel.is_open():
            del self._channels[user_id]
            raise DeliveryFailure(user_id, "channel closed")
        try:
            channel.send(data)
        except Exception as e:
            del self._channels[user_id]
            self._close_quietly(user_id, channel)
            raise DeliveryFailure(user_id, repr(e)) from e

    def send(self, user_id: str, data: bytes) -> bool:
        """Best-effort send. Returns False (never raises) if the message was dropped."""
        try:
            with self._lock_for(user_id):
                self._deliver(user_id, data)
        except DeliveryFailure as e:
            if e.reason == "offline":
                logger.debug("Drop message for offline user %s", user_id)
            else:
                # The broken channel was dropped from the map.
                logger.warning("%s", e)
                self._announce(user_id, False)
            return False
        return True

    def close_all(self) -> None:
        for user_id in list(self._channels):
            with self._lock_for(user_id):
                channel = self._channels.pop(user_id, None)
            if channel is not None:
                self._close_quietly(user_id, channel)
        logger.info("ConnectionRegistry closed")
