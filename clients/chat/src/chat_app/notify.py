"""Desktop notifications for messages that arrive while the window is inactive."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .config import NOTIFICATION_DISMISS_S

logger = logging.getLogger(__name__)

PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_DEFAULT = "default"
_PERMISSIONS = {PERMISSION_GRANTED, PERMISSION_DENIED, PERMISSION_DEFAULT}


class Notification:
    def __init__(self, title: str, body: str, tag: str, center: "NotificationCenter") -> None:
        self.title = title
        self.body = body
        self.tag = tag
        self.dismissed = False
        self._center = center
        self._timer: Optional[asyncio.TimerHandle] = None

    def dismiss(self) -> None:
        if self.dismissed:
            return
        self.dismissed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._center._closed(self)

    def activate(self) -> None:
        """User clicked the notification: bring the session forward and close it."""

        if self.dismissed:
            return
        self._center._activated(self)
        self.dismiss()


class NotificationBackend:
    def show(self, notification: Notification) -> None:
        raise NotImplementedError

    def close(self, notification: Notification) -> None:
        raise NotImplementedError


class LoggingBackend(NotificationBackend):
    def show(self, notification: Notification) -> None:
        logger.info("notification: %s: %s", notification.title, notification.body)

    def close(self, notification: Notification) -> None:
        logger.debug("notification closed: %s", notification.tag)


class NotificationCenter:
    def __init__(
        self,
        backend: NotificationBackend | None = None,
        *,
        permission: str = PERMISSION_DEFAULT,
        dismiss_after_s: float = NOTIFICATION_DISMISS_S,
    ) -> None:
        if permission not in _PERMISSIONS:
            raise ValueError(f"unknown notification permission: {permission}")
        self.backend = backend or LoggingBackend()
        self.permission = permission
        self.dismiss_after_s = dismiss_after_s
        self.on_activate: Optional[Callable[[Notification], None]] = None

    @property
    def granted(self) -> bool:
        return self.permission == PERMISSION_GRANTED

    def show(self, title: str, body: str, *, tag: str = "") -> Optional[Notification]:
        """Display a notification; returns ``None`` unless permission is granted."""

        if not self.granted:
            return None
        notification = Notification(title, body, tag, self)
        self.backend.show(notification)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return notification
        notification._timer = loop.call_later(self.dismiss_after_s, notification.dismiss)
        return notification

    def _closed(self, notification: Notification) -> None:
        self.backend.close(notification)

    def _activated(self, notification: Notification) -> None:
        if self.on_activate is not None:
            self.on_activate(notification)
