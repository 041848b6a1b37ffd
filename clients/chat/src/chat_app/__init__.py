"""Chat client: live message feed reconciliation on top of a hosted service."""

from .config import ClientConfig
from .focus import FocusTracker
from .models import Account, Message, Profile, order_snapshot
from .notify import NotificationCenter
from .reconcile import Reconciler, SessionContext, read_status_label, resolve_display_name
from .service import AuthError, ChatService, LocalService, ServiceError
from .session import ChatSession

__all__ = [
    "Account",
    "AuthError",
    "ChatService",
    "ChatSession",
    "ClientConfig",
    "FocusTracker",
    "LocalService",
    "Message",
    "NotificationCenter",
    "Profile",
    "Reconciler",
    "ServiceError",
    "SessionContext",
    "order_snapshot",
    "read_status_label",
    "resolve_display_name",
]
