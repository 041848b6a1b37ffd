"""Hosted document, auth and live-query service used by the chat client."""

from .accounts import Account, AccountStore, AuthError, SessionStore
from .backend import MESSAGES, USERS, Backend
from .documents import SERVER_TIMESTAMP, AppendToSet, DocumentStore
from .hub import Subscription, SubscriptionHub
from .server import main

__all__ = [
    "Account",
    "AccountStore",
    "AppendToSet",
    "AuthError",
    "Backend",
    "DocumentStore",
    "MESSAGES",
    "SERVER_TIMESTAMP",
    "SessionStore",
    "Subscription",
    "SubscriptionHub",
    "USERS",
    "main",
]
