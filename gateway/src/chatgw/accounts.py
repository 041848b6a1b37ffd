from __future__ import annotations

import asyncio
import secrets
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict

from passlib.context import CryptContext

from .documents import _now_ms

MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Password hashing runs here, off the event loop.
_password_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="bcrypt_")


class AuthError(Exception):
    pass


@dataclass(frozen=True)
class Account:
    account_id: str
    email: str


@dataclass
class _Credential:
    account: Account
    password_hash: str


@dataclass
class Session:
    account: Account
    session_token: str
    expires_at_ms: int


def _normalize_email(email: str) -> str:
    return email.strip().lower()


async def _run_blocking(func: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_password_executor, func, *args)


class AccountStore:
    """Email/password accounts keyed by normalized email.

    Unknown emails are still checked against a throwaway hash so that a
    failed sign-in costs the same whether or not the account exists.
    """

    def __init__(self, *, context: CryptContext = pwd_context) -> None:
        self._context = context
        self._by_email: Dict[str, _Credential] = {}
        self._dummy_hash: str | None = None

    def sign_up(self, email: str, password: str) -> Account:
        key = self._check_new(email, password)
        return self._register(key, self._context.hash(password))

    def sign_in(self, email: str, password: str) -> Account:
        credential = self._by_email.get(_normalize_email(email))
        hashed = credential.password_hash if credential is not None else self._unknown_hash()
        return self._accept(credential, self._context.verify(password, hashed))

    async def sign_up_async(self, email: str, password: str) -> Account:
        key = self._check_new(email, password)
        password_hash = await _run_blocking(self._context.hash, password)
        return self._register(key, password_hash)

    async def sign_in_async(self, email: str, password: str) -> Account:
        credential = self._by_email.get(_normalize_email(email))
        if credential is not None:
            hashed = credential.password_hash
        else:
            hashed = await _run_blocking(self._unknown_hash)
        verified = await _run_blocking(self._context.verify, password, hashed)
        return self._accept(credential, verified)

    def _check_new(self, email: str, password: str) -> str:
        key = _normalize_email(email)
        if not key or "@" not in key:
            raise AuthError("invalid email")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError("weak password")
        if key in self._by_email:
            raise AuthError("email already in use")
        return key

    def _register(self, key: str, password_hash: str) -> Account:
        # Re-checked after hashing: a concurrent sign-up may have won.
        if key in self._by_email:
            raise AuthError("email already in use")
        account = Account(account_id=secrets.token_hex(14), email=key)
        self._by_email[key] = _Credential(account=account, password_hash=password_hash)
        return account

    def _unknown_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._context.hash(secrets.token_urlsafe(16))
        return self._dummy_hash

    @staticmethod
    def _accept(credential: _Credential | None, verified: bool) -> Account:
        if credential is None or not verified:
            raise AuthError("invalid credentials")
        return credential.account


class SessionStore:
    """Tracks issued session tokens until sign-out or expiry."""

    def __init__(self, ttl_ms: int = 24 * 60 * 60 * 1000, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_token: Dict[str, Session] = {}

    def create(self, account: Account) -> Session:
        session = Session(
            account=account,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._by_token[session.session_token] = session
        return session

    def get(self, session_token: str) -> Session | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.session_token, None)
