from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_GATEWAY_URL = "http://127.0.0.1:8080"
NOTIFICATION_DISMISS_S = 5.0


@dataclass(frozen=True)
class ClientConfig:
    gateway_url: str = DEFAULT_GATEWAY_URL
    notification_dismiss_s: float = NOTIFICATION_DISMISS_S
    # 0 keeps a failed message subscription down until the next sign-in.
    max_resubscribe_attempts: int = 0
    resubscribe_base_delay_s: float = 1.0
    resubscribe_max_delay_s: float = 30.0

    def resubscribe_delay(self, attempt: int) -> float:
        """Exponential backoff delay before re-subscription ``attempt`` (0-based)."""

        return min(self.resubscribe_base_delay_s * (2**attempt), self.resubscribe_max_delay_s)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            gateway_url=os.environ.get("CHAT_GATEWAY_URL") or DEFAULT_GATEWAY_URL,
            notification_dismiss_s=_parse_non_negative_float("CHAT_NOTIFICATION_DISMISS_S", NOTIFICATION_DISMISS_S),
            max_resubscribe_attempts=_parse_non_negative_int("CHAT_MAX_RESUBSCRIBE_ATTEMPTS", 0),
            resubscribe_base_delay_s=_parse_non_negative_float("CHAT_RESUBSCRIBE_BASE_DELAY_S", 1.0),
            resubscribe_max_delay_s=_parse_non_negative_float("CHAT_RESUBSCRIBE_MAX_DELAY_S", 30.0),
        )


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_non_negative_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed
