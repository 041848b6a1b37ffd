from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .reconcile import SessionContext, read_status_label, resolve_display_name


@dataclass(frozen=True)
class TranscriptRow:
    message_id: str
    own: bool
    name: Optional[str]
    text: str
    status: Optional[str]


def render_rows(context: SessionContext) -> List[TranscriptRow]:
    rows: List[TranscriptRow] = []
    for message in context.messages:
        own = message.author_id == context.own_id
        rows.append(
            TranscriptRow(
                message_id=message.message_id,
                own=own,
                name=resolve_display_name(message, context.own_id, context.profiles),
                text=message.text,
                status=read_status_label(message) if own else None,
            )
        )
    return rows


def render_header(context: SessionContext) -> str:
    nickname = context.profile.nickname if context.profile else ""
    return f"{nickname} ({context.account.email})"


def render_text(context: SessionContext) -> str:
    """Plain-text transcript, one line per message."""

    lines = [render_header(context)]
    for row in render_rows(context):
        if row.own:
            lines.append(f"> {row.text}  [{row.status}]")
        else:
            lines.append(f"{row.name}: {row.text}")
    return "\n".join(lines)
