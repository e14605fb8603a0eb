"""Presence notifications, voice-state fan-out and the presence oracle."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from pydantic import BaseModel

from pairs_tracker.db import EventKind

# Attributes a voice state carries besides being connected
ATTRIBUTE_KINDS = (EventKind.MUTE, EventKind.DEAF, EventKind.STREAMING)

ActiveKey = tuple[str, str, EventKind]


class PresenceNotification(BaseModel):
    """One attribute of one user turning on (active) or off."""

    kind: EventKind
    user_id: str
    channel_id: str | None = None
    guild_id: str
    at: datetime
    active: bool


class VoiceState(BaseModel):
    """A user's voice state as reported by the chat platform."""

    user_id: str
    guild_id: str
    channel_id: str | None = None
    mute: bool = False
    deaf: bool = False
    streaming: bool = False

    def attribute(self, kind: EventKind) -> bool:
        if kind is EventKind.CONNECT:
            return self.channel_id is not None
        return bool(getattr(self, kind.value))


class VoiceStateUpdate(BaseModel):
    """A before/after pair of voice states, as read by `pairs ingest --voice`."""

    before: VoiceState | None = None
    after: VoiceState | None = None
    at: datetime


def diff_voice_states(
    before: VoiceState | None,
    after: VoiceState | None,
    at: datetime,
) -> list[PresenceNotification]:
    """Translate a voice-state change into per-kind notifications.

    - Moving away from a channel ends `connect` there.
    - Leaving voice entirely also ends every attribute.
    - Joining a channel starts `connect` on it.
    - Each attribute that changed starts or ends. With no previous state every
      attribute is reported, which is how a snapshot of current states is replayed.

    Args:
        before: Previous state, or None when only the current state is known.
        after: New state, or None when the user is gone.
        at: When the change happened.

    Returns:
        Notifications in the order they should be applied.
    """
    current = after or before
    if current is None:
        return []

    user_id = current.user_id
    guild_id = current.guild_id
    before_channel = before.channel_id if before else None
    after_channel = after.channel_id if after else None
    notifications: list[PresenceNotification] = []

    def notify(kind: EventKind, channel_id: str | None, active: bool) -> None:
        notifications.append(
            PresenceNotification(
                kind=kind,
                user_id=user_id,
                channel_id=channel_id,
                guild_id=guild_id,
                at=at,
                active=active,
            )
        )

    channel_changed = before is not None and before_channel != after_channel

    if channel_changed and before_channel is not None:
        notify(EventKind.CONNECT, before_channel, False)

    if after_channel is None:
        if before is not None:
            for kind in ATTRIBUTE_KINDS:
                notify(kind, before_channel, False)
        return notifications

    if before is None or channel_changed:
        notify(EventKind.CONNECT, after_channel, True)

    for kind in ATTRIBUTE_KINDS:
        value = after.attribute(kind) if after else False
        if before is None or before.attribute(kind) != value:
            notify(kind, after_channel, value)

    return notifications


class PresenceOracle(Protocol):
    """Authoritative source for what is true right now."""

    def is_active(self, channel_id: str, user_id: str, kind: EventKind) -> bool:
        ...

    def snapshot_active(self) -> set[ActiveKey]:
        ...


class SnapshotOracle:
    """Oracle answering from a fixed set of (channel_id, user_id, kind) keys."""

    def __init__(self, active: Iterable[ActiveKey] = ()) -> None:
        self._active = {(channel_id, user_id, EventKind(kind)) for channel_id, user_id, kind in active}

    @classmethod
    def from_voice_states(cls, states: Iterable[VoiceState]) -> SnapshotOracle:
        """Build an oracle from the voice states of every connected user."""
        active: list[ActiveKey] = []
        for state in states:
            if state.channel_id is None:
                continue
            for kind in EventKind:
                if state.attribute(kind):
                    active.append((state.channel_id, state.user_id, kind))
        return cls(active)

    def is_active(self, channel_id: str, user_id: str, kind: EventKind) -> bool:
        return (channel_id, user_id, kind) in self._active

    def snapshot_active(self) -> set[ActiveKey]:
        return set(self._active)
