"""Overlay signals carried inside ordinary chat lines.

Overlay widgets read the chat and react to lines such as
``[QueueAdd] dQw4w9WgXcQ alice -``. The processor builds typed values; the
bracket text only exists once ``render()`` is called at the publish boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

EMPTY_FIELD = "-"


class SignalKind(Enum):
    QUEUE_ADD = "QueueAdd"
    INSTANT_PLAY = "InstantPlay"
    SKIP = "Skip"
    STOP = "Stop"
    PAUSE = "Pause"
    RESUME = "Resume"
    QUEUE_CHECK = "QueueCheck"


@dataclass(frozen=True)
class OverlaySignal:
    kind: SignalKind
    fields: tuple[str, ...] = field(default_factory=tuple)

    def render(self) -> str:
        """Serialize as ``[Kind] f1 f2 …``; empty fields become ``-``."""
        parts = [f"[{self.kind.value}]"]
        for value in self.fields:
            value = " ".join(str(value).split())
            parts.append(value or EMPTY_FIELD)
        return " ".join(parts)


@dataclass(frozen=True)
class PaidMessage:
    """A viewer-paid broadcast, e.g. ``[100 pts] @alice says: hello``."""

    cost: int
    name: str
    text: str

    def render(self) -> str:
        return f"[{self.cost} pts] @{self.name} says: {self.text}"


def queue_add(video_id: str, requester: str, title: str = "") -> OverlaySignal:
    return OverlaySignal(SignalKind.QUEUE_ADD, (video_id, requester, title))


def instant_play(video_id: str, requester: str) -> OverlaySignal:
    return OverlaySignal(SignalKind.INSTANT_PLAY, (video_id, requester))


def player_control(kind: SignalKind, requester: str) -> OverlaySignal:
    return OverlaySignal(kind, (requester,))


def queue_check(requester: str) -> OverlaySignal:
    return OverlaySignal(SignalKind.QUEUE_CHECK, (requester,))
