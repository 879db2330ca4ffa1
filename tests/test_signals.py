"""Tests for overlay signal serialization."""

from __future__ import annotations

from lurk_economy.signals import (
    OverlaySignal,
    PaidMessage,
    SignalKind,
    instant_play,
    player_control,
    queue_add,
    queue_check,
)


class TestOverlaySignal:
    def test_queue_add_with_title(self):
        sig = queue_add("dQw4w9WgXcQ", "Alice", "Never Gonna Give You Up")
        assert sig.render() == "[QueueAdd] dQw4w9WgXcQ Alice Never Gonna Give You Up"

    def test_empty_field_rendered_as_dash(self):
        """Fields are never omitted; overlays split on position."""
        assert queue_add("dQw4w9WgXcQ", "Alice").render() == "[QueueAdd] dQw4w9WgXcQ Alice -"

    def test_instant_play(self):
        assert instant_play("dQw4w9WgXcQ", "Mod").render() == "[InstantPlay] dQw4w9WgXcQ Mod"

    def test_player_controls(self):
        assert player_control(SignalKind.SKIP, "Mod").render() == "[Skip] Mod"
        assert player_control(SignalKind.STOP, "Mod").render() == "[Stop] Mod"
        assert player_control(SignalKind.PAUSE, "Mod").render() == "[Pause] Mod"
        assert player_control(SignalKind.RESUME, "Mod").render() == "[Resume] Mod"

    def test_queue_check(self):
        assert queue_check("Alice").render() == "[QueueCheck] Alice"

    def test_whitespace_collapsed(self):
        sig = OverlaySignal(SignalKind.QUEUE_ADD, ("id", "  Alice  ", "a\n  b"))
        assert sig.render() == "[QueueAdd] id Alice a b"

    def test_no_fields(self):
        assert OverlaySignal(SignalKind.STOP).render() == "[Stop]"


class TestPaidMessage:
    def test_render(self):
        msg = PaidMessage(cost=100, name="Alice", text="hello chat")
        assert msg.render() == "[100 pts] @Alice says: hello chat"
