"""Tests for the event debounce policy."""

from __future__ import annotations

from facegate.core.models import CooldownState
from facegate.recognition import cooldown


class TestDecide:
    def test_first_event_always_emitted(self):
        emit, state = cooldown.decide(CooldownState(3000), "alice", 0)
        assert emit
        assert state == CooldownState(3000, 0, "alice")

    def test_same_key_within_interval_suppressed(self):
        state = CooldownState(3000, 1000, "alice")
        emit, new_state = cooldown.decide(state, "alice", 3999)
        assert not emit
        assert new_state is state

    def test_same_key_at_interval_emitted(self):
        emit, new_state = cooldown.decide(CooldownState(3000, 1000, "alice"), "alice", 4000)
        assert emit
        assert new_state.last_event_timestamp_ms == 4000

    def test_different_key_overrides(self):
        emit, new_state = cooldown.decide(CooldownState(3000, 1000, "alice"), "bob", 1010)
        assert emit
        assert new_state == CooldownState(3000, 1010, "bob")

    def test_unknown_key_debounced_like_any_other(self):
        emit, _ = cooldown.decide(CooldownState(3000, 1000, "unknown"), "unknown", 1500)
        assert not emit

    def test_zero_interval_never_suppresses(self):
        emit, _ = cooldown.decide(CooldownState(0, 1000, "alice"), "alice", 1000)
        assert emit

    def test_input_state_not_mutated(self):
        state = CooldownState(3000)
        cooldown.decide(state, "alice", 0)
        assert state.last_event_key is None


class TestRemaining:
    def test_free_when_no_event(self):
        assert cooldown.remaining_ms(CooldownState(3000), 500) == 0

    def test_counts_down(self):
        state = CooldownState(3000, 1000, "alice")
        assert cooldown.remaining_ms(state, 2000) == 2000
        assert cooldown.remaining_ms(state, 9000) == 0
