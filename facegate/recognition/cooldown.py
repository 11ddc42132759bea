"""Debounce policy for recognition events.

A lingering face must not produce an event every frame, but a different
person appearing right after must be reported immediately.
"""

from __future__ import annotations

from dataclasses import replace

from facegate.core.models import CooldownState


def decide(state: CooldownState, candidate_key: str, now_ms: int) -> tuple[bool, CooldownState]:
    """Decide whether an event keyed by ``candidate_key`` at ``now_ms`` is emitted.

    Emits when no event has been emitted yet, when ``min_interval_ms`` has
    elapsed since the last one, or when the key differs from the last
    emitted key. Returns ``(emit, new_state)``; the state is unchanged
    when the event is suppressed.
    """
    if state.last_event_timestamp_ms is None:
        emit = True
    else:
        elapsed = now_ms - state.last_event_timestamp_ms
        emit = elapsed >= state.min_interval_ms or candidate_key != state.last_event_key

    if not emit:
        return False, state
    return True, replace(state, last_event_timestamp_ms=now_ms, last_event_key=candidate_key)


def remaining_ms(state: CooldownState, now_ms: int) -> int:
    """Milliseconds until the current key may be emitted again (0 when free)."""
    if state.last_event_timestamp_ms is None:
        return 0
    return max(state.min_interval_ms - (now_ms - state.last_event_timestamp_ms), 0)
