"""Per-key serialization with a short duplicate-collapsing window."""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from time import monotonic


@dataclass(slots=True)
class _KeyState:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0
    processed: dict[Hashable, tuple[Hashable, float]] = field(default_factory=dict)


class DebounceSlot:
    """Exclusive view of one key's recent history while its lock is held."""

    def __init__(self, state: _KeyState, window_seconds: float, clock: Callable[[], float]) -> None:
        self._state = state
        self._window_seconds = window_seconds
        self._clock = clock

    def is_duplicate(self, subject: Hashable, fingerprint: Hashable) -> bool:
        """True when the same fingerprint for this subject completed within the window."""

        previous = self._state.processed.get(subject)
        if previous is None:
            return False
        previous_fingerprint, processed_at = previous
        return previous_fingerprint == fingerprint and self._clock() - processed_at < self._window_seconds

    def mark_processed(self, subject: Hashable, fingerprint: Hashable) -> None:
        self._state.processed[subject] = (fingerprint, self._clock())

    def forget(self) -> None:
        self._state.processed.clear()


class KeyedDebouncer:
    """Mutex map keyed by chat user; entries are dropped once idle and expired."""

    def __init__(self, window_seconds: float, *, clock: Callable[[], float] = monotonic) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._registry_lock = Lock()
        self._states: dict[Hashable, _KeyState] = {}

    @contextmanager
    def serialize(self, key: Hashable) -> Iterator[DebounceSlot]:
        state = self._checkout(key)
        try:
            with state.lock:
                yield DebounceSlot(state, self.window_seconds, self._clock)
        finally:
            self._checkin(key, state)

    def tracked_keys(self) -> int:
        with self._registry_lock:
            return len(self._states)

    def _checkout(self, key: Hashable) -> _KeyState:
        with self._registry_lock:
            state = self._states.get(key)
            if state is None:
                state = _KeyState()
                self._states[key] = state
            state.holders += 1
            return state

    def _checkin(self, key: Hashable, state: _KeyState) -> None:
        with self._registry_lock:
            state.holders -= 1
            if state.holders > 0:
                return
            now = self._clock()
            # Safe without state.lock: no holders remain and new holders need the registry lock.
            expired = [
                subject
                for subject, (_, processed_at) in state.processed.items()
                if now - processed_at >= self.window_seconds
            ]
            for subject in expired:
                del state.processed[subject]
            if not state.processed:
                self._states.pop(key, None)
