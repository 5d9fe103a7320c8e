"""Post-commit cache invalidation signalling and the status read cache."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from rolesync.services.stacking import WhitelistStatus, ensure_utc

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class InvalidationSignal:
    """One committed mutation's worth of stale keys."""

    sequence: int
    game_ids: tuple[str, ...]
    chat_user_ids: tuple[str, ...]


class InvalidationSink(Protocol):
    def invalidate(self, signal: InvalidationSignal) -> None: ...


class InvalidationBatch:
    """Keys collected during a transaction, published only once it commits."""

    def __init__(self) -> None:
        self._game_ids: dict[str, None] = {}
        self._chat_user_ids: dict[str, None] = {}

    def add_game_id(self, game_id: str | None) -> None:
        if game_id:
            self._game_ids[game_id] = None

    def add_game_ids(self, game_ids: Iterable[str | None]) -> None:
        for game_id in game_ids:
            self.add_game_id(game_id)

    def add_chat_user_id(self, chat_user_id: str | None) -> None:
        if chat_user_id:
            self._chat_user_ids[chat_user_id] = None

    @property
    def game_ids(self) -> tuple[str, ...]:
        return tuple(self._game_ids)

    @property
    def chat_user_ids(self) -> tuple[str, ...]:
        return tuple(self._chat_user_ids)

    def __bool__(self) -> bool:
        return bool(self._game_ids or self._chat_user_ids)


class CacheInvalidationNotifier:
    """Fan-out of invalidation signals to subscribed read-side sinks."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._sinks: list[InvalidationSink] = []
        self._sequence = 0

    def subscribe(self, sink: InvalidationSink) -> None:
        with self._lock:
            if sink not in self._sinks:
                self._sinks.append(sink)

    def unsubscribe(self, sink: InvalidationSink) -> None:
        with self._lock:
            if sink in self._sinks:
                self._sinks.remove(sink)

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._sequence

    def publish(self, batch: InvalidationBatch) -> InvalidationSignal | None:
        """Deliver one signal for a committed batch. Empty batches publish nothing."""

        if not batch:
            return None
        with self._lock:
            self._sequence += 1
            signal = InvalidationSignal(
                sequence=self._sequence,
                game_ids=batch.game_ids,
                chat_user_ids=batch.chat_user_ids,
            )
            sinks = list(self._sinks)

        for sink in sinks:
            try:
                sink.invalidate(signal)
            except Exception:
                # The mutation is already committed; one failing sink must not starve the others.
                logger.exception(
                    "cache.invalidate_failed sequence=%s sink=%s",
                    signal.sequence,
                    type(sink).__name__,
                )
        logger.debug(
            "cache.invalidated sequence=%s game_ids=%s chat_user_ids=%s",
            signal.sequence,
            ",".join(signal.game_ids),
            ",".join(signal.chat_user_ids),
        )
        return signal


class WhitelistStatusCache:
    """In-process read model of derived status, keyed by game id.

    A key being loaded carries a generation counter bumped on invalidation, so
    a load that raced an invalidation is returned to its caller but never
    stored. A cached "active" status is served only until its expiration.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._lock = Lock()
        self._values: dict[str, WhitelistStatus] = {}
        self._generations: dict[str, int] = {}
        self._loading: dict[str, int] = {}

    def get_or_load(self, game_id: str, loader: Callable[[], WhitelistStatus]) -> WhitelistStatus:
        with self._lock:
            cached = self._fresh_value(game_id)
            if cached is not None:
                return cached
            generation = self._generations.setdefault(game_id, 0)
            self._loading[game_id] = self._loading.get(game_id, 0) + 1

        try:
            value = loader()
        except Exception:
            with self._lock:
                self._finish_load(game_id)
            raise

        with self._lock:
            if self._generations.get(game_id) == generation:
                self._values[game_id] = value
            self._finish_load(game_id)
        return value

    def peek(self, game_id: str) -> WhitelistStatus | None:
        with self._lock:
            return self._fresh_value(game_id)

    def invalidate(self, signal: InvalidationSignal) -> None:
        # Status is per game id; every mutation that touches a game id's entries lists it.
        with self._lock:
            for game_id in signal.game_ids:
                self._drop(game_id)

    def clear(self) -> None:
        with self._lock:
            for game_id in list(self._values) + list(self._loading):
                self._drop(game_id)

    def tracked_keys(self) -> int:
        """Keys holding a value or a generation counter."""

        with self._lock:
            return len(self._values.keys() | self._generations.keys())

    def _fresh_value(self, game_id: str) -> WhitelistStatus | None:
        cached = self._values.get(game_id)
        if cached is None:
            return None
        lapsed = cached.expiration is not None and ensure_utc(cached.expiration) <= self._clock()
        if cached.status == "active" and lapsed:
            del self._values[game_id]
            return None
        return cached

    def _drop(self, game_id: str) -> None:
        self._values.pop(game_id, None)
        if game_id in self._loading:
            self._generations[game_id] += 1
        else:
            self._generations.pop(game_id, None)

    def _finish_load(self, game_id: str) -> None:
        remaining = self._loading[game_id] - 1
        if remaining:
            self._loading[game_id] = remaining
            return
        del self._loading[game_id]
        self._generations.pop(game_id, None)
