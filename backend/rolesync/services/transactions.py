"""Single-transaction reconciliation passes with post-commit invalidation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from time import perf_counter

from sqlalchemy.orm import Session

from rolesync.services.cache import CacheInvalidationNotifier, InvalidationBatch

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@contextmanager
def reconciliation_pass(
    session_factory: SessionFactory,
    notifier: CacheInvalidationNotifier,
    *,
    operation: str,
    subject: str,
) -> Iterator[tuple[Session, InvalidationBatch]]:
    """Run ledger mutation, audit write and invalidation decision as one unit.

    The batch is published only after commit. On any failure the session rolls
    back, the batch is dropped and the error propagates.
    """

    started = perf_counter()
    db = session_factory()
    batch = InvalidationBatch()
    try:
        yield db, batch
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "%s.failed subject=%s elapsed_ms=%.2f",
            operation,
            subject,
            (perf_counter() - started) * 1000.0,
        )
        raise
    finally:
        db.close()

    notifier.publish(batch)
    logger.debug(
        "%s.committed subject=%s total_ms=%.2f",
        operation,
        subject,
        (perf_counter() - started) * 1000.0,
    )
