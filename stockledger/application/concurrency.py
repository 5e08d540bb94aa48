"""
Optimistic-lock retry wrapper.

An operation is a callable taking a Session that reads current state and
performs version-checked writes. Each attempt runs in a fresh session and is
committed as one unit of work. VersionConflict rolls the attempt back and
reruns the whole operation against fresh state after a backoff delay.
"""

from typing import Any, Callable, Dict, TypeVar
import threading
import time

from sqlalchemy.orm import Session, sessionmaker

from stockledger.core.logging_config import get_logger
from stockledger.domain.errors import VersionConflict

logger = get_logger(__name__)

T = TypeVar("T")


class ConcurrencyController:

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = 5,
        backoff_seconds: float = 0.1,
        backoff_multiplier: float = 2.0,
        max_backoff_seconds: float = 0.8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff_seconds = max_backoff_seconds
        self._sleep = sleep
        self._stats_lock = threading.Lock()
        self._stats = {"runs": 0, "conflicts": 0, "exhausted": 0}

    @classmethod
    def from_settings(cls, session_factory: sessionmaker, settings) -> "ConcurrencyController":
        return cls(
            session_factory,
            max_attempts=settings.OPTIMISTIC_LOCK_MAX_ATTEMPTS,
            backoff_seconds=settings.OPTIMISTIC_LOCK_BACKOFF_SECONDS,
            backoff_multiplier=settings.OPTIMISTIC_LOCK_BACKOFF_MULTIPLIER,
            max_backoff_seconds=settings.OPTIMISTIC_LOCK_MAX_BACKOFF_SECONDS,
        )

    def run(self, operation: Callable[[Session], T], name: str = "operation") -> T:
        """Run ``operation`` to commit, retrying only on VersionConflict.

        Raises the last VersionConflict once ``max_attempts`` is used up.
        Any other exception rolls back and propagates on the first attempt.
        """
        self._count("runs")
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            session = self.session_factory()
            try:
                result = operation(session)
                session.commit()
                if attempt > 1:
                    logger.info(
                        f"{name} succeeded after {attempt} attempts",
                        extra={'extra_fields': {'operation': name, 'attempts': attempt}}
                    )
                return result
            except VersionConflict as exc:
                session.rollback()
                self._count("conflicts")
                if attempt >= self.max_attempts:
                    self._count("exhausted")
                    logger.warning(
                        f"{name} gave up after {attempt} version conflicts",
                        extra={'extra_fields': {'operation': name, 'attempts': attempt, 'error': exc.message}}
                    )
                    raise
                logger.warning(
                    f"Version conflict in {name} (attempt {attempt}/{self.max_attempts}), retrying in {delay:.3f}s",
                    extra={'extra_fields': {'operation': name, 'attempt': attempt, 'error': exc.message}}
                )
                self._sleep(delay)
                delay = min(delay * self.backoff_multiplier, self.max_backoff_seconds)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        raise AssertionError("unreachable")

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return dict(self._stats)

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1
