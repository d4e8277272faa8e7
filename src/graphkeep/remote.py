"""
Remote sync policy -- deciding when the repository engine commits.

The engine itself is external: it accepts the latest state through
``update_state`` and batches it until told to ``commit``. The policy
watches edit activity and picks the moment:

    - after ``idle_commit_seconds`` without edits, or
    - after ``max_pending_seconds`` of continuous editing,
    - but never sooner than ``min_commit_interval_seconds`` after the
      previous commit.

Remote retries and rate limiting beyond that are the engine's business.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Protocol

from .config import RemotePolicyConfig
from .models import now_ms

logger = logging.getLogger("graphkeep.remote")


class RemoteSyncEngine(Protocol):
    """The repository write engine, as seen from graphkeep."""

    def update_state(self, state: Any) -> None: ...

    def is_healthy(self) -> bool: ...

    async def commit(self) -> bool: ...


class RemoteSyncPolicy:
    """Activity-driven commit scheduler for a remote sync engine.

    Must be pulsed from inside a running event loop.

    Args:
        config: Commit thresholds.
        clock: Monotonic seconds, injectable for tests.
    """

    def __init__(
        self,
        config: Optional[RemotePolicyConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RemotePolicyConfig()
        self._clock = clock
        self.engine: Optional[RemoteSyncEngine] = None
        self.coordinator: Any = None

        self.pending_edits = 0
        self.commit_count = 0
        self.last_commit_time: Optional[int] = None
        self.last_activity_time: Optional[int] = None
        self.last_error: Optional[str] = None

        self._first_pending_at: Optional[float] = None
        self._last_commit_at: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._commit_task: Optional[asyncio.Task] = None

    def initialize(self, engine: Optional[RemoteSyncEngine], coordinator: Any = None) -> None:
        """Bind the engine (and the coordinator, for status relays)."""
        if engine is not self.engine:
            self._cancel_timer()
            self.pending_edits = 0
            self._first_pending_at = None
        self.engine = engine
        self.coordinator = coordinator
        logger.info("Remote sync policy bound to %s", type(engine).__name__ if engine else None)

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.engine is not None

    def on_edit_activity(self) -> None:
        """Record one edit and (re)arm the commit timer."""
        if not self.enabled:
            return
        now = self._clock()
        self.pending_edits += 1
        self.last_activity_time = now_ms()
        if self._first_pending_at is None:
            self._first_pending_at = now
        self._schedule(now)

    def _schedule(self, now: float, retry: bool = False) -> None:
        self._cancel_timer()
        cfg = self.config
        delay = cfg.idle_commit_seconds
        # retries wait a full idle window even past the max-pending deadline
        if not retry and self._first_pending_at is not None:
            deadline = self._first_pending_at + cfg.max_pending_seconds
            delay = min(delay, max(0.0, deadline - now))
        if self._last_commit_at is not None:
            earliest = self._last_commit_at + cfg.min_commit_interval_seconds
            delay = max(delay, earliest - now)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._commit_task is not None and not self._commit_task.done():
            return
        self._commit_task = asyncio.ensure_future(self._commit())

    async def commit_now(self) -> bool:
        """Commit pending edits immediately, ignoring the idle window."""
        self._cancel_timer()
        if self._commit_task is not None and not self._commit_task.done():
            await self._commit_task
        return await self._commit()

    async def _commit(self) -> bool:
        engine = self.engine
        if engine is None or self.pending_edits == 0:
            return False
        if not engine.is_healthy():
            logger.info("Remote engine unhealthy, deferring commit")
            self._schedule(self._clock(), retry=True)
            return False

        edits = self.pending_edits
        try:
            committed = await engine.commit()
        except Exception as exc:
            self.last_error = str(exc)
            logger.warning("Remote commit failed: %s", exc)
            self._schedule(self._clock(), retry=True)
            return False

        if committed is False:
            self._schedule(self._clock(), retry=True)
            return False

        self._last_commit_at = self._clock()
        self.last_commit_time = now_ms()
        self.commit_count += 1
        self.last_error = None
        self.pending_edits = max(0, self.pending_edits - edits)
        if self.pending_edits:
            # edits landed while committing
            self._first_pending_at = self._last_commit_at
            self._schedule(self._last_commit_at)
        else:
            self._first_pending_at = None
        logger.info("Remote commit %d covered %d edit(s)", self.commit_count, edits)
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "last_commit_time": self.last_commit_time,
            "last_activity_time": self.last_activity_time,
            "pending_edits": self.pending_edits,
            "commit_count": self.commit_count,
            "has_pending_commit": self._timer is not None,
            "is_committing": self._commit_task is not None and not self._commit_task.done(),
            "last_error": self.last_error,
        }

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def destroy(self) -> None:
        """Cancel timers and any in-flight commit."""
        self._cancel_timer()
        if self._commit_task is not None and not self._commit_task.done():
            self._commit_task.cancel()
        self._commit_task = None
        self.engine = None
        self.coordinator = None
