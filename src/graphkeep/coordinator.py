"""
Save Coordinator -- one debounced save path for every state change.

    on_state_change -> hash compare -> debounce -> execute_save
                                                    |-> local file (verified handle only)
                                                    '-> remote engine (healthy only)

The save operation moves through IDLE -> SCHEDULED -> RUNNING -> IDLE.
Only one run is ever in flight; a change that arrives mid-run re-arms
the timer and the next run picks it up. The hash recorded as saved is
computed from the state actually flushed, so trailing edits are never
mistaken for already-saved ones.

The debounced path never raises. ``force_save`` does, because it is
called from a direct user action that can show the error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .backends import FileBackend
from .config import SaveConfig
from .errors import CoordinatorMisuse, PermissionRevoked
from .events import Observable, Subscription
from .hashing import state_hash
from .models import SavePhase, SaveRecord, SaveStatus, StatusLevel
from .remote import RemoteSyncEngine, RemoteSyncPolicy
from .workspace import WorkspaceSource

logger = logging.getLogger("graphkeep.coordinator")


@dataclass(frozen=True)
class WorkspaceBinding:
    """The backends one workspace saves through, swapped as a unit.

    ``workspace_id`` None means "whatever the workspace source has active".
    """

    workspace_id: Optional[str] = None
    file_backend: Optional[FileBackend] = None
    remote_engine: Optional[RemoteSyncEngine] = None


class SaveCoordinator:
    """Deduplicating, debounced fan-out of workspace state to both backends.

    Args:
        config: Debounce settings.
        policy: Remote commit policy pulsed on every real edit.
    """

    def __init__(
        self,
        config: Optional[SaveConfig] = None,
        policy: Optional[RemoteSyncPolicy] = None,
    ):
        self.config = config or SaveConfig()
        self.policy = policy or RemoteSyncPolicy()
        self.enabled = False
        self.workspace_manager: Optional[WorkspaceSource] = None
        self.status = Observable[SaveStatus]("graphkeep.save")

        self.phase = SavePhase.IDLE
        self.last_state: Optional[Mapping[str, Any]] = None
        self.last_context: dict[str, Any] = {}
        self.last_record: Optional[SaveRecord] = None
        self.last_error: Optional[str] = None
        self.save_count = 0

        self._binding = WorkspaceBinding()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._dirty = False
        self._idle = asyncio.Event()
        self._idle.set()

    # --- wiring -----------------------------------------------------------

    @property
    def binding(self) -> WorkspaceBinding:
        return self._binding

    @property
    def debounce_seconds(self) -> float:
        return self.config.debounce_ms / 1000.0

    @property
    def is_saving(self) -> bool:
        return self.phase is SavePhase.RUNNING

    @property
    def has_pending_save(self) -> bool:
        return self._timer is not None

    def initialize(
        self,
        file_backend: Optional[FileBackend],
        remote_engine: Optional[RemoteSyncEngine],
        workspace_manager: Optional[WorkspaceSource],
    ) -> None:
        """Wire dependencies and enable the coordinator.

        Calling again with the same objects changes nothing.
        """
        binding = self._binding
        if (
            self.enabled
            and binding.file_backend is file_backend
            and binding.remote_engine is remote_engine
            and self.workspace_manager is workspace_manager
        ):
            return

        self.workspace_manager = workspace_manager
        self._binding = WorkspaceBinding(
            workspace_id=binding.workspace_id,
            file_backend=file_backend,
            remote_engine=remote_engine,
        )
        self.policy.initialize(remote_engine, self)
        self.enabled = True
        logger.info("Save coordinator initialized")
        self._notify(StatusLevel.INFO, "Save coordinator ready")

    async def bind_workspace(
        self,
        workspace_id: str,
        file_backend: Optional[FileBackend],
        remote_engine: Optional[RemoteSyncEngine],
    ) -> None:
        """Switch to another workspace's backends.

        Anything pending is flushed through the old bindings first, then
        both backends are swapped in one assignment.
        """
        if self.enabled and (self.has_pending_save or self.is_saving):
            await self.flush()

        previous = self._binding
        self._binding = WorkspaceBinding(workspace_id, file_backend, remote_engine)
        if previous.workspace_id != workspace_id:
            self.last_state = None
            self.last_context = {}
            self.last_record = None
        if remote_engine is not previous.remote_engine:
            self.policy.initialize(remote_engine, self)
        logger.info("Bound workspace %s", workspace_id)

    def on_status(self, handler: Callable[[SaveStatus], Any]) -> Subscription:
        """Subscribe to the save status stream."""
        return self.status.subscribe(handler)

    def _notify(self, level: StatusLevel, message: str, **details: Any) -> None:
        self.status.publish(SaveStatus(level=level, message=message, details=details))

    # --- change intake ----------------------------------------------------

    def on_state_change(
        self,
        state: Optional[Mapping[str, Any]],
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Accept a new workspace state. Never raises."""
        if not self.enabled:
            logger.debug("State change ignored - not enabled")
            return
        if state is None:
            return

        try:
            content_hash = state_hash(state)
            if self.last_record is not None and content_hash == self.last_record.content_hash:
                if self.has_pending_save or self.is_saving:
                    # reverted before the flush: latest state still wins
                    self.last_state = state
                    self.last_context = dict(context or {})
                    if self.is_saving:
                        # the run in flight records a different hash
                        self._dirty = True
                        self.policy.on_edit_activity()
                return

            logger.debug(
                "State change detected: %s hash: %s",
                (context or {}).get("type", "unknown"), content_hash[:8],
            )
            self.last_state = state
            self.last_context = dict(context or {})
            self.policy.on_edit_activity()
            self.schedule_save()
        except Exception as exc:
            logger.error("Error processing state change: %s", exc)
            self.last_error = str(exc)
            self._notify(StatusLevel.ERROR, f"Save coordination failed: {exc}")

    def schedule_save(self) -> None:
        """(Re)start the debounce window."""
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("schedule_save called outside an event loop; ignored")
            return
        self._timer = loop.call_later(self.debounce_seconds, self._on_timer)
        if self.phase is SavePhase.IDLE:
            self.phase = SavePhase.SCHEDULED

    def _on_timer(self) -> None:
        self._timer = None
        if self.phase is SavePhase.SCHEDULED:
            self.phase = SavePhase.IDLE
        self._save_task = asyncio.ensure_future(self.execute_save())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            if self.phase is SavePhase.SCHEDULED:
                self.phase = SavePhase.IDLE

    # --- saving -----------------------------------------------------------

    async def execute_save(self) -> bool:
        """Flush the latest state to both backends. Never raises.

        Returns:
            True if a save ran, False if skipped.
        """
        return await self._run(raise_errors=False, force=False)

    async def force_save(self, state: Optional[Mapping[str, Any]] = None) -> bool:
        """Save right now, bypassing the debounce window.

        Raises:
            CoordinatorMisuse: Called before initialize().
            Exception: Whatever a backend raised.
        """
        if not self.enabled:
            raise CoordinatorMisuse("Save coordinator not initialized")

        logger.info("Force save requested")
        self._notify(StatusLevel.INFO, "Force saving...")
        self._cancel_timer()
        if state is not None:
            self.last_state = state

        while self.is_saving:
            await self._idle.wait()
        self._cancel_timer()

        try:
            saved = await self._run(raise_errors=True, force=True)
        except Exception as exc:
            logger.error("Force save failed: %s", exc)
            self._notify(StatusLevel.ERROR, f"Force save failed: {exc}")
            raise

        if saved:
            self._notify(StatusLevel.SUCCESS, "Force save completed")
        return saved

    async def flush(self) -> bool:
        """Run any pending save now and wait for it."""
        if not self.has_pending_save and not self.is_saving:
            return False
        self._cancel_timer()
        while self.is_saving:
            await self._idle.wait()
        self._cancel_timer()
        return await self.execute_save()

    async def _run(self, raise_errors: bool, force: bool) -> bool:
        if not self.enabled:
            logger.debug("Save skipped - not enabled")
            return False
        if self.is_saving:
            self._dirty = True
            return False

        state = self.last_state
        if state is None:
            return False

        # flush-time hash: covers edits that arrived during the debounce
        content_hash = state_hash(state)
        if (
            not force
            and self.last_record is not None
            and content_hash == self.last_record.content_hash
        ):
            return False

        self._cancel_timer()
        binding = self._binding
        self.phase = SavePhase.RUNNING
        self._idle.clear()
        self._dirty = False
        errors: list[Exception] = []
        transient = False

        try:
            logger.debug("Executing save for %s", binding.workspace_id or "active workspace")
            try:
                await self._save_local(binding, state)
            except PermissionRevoked as exc:
                self._handle_revoked(binding, exc)
                errors.append(exc)
            except Exception as exc:
                logger.error("Local save failed: %s", exc)
                errors.append(exc)
                transient = True

            try:
                self._save_remote(binding, state)
            except Exception as exc:
                logger.error("Remote update failed: %s", exc)
                errors.append(exc)

            if not transient:
                self.last_record = SaveRecord(content_hash=content_hash)
            self.save_count += 1

            if errors:
                self.last_error = str(errors[0])
                self._notify(StatusLevel.ERROR, f"Save failed: {errors[0]}")
                if raise_errors:
                    raise errors[0]
            else:
                self.last_error = None
                self._notify(StatusLevel.SUCCESS, "Save completed")
            return True
        finally:
            self.phase = SavePhase.SCHEDULED if self._timer is not None else SavePhase.IDLE
            self._idle.set()
            if self._dirty and self._timer is None and self.enabled:
                self.schedule_save()
            self._dirty = False

    async def _save_local(self, binding: WorkspaceBinding, state: Mapping[str, Any]) -> bool:
        backend = binding.file_backend
        manager = self.workspace_manager
        if backend is None or manager is None:
            return False
        if not manager.has_verified_handle(binding.workspace_id):
            return False
        return await backend.save_to_file(state, False)

    def _save_remote(self, binding: WorkspaceBinding, state: Mapping[str, Any]) -> bool:
        engine = binding.remote_engine
        if engine is None or not engine.is_healthy():
            return False
        engine.update_state(state)
        return True

    def _handle_revoked(self, binding: WorkspaceBinding, exc: PermissionRevoked) -> None:
        manager = self.workspace_manager
        workspace_id = binding.workspace_id or getattr(manager, "active_workspace_id", None)
        logger.warning("File permission revoked for %s: %s", workspace_id, exc)
        if manager is not None and workspace_id:
            manager.invalidate_file_handle(workspace_id)

    # --- status & lifecycle -----------------------------------------------

    def get_state(self) -> Optional[Mapping[str, Any]]:
        return self.last_state

    def get_status(self) -> dict[str, Any]:
        last_saved: Optional[datetime] = self.last_record.timestamp if self.last_record else None
        return {
            "enabled": self.enabled,
            "is_saving": self.is_saving,
            "has_pending_save": self.has_pending_save,
            "last_error": self.last_error,
            "remote_policy_status": self.policy.get_status(),
            "phase": self.phase.value,
            "workspace_id": self._binding.workspace_id,
            "last_saved_at": last_saved.isoformat() if last_saved else None,
            "save_count": self.save_count,
        }

    def set_enabled(self, enabled: bool) -> None:
        if enabled and not self.enabled:
            self.enabled = True
            logger.info("Save coordination enabled")
            self._notify(StatusLevel.INFO, "Save coordination enabled")
        elif not enabled and self.enabled:
            self.enabled = False
            self._cancel_timer()
            logger.info("Save coordination disabled")
            self._notify(StatusLevel.INFO, "Save coordination disabled")

    def destroy(self) -> None:
        """Stop timers and in-flight work; drop all listeners."""
        self.set_enabled(False)
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None
        self.policy.destroy()
        self.status.clear()
        logger.info("Save coordinator destroyed")
