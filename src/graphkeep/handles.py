"""
File handle registry -- remembering where each workspace lives on disk.

A file capability is an opaque, live object granting access to one
file. It is never serialized: only descriptive metadata (file name,
kind, path, last access) is written to durable storage. After a
restart, access is regained in three tiers:

    1. verify the live session handle, if the caller still holds one
    2. verify the handle cached for this process, or one re-opened
       from durable metadata by the platform resolver
    3. report needs_reconnect with the last known file name, so the
       user can pick the file again

Storage layout:
    ~/.graphkeep/state/handles.json   # workspace id -> FileHandleRecord
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from .models import FileHandleRecord, PermissionState, RestoreResult, now_ms
from .storage import KeyValueStore

logger = logging.getLogger("graphkeep.handles")

PromptCallback = Callable[["LocalFileCapability"], Union[bool, Awaitable[bool]]]


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


@runtime_checkable
class FileCapability(Protocol):
    """Platform file capability, modelled on a user-granted file handle."""

    name: str
    kind: str

    async def query_permission(self, mode: str = "readwrite") -> PermissionState: ...

    async def request_permission(self, mode: str = "readwrite") -> PermissionState: ...

    async def read_bytes(self) -> bytes: ...

    async def write_bytes(self, data: bytes, append: bool = False) -> None: ...


class LocalFileCapability:
    """A file on the local filesystem, granted for this session.

    The operating system decides whether access is possible at all; on
    top of that the capability carries a session grant. Handles the user
    picked start granted. Handles re-opened from metadata start in the
    prompt state and need ``request_permission`` to be confirmed by the
    ``prompt`` callback.

    Args:
        path: File location.
        granted: Whether this session already holds the grant.
        prompt: Asked on ``request_permission``; returns True to grant.
    """

    kind = "file"

    def __init__(
        self,
        path: Union[str, Path],
        granted: bool = True,
        prompt: Optional[PromptCallback] = None,
    ):
        self.path = Path(path).expanduser()
        self.name = self.path.name
        self._granted = granted
        self._prompt = prompt

    def __repr__(self) -> str:
        return f"LocalFileCapability({str(self.path)!r}, granted={self._granted})"

    async def query_permission(self, mode: str = "readwrite") -> PermissionState:
        if not self._os_allows(mode):
            return PermissionState.DENIED
        return PermissionState.GRANTED if self._granted else PermissionState.PROMPT

    async def request_permission(self, mode: str = "readwrite") -> PermissionState:
        state = await self.query_permission(mode)
        if state is not PermissionState.PROMPT:
            return state
        if self._prompt is None:
            return PermissionState.DENIED

        allowed = self._prompt(self)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        self._granted = bool(allowed)
        return PermissionState.GRANTED if self._granted else PermissionState.DENIED

    def revoke(self) -> None:
        """Drop the session grant."""
        self._granted = False

    async def read_bytes(self) -> bytes:
        return await asyncio.to_thread(self.path.read_bytes)

    async def write_bytes(self, data: bytes, append: bool = False) -> None:
        await asyncio.to_thread(self._write, data, append)

    def _write(self, data: bytes, append: bool) -> None:
        if append:
            with self.path.open("ab") as fh:
                fh.write(data)
            return
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, self.path)

    def _os_allows(self, mode: str) -> bool:
        flags = os.R_OK | os.W_OK if mode == "readwrite" else os.R_OK
        if self.path.exists():
            return os.access(self.path, flags)
        # not created yet: writable if the directory is
        return mode == "readwrite" and os.access(self.path.parent, os.W_OK | os.X_OK)


class HandleResolver(Protocol):
    """Re-opens a capability from durable metadata, if the platform can."""

    def resolve(self, record: FileHandleRecord) -> Optional[FileCapability]: ...


class PathHandleResolver:
    """Re-opens local files by their recorded path, ungranted.

    Args:
        prompt: Passed to every re-opened capability.
    """

    def __init__(self, prompt: Optional[PromptCallback] = None):
        self.prompt = prompt

    def resolve(self, record: FileHandleRecord) -> Optional[FileCapability]:
        if not record.path:
            return None
        return LocalFileCapability(record.path, granted=False, prompt=self.prompt)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class FileHandleRegistry:
    """Durable workspace id -> file metadata cache with permission recovery.

    Args:
        store: Durable store for the metadata records.
        resolver: Platform hook used in the second restore tier.
    """

    def __init__(self, store: KeyValueStore, resolver: Optional[HandleResolver] = None):
        self._store = store
        self._resolver = resolver
        self._live: dict[str, FileCapability] = {}
        self._restoring: dict[str, asyncio.Future] = {}

    # --- metadata ---------------------------------------------------------

    def store_metadata(
        self,
        workspace_id: str,
        handle: Optional[FileCapability] = None,
        **metadata: Any,
    ) -> FileHandleRecord:
        """Record metadata for a workspace's file.

        Args:
            workspace_id: Workspace key.
            handle: Live capability, kept for this process only.
            **metadata: Extra fields (file_name, kind, path, last_accessed, ...).

        Returns:
            The stored record, with ``handle`` attached.
        """
        metadata.pop("workspace_id", None)
        metadata.pop("handle", None)
        path = getattr(handle, "path", None)
        record = FileHandleRecord(
            **{
                **metadata,
                "workspace_id": workspace_id,
                "file_name": getattr(handle, "name", None) or metadata.get("file_name"),
                "kind": getattr(handle, "kind", None) or metadata.get("kind", "file"),
                "path": str(path) if path is not None else metadata.get("path"),
                "last_accessed": metadata.get("last_accessed") or now_ms(),
            }
        )
        self._store.set(workspace_id, record.model_dump(mode="json"))
        if handle is not None:
            self._live[workspace_id] = handle
        record.handle = self._live.get(workspace_id)

        logger.info(
            "Stored metadata for %s: %s", workspace_id, record.file_name or "unnamed"
        )
        return record

    def get_metadata(self, workspace_id: str) -> Optional[FileHandleRecord]:
        """Return the record for a workspace, or None."""
        data = self._store.get(workspace_id)
        if not data:
            return None
        try:
            record = FileHandleRecord.model_validate(data)
        except ValueError as exc:
            logger.warning("Ignoring corrupt handle record for %s: %s", workspace_id, exc)
            return None
        record.handle = self._live.get(workspace_id)
        return record

    def get_all(self) -> list[FileHandleRecord]:
        """All records, most recently accessed first."""
        records = [self.get_metadata(key) for key in self._store.keys()]
        found = [r for r in records if r is not None]
        return sorted(found, key=lambda r: r.last_accessed, reverse=True)

    def remove(self, workspace_id: str) -> bool:
        """Forget a workspace's file entirely."""
        self._live.pop(workspace_id, None)
        removed = self._store.remove(workspace_id)
        if removed:
            logger.info("Removed metadata for %s", workspace_id)
        return removed

    def clear_all(self) -> int:
        """Forget every workspace's file. Returns the number removed."""
        self._live.clear()
        removed = self._store.remove_many(self._store.keys())
        logger.info("Cleared %d file handle record(s)", removed)
        return removed

    def touch(self, workspace_id: str, handle: Optional[FileCapability] = None) -> None:
        """Bump last_accessed, keeping everything else."""
        record = self.get_metadata(workspace_id)
        if record is None:
            return
        fields = record.model_dump(exclude={"workspace_id"})
        fields["last_accessed"] = now_ms()
        self.store_metadata(workspace_id, handle or record.handle, **fields)

    def invalidate_handle(self, workspace_id: str) -> None:
        """Drop the live capability but keep metadata, forcing a reconnect."""
        if self._live.pop(workspace_id, None) is not None:
            logger.warning("Invalidated file handle for %s", workspace_id)

    # --- permission -------------------------------------------------------

    async def check_permission(self, handle: Optional[FileCapability]) -> PermissionState:
        """Query the platform permission; anything unexpected is DENIED."""
        if handle is None or not hasattr(handle, "query_permission"):
            return PermissionState.DENIED
        try:
            return PermissionState(await handle.query_permission("readwrite"))
        except Exception as exc:
            logger.warning("Failed to query permission: %s", exc)
            return PermissionState.DENIED

    async def request_permission(self, handle: Optional[FileCapability]) -> PermissionState:
        """Ask the platform (and so the user) for permission."""
        if handle is None or not hasattr(handle, "request_permission"):
            return PermissionState.DENIED
        try:
            return PermissionState(await handle.request_permission("readwrite"))
        except Exception as exc:
            logger.warning("Failed to request permission: %s", exc)
            return PermissionState.DENIED

    async def verify_access(self, handle: Optional[FileCapability]) -> bool:
        """Permission granted (requesting if promptable) and a read succeeds."""
        if handle is None:
            return False
        try:
            permission = await self.check_permission(handle)
            if permission is PermissionState.DENIED:
                return False
            if permission is PermissionState.PROMPT:
                if await self.request_permission(handle) is not PermissionState.GRANTED:
                    return False
            await handle.read_bytes()
            return True
        except Exception as exc:
            logger.warning("File handle verification failed: %s", exc)
            return False

    # --- restore ----------------------------------------------------------

    async def restore_handle(
        self,
        workspace_id: str,
        session_handle: Optional[FileCapability] = None,
    ) -> RestoreResult:
        """Regain access to a workspace's file.

        Concurrent calls for the same workspace share one attempt, so the
        user is never prompted twice.

        Args:
            workspace_id: Workspace key.
            session_handle: Capability still held by the caller, if any.

        Returns:
            RestoreResult; ``needs_reconnect`` means a user gesture is needed.
        """
        pending = self._restoring.get(workspace_id)
        if pending is None:
            pending = asyncio.ensure_future(self._restore(workspace_id, session_handle))
            self._restoring[workspace_id] = pending

            def _done(fut: asyncio.Future, key: str = workspace_id) -> None:
                if self._restoring.get(key) is fut:
                    del self._restoring[key]

            pending.add_done_callback(_done)
        return await asyncio.shield(pending)

    async def _restore(
        self,
        workspace_id: str,
        session_handle: Optional[FileCapability],
    ) -> RestoreResult:
        try:
            if session_handle is not None and await self.verify_access(session_handle):
                self._live[workspace_id] = session_handle
                if self.get_metadata(workspace_id) is not None:
                    self.touch(workspace_id, session_handle)
                return RestoreResult(success=True, handle=session_handle)

            record = self.get_metadata(workspace_id)
            if record is None:
                return RestoreResult(
                    success=False, message="No file handle metadata found"
                )

            candidate = record.handle
            if candidate is None and self._resolver is not None:
                candidate = self._resolver.resolve(record)
            if candidate is not None and candidate is not session_handle:
                if await self.verify_access(candidate):
                    self.touch(workspace_id, candidate)
                    restored = self.get_metadata(workspace_id)
                    return RestoreResult(success=True, handle=candidate, metadata=restored)

            self._live.pop(workspace_id, None)
            record.handle = None
            if record.file_name:
                message = f"File connection lost. Please reconnect to: {record.file_name}"
            else:
                message = "File connection lost. Please reconnect the local file."
            logger.info("Workspace %s needs a file reconnect", workspace_id)
            return RestoreResult(
                success=False, metadata=record, needs_reconnect=True, message=message
            )
        except Exception as exc:
            logger.error("Failed to restore file handle for %s: %s", workspace_id, exc)
            return RestoreResult(success=False, error=str(exc))
