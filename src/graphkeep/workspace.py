"""
Workspace manager -- which workspace is active and whether its file is usable.

The save coordinator only writes locally when the active workspace has
a verified capability. Verification happens here, through the file
handle registry; a revoked permission reported by the file backend
lands here too and sends the workspace back to needing a reconnect.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from .handles import FileCapability, FileHandleRegistry
from .models import RestoreResult

logger = logging.getLogger("graphkeep.workspace")


class WorkspaceSource(Protocol):
    """What the save coordinator needs to know about workspaces."""

    active_workspace_id: Optional[str]

    def has_verified_handle(self, workspace_id: Optional[str] = None) -> bool: ...

    def invalidate_file_handle(self, workspace_id: str) -> None: ...


class WorkspaceManager:
    """Tracks the active workspace and its verified file capabilities.

    Args:
        registry: Durable metadata cache used to verify and restore handles.
    """

    def __init__(self, registry: FileHandleRegistry):
        self.registry = registry
        self.active_workspace_id: Optional[str] = None
        self._verified: dict[str, FileCapability] = {}

    async def connect_file(self, workspace_id: str, handle: FileCapability) -> bool:
        """Attach a freshly picked file to a workspace.

        Returns:
            True if the handle verified and is now in use.
        """
        if not await self.registry.verify_access(handle):
            logger.warning("Picked file for %s is not accessible", workspace_id)
            return False
        self.registry.store_metadata(workspace_id, handle)
        self._verified[workspace_id] = handle
        return True

    async def activate(
        self,
        workspace_id: str,
        session_handle: Optional[FileCapability] = None,
    ) -> RestoreResult:
        """Make a workspace active and try to regain its file."""
        self.active_workspace_id = workspace_id
        result = await self.registry.restore_handle(workspace_id, session_handle)
        if result.success and result.handle is not None:
            self._verified[workspace_id] = result.handle
        else:
            self._verified.pop(workspace_id, None)
        return result

    def get_file_handle(self, workspace_id: Optional[str] = None) -> Optional[FileCapability]:
        key = workspace_id or self.active_workspace_id
        return self._verified.get(key) if key else None

    def has_verified_handle(self, workspace_id: Optional[str] = None) -> bool:
        return self.get_file_handle(workspace_id) is not None

    def invalidate_file_handle(self, workspace_id: str) -> None:
        """Forget the capability for a workspace; metadata stays for reconnect."""
        self._verified.pop(workspace_id, None)
        self.registry.invalidate_handle(workspace_id)
