"""
Persistence runtime -- every graphkeep service, built from one home directory.

The runtime loads ``<home>/config/config.yaml``, opens the durable stores
and wires the services together:

    ~/.graphkeep/
        config/config.yaml       # GraphkeepConfig
        state/credentials.json   # graphkeep.* credential keys
        state/handles.json       # graphkeep.handles.<workspace id> records

Usage:

    async with PersistenceRuntime() as rt:
        await rt.open_workspace("ws-1", remote_engine=engine)
        rt.coordinator.on_state_change(state, {"type": "node_moved"})
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import httpx

from .backends import LocalFileBackend
from .config import GraphkeepConfig, load_config, resolve_home
from .coordinator import SaveCoordinator
from .credentials import CredentialLifecycleManager
from .handles import FileCapability, FileHandleRegistry, PathHandleResolver, PromptCallback
from .models import RestoreResult
from .provider import ProviderClient
from .remote import RemoteSyncEngine, RemoteSyncPolicy
from .storage import JsonFileStore, NamespacedStore
from .workspace import WorkspaceManager

logger = logging.getLogger("graphkeep.runtime")

STATE_DIR = "state"
CREDENTIALS_FILE = "credentials.json"
HANDLES_FILE = "handles.json"


class PersistenceRuntime:
    """Composition root owning the lifecycle of every service.

    Args:
        home: graphkeep home directory. Defaults to ~/.graphkeep/.
        config: Pre-built configuration; loaded from ``home`` if omitted.
        prompt: Asked before re-granting access to a remembered file.
        http_client: Shared httpx client for the provider (tests inject one).
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[GraphkeepConfig] = None,
        prompt: Optional[PromptCallback] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.home = resolve_home(home)
        self.config = config or load_config(self.home)
        namespace = self.config.storage_namespace
        state_dir = self.home / STATE_DIR

        self.credential_store = NamespacedStore(
            JsonFileStore(state_dir / CREDENTIALS_FILE), namespace
        )
        self.handle_store = NamespacedStore(
            JsonFileStore(state_dir / HANDLES_FILE), f"{namespace}.handles"
        )

        self.registry = FileHandleRegistry(self.handle_store, PathHandleResolver(prompt))
        self.workspaces = WorkspaceManager(self.registry)
        self.provider = ProviderClient(self.config.auth, client=http_client)
        self.credentials = CredentialLifecycleManager(
            self.credential_store, self.config.auth, self.provider
        )
        self.policy = RemoteSyncPolicy(self.config.remote_policy)
        self.coordinator = SaveCoordinator(self.config.save, self.policy)
        self.file_backend = LocalFileBackend()
        self._started = False

    async def __aenter__(self) -> "PersistenceRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def start(self) -> None:
        """Enable saving and kick off credential auto-connect. Idempotent."""
        if self._started:
            return
        self.coordinator.initialize(self.file_backend, None, self.workspaces)
        self.credentials.start()
        self._started = True
        logger.info("Persistence runtime started from %s", self.home)

    async def open_workspace(
        self,
        workspace_id: str,
        session_handle: Optional[FileCapability] = None,
        remote_engine: Optional[RemoteSyncEngine] = None,
    ) -> RestoreResult:
        """Activate a workspace, regain its file and rebind the coordinator.

        Returns:
            The restore outcome; ``needs_reconnect`` asks for ``connect_file``.
        """
        await self.start()
        result = await self.workspaces.activate(workspace_id, session_handle)
        self.file_backend = LocalFileBackend(result.handle if result.success else None)
        await self.coordinator.bind_workspace(workspace_id, self.file_backend, remote_engine)
        if result.needs_reconnect:
            logger.info("Workspace %s opened without file access: %s", workspace_id, result.message)
        return result

    async def connect_file(self, workspace_id: str, handle: FileCapability) -> bool:
        """Attach a file the user picked; rebinds saving if the workspace is active."""
        if not await self.workspaces.connect_file(workspace_id, handle):
            return False
        if self.workspaces.active_workspace_id == workspace_id:
            self.file_backend = LocalFileBackend(handle)
            await self.coordinator.bind_workspace(
                workspace_id, self.file_backend, self.coordinator.binding.remote_engine
            )
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "home": str(self.home),
            "active_workspace": self.workspaces.active_workspace_id,
            "has_file_access": self.workspaces.has_verified_handle(),
            "save": self.coordinator.get_status(),
            "auth": self.credentials.get_comprehensive_auth_status(),
        }

    async def aclose(self) -> None:
        """Flush pending saves, then stop every service."""
        if self.coordinator.enabled:
            await self.coordinator.flush()
        self.coordinator.destroy()
        self.credentials.destroy()
        await self.provider.aclose()
        self._started = False
        logger.info("Persistence runtime closed")
