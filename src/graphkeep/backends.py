"""
Local save backends -- where the workspace lands on disk.

The coordinator hands a workspace state to a backend; the backend
serializes it and writes it through a file capability. A capability
that has lost its permission surfaces as PermissionRevoked so the
coordinator can send the workspace back to needing a reconnect.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Set
from datetime import datetime, timezone
from typing import Any, Optional

from . import __version__
from .errors import PermissionRevoked, TransientIOError
from .handles import FileCapability
from .models import PermissionState

logger = logging.getLogger("graphkeep.backends")

FORMAT_NAME = "graphkeep-workspace"
FORMAT_VERSION = "1.0"


class FileBackend(ABC):
    """Abstract local save target."""

    @abstractmethod
    async def save_to_file(self, state: Mapping[str, Any], append: bool = False) -> bool:
        """Write a workspace state.

        Args:
            state: Workspace snapshot.
            append: Append a JSON line instead of replacing the file.

        Returns:
            True if written, False if there is nothing to write to.

        Raises:
            PermissionRevoked: The capability no longer grants write access.
            TransientIOError: Any other I/O failure.
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, Set):
        return [_to_jsonable(v) for v in sorted(value, key=repr)]
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def export_state(state: Mapping[str, Any]) -> dict[str, Any]:
    """Wrap a workspace state in the on-disk document envelope."""
    return {
        "format": FORMAT_NAME,
        "version": FORMAT_VERSION,
        "generator": f"graphkeep/{__version__}",
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "state": _to_jsonable(state),
    }


class LocalFileBackend(FileBackend):
    """Writes workspace documents through a single file capability.

    Args:
        handle: Capability for the workspace file, or None if unbound.
    """

    def __init__(self, handle: Optional[FileCapability] = None):
        self.handle = handle
        self.last_save_time: Optional[datetime] = None

    @property
    def name(self) -> str:
        return "local"

    async def save_to_file(self, state: Mapping[str, Any], append: bool = False) -> bool:
        handle = self.handle
        if handle is None:
            logger.warning("No file handle available for saving")
            return False

        file_name = getattr(handle, "name", None)
        permission = PermissionState(await handle.query_permission("readwrite"))
        if permission is not PermissionState.GRANTED:
            permission = PermissionState(await handle.request_permission("readwrite"))
            if permission is not PermissionState.GRANTED:
                raise PermissionRevoked("File permission denied", file_name=file_name)

        document = export_state(state)
        if append:
            data = json.dumps(document, separators=(",", ":")) + "\n"
        else:
            data = json.dumps(document, indent=2)

        try:
            await handle.write_bytes(data.encode("utf-8"), append=append)
        except PermissionError as exc:
            raise PermissionRevoked(str(exc), file_name=file_name) from exc
        except OSError as exc:
            raise TransientIOError(f"Write to {file_name} failed: {exc}") from exc

        self.last_save_time = datetime.now(timezone.utc)
        logger.debug("Workspace saved to %s", file_name)
        return True
