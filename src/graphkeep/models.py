"""
Pydantic models for everything graphkeep persists or reports.

Credentials and handle records are the only things that outlive a
process. Workspace state itself is borrowed from the application for
one save cycle and never modelled here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class PermissionState(str, Enum):
    """Tri-state answer of a platform permission query."""

    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"


class AuthMethod(str, Enum):
    """How the remote backend is being reached."""

    OAUTH = "oauth"
    APP = "github-app"


class CredentialState(str, Enum):
    """Lifecycle of a single credential.

    ABSENT -> PENDING_VALIDATION -> VALID -> (near expiry) PENDING_VALIDATION
    -> VALID | INVALID. INVALID is terminal until a new external auth.
    """

    ABSENT = "absent"
    PENDING_VALIDATION = "pending-validation"
    VALID = "valid"
    INVALID = "invalid"


class SavePhase(str, Enum):
    """Phase of the save operation: IDLE -> SCHEDULED -> RUNNING -> IDLE."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


class StatusLevel(str, Enum):
    """Severity of a save status notification."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class SaveRecord(BaseModel):
    """The last successfully flushed content hash."""

    content_hash: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SaveStatus(BaseModel):
    """One entry of the save status stream."""

    level: StatusLevel
    message: str
    timestamp: int = Field(default_factory=now_ms)
    details: dict[str, Any] = Field(default_factory=dict)


class Credential(BaseModel):
    """A user OAuth credential for the remote provider."""

    access_token: str
    expiry: int = Field(description="Artificial or provider expiry, epoch ms")
    auth_method: AuthMethod = AuthMethod.OAUTH
    user_data: Optional[dict[str, Any]] = None

    def expires_within(self, buffer_ms: int, at: Optional[int] = None) -> bool:
        """True when the expiry falls inside ``buffer_ms`` of ``at``."""
        return (at if at is not None else now_ms()) >= self.expiry - buffer_ms

    def is_live(self, at: Optional[int] = None) -> bool:
        """True while the expiry is still in the future."""
        return bool(self.access_token) and self.expiry > (at if at is not None else now_ms())


class AppInstallation(BaseModel):
    """An app installation and its short-lived installation token."""

    installation_id: str
    access_token: str
    repositories: list[Any] = Field(default_factory=list)
    user_data: dict[str, Any] = Field(default_factory=dict)
    last_updated: int = Field(default_factory=now_ms)

    def is_stale(self, stale_after_ms: int, at: Optional[int] = None) -> bool:
        """True once the token is older than the reissue window."""
        return (at if at is not None else now_ms()) - self.last_updated > stale_after_ms


class FileHandleRecord(BaseModel):
    """Durable metadata about a workspace's local file.

    ``handle`` holds the live capability for this process only. It is
    excluded from every dump, so a record round-tripped through storage
    always comes back without one.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    workspace_id: str
    file_name: Optional[str] = None
    kind: str = "file"
    path: Optional[str] = None
    handle: Optional[Any] = Field(default=None, exclude=True)
    last_accessed: int = Field(default_factory=now_ms)


class RestoreResult(BaseModel):
    """Outcome of trying to regain access to a workspace's local file."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    handle: Optional[Any] = Field(default=None, exclude=True)
    metadata: Optional[FileHandleRecord] = None
    needs_reconnect: bool = False
    message: Optional[str] = None
    error: Optional[str] = None
