"""Typed errors raised by the devnet core.

Every error carries two flags the caller uses to decide what to do next:

- ``retryable``: nothing was persisted, the same call can simply be repeated.
- ``requires_cleanup``: state was partially applied and ``destroy`` must run
  before a retry.

Partial node failures during run/stop are never raised; they are returned as
``FailedNode`` records inside the operation result.
"""

from __future__ import annotations

from typing import Optional


class DevnetError(Exception):
    """Base class for all devnet core errors."""

    kind: str = "error"
    retryable: bool = True
    requires_cleanup: bool = False

    def __init__(self, message: str, *, requires_cleanup: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        if requires_cleanup is not None:
            self.requires_cleanup = requires_cleanup
            self.retryable = not requires_cleanup

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
            "requires_cleanup": self.requires_cleanup,
        }


class ValidationError(DevnetError):
    """Bad input, detected before any side effect."""

    kind = "validation"


class AlreadyExists(DevnetError):
    """Provision called against a location that already holds a devnet."""

    kind = "already_exists"


class NotFound(DevnetError):
    """Missing devnet, cache entry, binary or plugin."""

    kind = "not_found"


class IOFailure(DevnetError):
    """Filesystem or cache corruption."""

    kind = "io"


class Timeout(DevnetError):
    """A deadline (health check, graceful stop, build, lock) was exceeded."""

    kind = "timeout"


class Cancelled(DevnetError):
    """The caller cancelled the operation."""

    kind = "cancelled"


class PluginError(DevnetError):
    """A plugin process failed the handshake or a call."""

    kind = "plugin"

    def __init__(self, plugin: str, op: str, message: str) -> None:
        super().__init__(f"plugin {plugin}: {op}: {message}")
        self.plugin = plugin
        self.op = op


class BuildFailure(DevnetError):
    """The source build pipeline failed.

    ``kind`` is one of the ``BuildFailure.*`` constants and ``log_tail`` holds the
    last lines of captured tool output, if any.
    """

    CLONE_FAILED = "clone_failed"
    BUILD_TOOL_MISSING = "build_tool_missing"
    BUILD_FAILED = "build_failed"
    ARTIFACT_NOT_FOUND = "artifact_not_found"

    def __init__(self, kind: str, message: str, log_tail: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.log_tail = log_tail

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["log_tail"] = self.log_tail
        return data
