"""Error taxonomy shared by the version lifecycle services.

Every error carries a ``kind`` (the name surfaced to API consumers) and the
CLI exit code used when the error terminates a command.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class XpmctlError(RuntimeError):
    """Base class for errors surfaced to callers."""

    kind = "Error"
    rc: int = ExitCode.VALIDATION

    def to_dict(self) -> dict[str, object]:
        """Return the JSON error body for this error."""
        return {"error": str(self), "kind": self.kind}


class ValidationError(XpmctlError):
    """Malformed input: bad version format, missing field, escaping path."""

    kind = "Validation"


class NotFoundError(XpmctlError):
    """Unknown instance, version, user, job or file."""

    kind = "NotFound"


class AuthorizationError(XpmctlError):
    """The acting principal is missing or lacks the required role."""

    kind = "AuthenticationError"


class InvalidOperationError(XpmctlError):
    """A business rule forbids the requested transition."""

    kind = "InvalidOperation"


class ConflictError(XpmctlError):
    """A concurrent mutation is in progress or won the race."""

    kind = "Conflict"
    rc = ExitCode.CONFLICT


class UpstreamUnavailableError(XpmctlError):
    """The remote manifest or source repository could not be reached."""

    kind = "UpstreamUnavailable"
    rc = ExitCode.PROVIDER


class MalformedResponseError(XpmctlError):
    """The upstream answered with something that is not a manifest."""

    kind = "MalformedResponse"
    rc = ExitCode.PROVIDER


class StorageError(XpmctlError):
    """Persisted state could not be read, parsed or written."""

    kind = "IOError"
    rc = ExitCode.ENVIRONMENT


class MaterializeError(StorageError):
    """Copying or hashing a version tree failed."""


class IntegrityError(StorageError):
    """A file on disk no longer matches its content manifest entry."""


__all__ = [
    "AuthorizationError",
    "ConflictError",
    "IntegrityError",
    "InvalidOperationError",
    "MalformedResponseError",
    "MaterializeError",
    "NotFoundError",
    "StorageError",
    "UpstreamUnavailableError",
    "ValidationError",
    "XpmctlError",
]
