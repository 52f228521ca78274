"""Version identifier parsing and comparison helpers."""
from __future__ import annotations

import re

from packaging.version import InvalidVersion, Version

from .errors import ValidationError

VERSION_PATTERN = re.compile(r"^v?\d+\.\d+\.\d+$")


def validate_version_id(value: str | None) -> str:
    """Return *value* stripped, raising ``ValidationError`` unless it is ``[v]X.Y.Z``."""
    candidate = (value or "").strip()
    if not candidate:
        raise ValidationError("Version identifier is required.")
    if not VERSION_PATTERN.match(candidate):
        raise ValidationError(
            f"Invalid version format '{candidate}'. Expected MAJOR.MINOR.PATCH (e.g. 1.2.0)."
        )
    return candidate


def version_key(value: str) -> str:
    """Return the comparison key for an identifier (``v1.2.0`` and ``1.2.0`` match)."""
    text = value.strip()
    if text[:1] in {"v", "V"}:
        text = text[1:]
    return text


def same_version(left: str | None, right: str | None) -> bool:
    """Return ``True`` when two identifiers name the same version."""
    if left is None or right is None:
        return False
    return version_key(left) == version_key(right)


def version_dir_name(value: str) -> str:
    """Directory name used for a version under the versions root."""
    return f"v{version_key(value)}"


def sort_key(value: str) -> tuple[int, Version | str]:
    """Sort key ordering valid releases before unparsable identifiers."""
    try:
        return (1, Version(version_key(value)))
    except InvalidVersion:
        return (0, value)


__all__ = [
    "VERSION_PATTERN",
    "same_version",
    "sort_key",
    "validate_version_id",
    "version_dir_name",
    "version_key",
]
