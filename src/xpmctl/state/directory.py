"""Default YAML-backed directory of instances, their users and operators.

``instances.yml`` holds two lists::

    instances:
      - id: "acme"
        name: Acme
        subdomain: acme
        coreVersion: 1.0.1
        users:
          - {id: "u1", email: admin@acme.test, role: admin}
    operators:
      - {id: "ops", email: ops@example.test}
"""
from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..versioning import version_key
from .registry import INSTANCES_FILE, StateRegistry

USER_ROLES = frozenset({"admin", "user"})


@dataclass(slots=True)
class InstanceDirectory:
    """Lookup and maintenance of instances, user roles and operators."""

    registry: StateRegistry

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    def list_instances(self) -> list[dict[str, Any]]:
        """Return every instance record."""
        return self.registry.read_instances()

    def get_instance(self, instance_id: str) -> dict[str, Any] | None:
        """Return the instance record for *instance_id*, if any."""
        for entry in self.registry.read_instances():
            if str(entry.get("id")) == str(instance_id):
                return entry
        return None

    def require_instance(self, instance_id: str) -> dict[str, Any]:
        """Return the instance record or raise ``NotFoundError``."""
        entry = self.get_instance(instance_id)
        if entry is None:
            raise NotFoundError("Instance not found")
        return entry

    def add_instance(
        self,
        instance_id: str,
        *,
        name: str,
        subdomain: str,
        core_version: str,
    ) -> dict[str, Any]:
        """Register a new instance pinned to *core_version*.

        The caller validates that *core_version* exists in the manifest.
        """
        instance_id = instance_id.strip()
        if not instance_id:
            raise ValidationError("Instance id must not be empty.")
        record: dict[str, Any] = {
            "id": instance_id,
            "name": name or instance_id,
            "subdomain": subdomain or instance_id,
            "coreVersion": core_version,
            "users": [],
        }
        with self.registry.locked(INSTANCES_FILE):
            instances = self.registry.read_instances()
            if any(str(entry.get("id")) == instance_id for entry in instances):
                raise ValidationError(f"Instance '{instance_id}' already exists.")
            if any(entry.get("subdomain") == record["subdomain"] for entry in instances):
                raise ValidationError(f"Subdomain '{record['subdomain']}' is already taken.")
            instances.append(record)
            self.registry.write_instances(instances)
        return record

    def set_core_version(self, instance_id: str, version: str) -> dict[str, Any]:
        """Point *instance_id* at *version* and return the updated record."""
        with self.registry.locked(INSTANCES_FILE):
            instances = self.registry.read_instances()
            for entry in instances:
                if str(entry.get("id")) == str(instance_id):
                    entry["coreVersion"] = version
                    self.registry.write_instances(instances)
                    return entry
        raise NotFoundError("Instance not found")

    # ------------------------------------------------------------------
    # Users and operators
    # ------------------------------------------------------------------
    def add_user(
        self,
        instance_id: str,
        user_id: str,
        *,
        email: str = "",
        role: str = "user",
    ) -> dict[str, Any]:
        """Add (or update) a user on the roster of *instance_id*."""
        if role not in USER_ROLES:
            raise ValidationError(
                f"Role must be one of: {', '.join(sorted(USER_ROLES))}."
            )
        if not user_id.strip():
            raise ValidationError("User id must not be empty.")
        user = {"id": user_id.strip(), "email": email, "role": role}
        with self.registry.locked(INSTANCES_FILE):
            instances = self.registry.read_instances()
            for entry in instances:
                if str(entry.get("id")) != str(instance_id):
                    continue
                users = [
                    dict(item)
                    for item in entry.get("users") or []
                    if isinstance(item, Mapping) and str(item.get("id")) != user["id"]
                ]
                users.append(user)
                entry["users"] = users
                self.registry.write_instances(instances)
                return user
        raise NotFoundError("Instance not found")

    def get_user_role(self, instance_id: str, user_id: str | None) -> str | None:
        """Return the role of *user_id* on *instance_id* (``None`` when absent)."""
        if not user_id:
            return None
        entry = self.get_instance(instance_id)
        if entry is None:
            return None
        for user in entry.get("users") or []:
            if isinstance(user, Mapping) and str(user.get("id")) == str(user_id):
                role = user.get("role")
                return str(role) if role else None
        return None

    def list_operators(self) -> list[dict[str, Any]]:
        """Return the operator roster."""
        return self.registry.read_list(INSTANCES_FILE, "operators")

    def is_operator(self, user_id: str | None) -> bool:
        """Return ``True`` when *user_id* may manage versions globally."""
        if not user_id:
            return False
        return any(str(item.get("id")) == str(user_id) for item in self.list_operators())

    def add_operator(self, user_id: str, *, email: str = "") -> dict[str, Any]:
        """Add *user_id* to the operator roster (idempotent)."""
        if not user_id.strip():
            raise ValidationError("Operator id must not be empty.")
        operator = {"id": user_id.strip(), "email": email}
        with self.registry.locked(INSTANCES_FILE):
            instances = self.registry.read_instances()
            operators = [
                item for item in self.list_operators() if str(item.get("id")) != operator["id"]
            ]
            operators.append(operator)
            self.registry.write_instances(instances, operators=operators)
        return operator

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------
    def usage_counts(self) -> dict[str, int]:
        """Return the number of instances per ``coreVersion``."""
        counts: Counter[str] = Counter()
        for entry in self.registry.read_instances():
            version = entry.get("coreVersion")
            if version:
                counts[str(version)] += 1
        return dict(counts)

    def count_using(self, version: str) -> int:
        """Return how many instances are pinned to *version*."""
        key = version_key(version)
        return sum(
            count for name, count in self.usage_counts().items() if version_key(name) == key
        )


__all__ = ["InstanceDirectory", "USER_ROLES"]
