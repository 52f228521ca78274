"""Instance directory tests."""
from __future__ import annotations

import pytest

from xpmctl.errors import NotFoundError, ValidationError
from xpmctl.state import InstanceDirectory


def test_add_instance_and_lookup(directory: InstanceDirectory) -> None:
    """Instances are persisted with an empty roster extended by add_user."""
    record = directory.require_instance("acme")

    assert record["coreVersion"] == "1.0.0"
    assert record["subdomain"] == "acme"
    assert [user["id"] for user in record["users"]] == ["alice", "bob"]


def test_duplicate_instance_or_subdomain_rejected(directory: InstanceDirectory) -> None:
    """Identifiers and subdomains are unique."""
    with pytest.raises(ValidationError, match="already exists"):
        directory.add_instance("acme", name="Again", subdomain="other", core_version="1.0.0")
    with pytest.raises(ValidationError, match="already taken"):
        directory.add_instance("other", name="Other", subdomain="acme", core_version="1.0.0")


def test_require_instance_unknown(directory: InstanceDirectory) -> None:
    """Unknown instances raise NotFound."""
    with pytest.raises(NotFoundError, match="Instance not found"):
        directory.require_instance("nope")


def test_user_roles(directory: InstanceDirectory) -> None:
    """Roles resolve per instance and unknown users have none."""
    assert directory.get_user_role("acme", "alice") == "admin"
    assert directory.get_user_role("acme", "bob") == "user"
    assert directory.get_user_role("acme", "mallory") is None
    assert directory.get_user_role("nope", "alice") is None
    assert directory.get_user_role("acme", None) is None


def test_add_user_replaces_existing_entry(directory: InstanceDirectory) -> None:
    """Re-adding a user updates their role instead of duplicating them."""
    directory.add_user("acme", "bob", email="bob@acme.test", role="admin")

    users = directory.require_instance("acme")["users"]
    assert [user["id"] for user in users].count("bob") == 1
    assert directory.get_user_role("acme", "bob") == "admin"


def test_add_user_rejects_unknown_role(directory: InstanceDirectory) -> None:
    """Only admin and user roles are accepted."""
    with pytest.raises(ValidationError, match="Role must be one of"):
        directory.add_user("acme", "carol", role="owner")


def test_operators_are_idempotent(directory: InstanceDirectory) -> None:
    """Adding the same operator twice keeps a single roster entry."""
    directory.add_operator("ops", email="ops@example.test")

    assert [item["id"] for item in directory.list_operators()] == ["ops"]
    assert directory.is_operator("ops") is True
    assert directory.is_operator("alice") is False
    assert directory.is_operator(None) is False


def test_operator_roster_survives_instance_writes(directory: InstanceDirectory) -> None:
    """Instance mutations keep the operator list intact."""
    directory.set_core_version("acme", "1.1.0")

    assert directory.is_operator("ops") is True
    assert directory.require_instance("acme")["coreVersion"] == "1.1.0"


def test_usage_counts_match_prefixed_versions(directory: InstanceDirectory) -> None:
    """``count_using`` ignores the optional ``v`` prefix."""
    directory.add_instance("globex", name="Globex", subdomain="globex", core_version="v1.0.0")
    directory.add_instance("initech", name="Initech", subdomain="initech", core_version="1.1.0")

    assert directory.usage_counts() == {"1.0.0": 1, "v1.0.0": 1, "1.1.0": 1}
    assert directory.count_using("1.0.0") == 2
    assert directory.count_using("v1.1.0") == 1
    assert directory.count_using("2.0.0") == 0
