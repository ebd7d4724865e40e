"""Roles and permissions every fresh store starts with."""

from __future__ import annotations

DEFAULT_PERMISSIONS: list[tuple[str, str, str]] = [
    ("users", "read", "Read user information"),
    ("users", "write", "Create and update users"),
    ("users", "delete", "Delete users"),
    ("users", "admin", "Full user administration"),
    ("roles", "read", "Read roles and permissions"),
    ("roles", "write", "Create and update roles"),
    ("roles", "delete", "Delete roles"),
    ("roles", "assign", "Assign roles to users"),
    ("*", "*", "Unrestricted access"),
]

DEFAULT_ROLES: list[tuple[str, str]] = [
    ("admin", "Administrator with full access"),
    ("user", "Standard user"),
    ("moderator", "Moderator with limited admin access"),
]

# role name -> claim strings; "*" means every default permission
DEFAULT_ROLE_GRANTS: dict[str, list[str]] = {
    "admin": ["*"],
    "user": ["users:read"],
}
