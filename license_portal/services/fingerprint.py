"""
Device fingerprint - Coarse anti-sharing check on page navigation.

The fingerprint is sha256 of the User-Agent header. It is never applied to
API routes and never applied to guests or staff.
"""

import hashlib

from license_portal.models.domain import Role

# Paths where navigation is never checked
SKIP_PREFIXES: tuple[str, ...] = ("/api/", "/login", "/register", "/auth/discord", "/health", "/metrics")
DEVICE_CHANGED_REDIRECT = "/login?error=device_changed"


def compute_fingerprint(user_agent: str | None) -> str:
    return hashlib.sha256((user_agent or "").encode("utf-8")).hexdigest()


def is_exempt_path(path: str) -> bool:
    return path == "/" or path.startswith(SKIP_PREFIXES)


def applies_to(role: Role, is_bootstrap: bool) -> bool:
    """Only regular users are device locked."""
    return role == Role.USER and not is_bootstrap


def matches(stored: str | None, user_agent: str | None) -> bool:
    """True when no fingerprint is stored yet or the current one matches."""
    return stored is None or stored == compute_fingerprint(user_agent)
