"""Canonical action vocabulary and severity rules for audit records."""

import re

# Record severities, lowest to highest.
INFO = "INFO"
WARN = "WARN"
HIGH = "HIGH"
ERROR = "ERROR"

# Log-level ordering for system-event gating (lower is more important).
LOG_LEVEL_ORDER = {"ERROR": 0, "WARN": 1, "INFO": 2, "DEBUG": 3}

USER_REGISTERED = "user_registered"
USER_LOGIN = "user_login"
FAILED_LOGIN = "failed_login"
USER_LOGOUT = "user_logout"
WALLET_CHALLENGE_REQUEST = "wallet_challenge_request"
WALLET_AUTH_SUCCESS = "wallet_auth_success"
WALLET_AUTH_FAILED = "wallet_auth_failed"
WALLET_LINKED = "wallet_linked"
PROFILE_VIEW = "profile_view"
PROFILE_UPDATED = "profile_updated"
SESSION_REVOKED = "session_revoked"
EMAIL_VERIFIED = "email_verified"

# Event families whose action is ``{prefix}{event}``.
SECURITY_PREFIX = "security_"
SYSTEM_PREFIX = "system_"
DATABASE_PREFIX = "db_"
BLOCKCHAIN_PREFIX = "blockchain_"
FAMILY_PREFIXES = (SECURITY_PREFIX, SYSTEM_PREFIX, DATABASE_PREFIX, BLOCKCHAIN_PREFIX)

SECURITY_THREAT = "security_threat"
SECURITY_AUTH_FAILURE = "security_auth_failure"


def _ok_or_failed(success: str, failed: str):
    return lambda status: success if status < 400 else failed


# ``METHOD /path`` (with any leading /api stripped) -> action for a status code.
ROUTE_ACTIONS = {
    "GET /auth/profile": lambda status: PROFILE_VIEW,
    "POST /auth/login": _ok_or_failed("login_success", "login_failed"),
    "POST /auth/challenge": lambda status: WALLET_CHALLENGE_REQUEST,
    "POST /auth/verify": _ok_or_failed(WALLET_AUTH_SUCCESS, WALLET_AUTH_FAILED),
    "POST /files/avatar": _ok_or_failed("avatar_upload", "avatar_upload_failed"),
}

CANONICAL_ACTIONS = frozenset({
    USER_REGISTERED,
    USER_LOGIN,
    FAILED_LOGIN,
    USER_LOGOUT,
    WALLET_CHALLENGE_REQUEST,
    WALLET_AUTH_SUCCESS,
    WALLET_AUTH_FAILED,
    WALLET_LINKED,
    PROFILE_VIEW,
    PROFILE_UPDATED,
    SESSION_REVOKED,
    EMAIL_VERIFIED,
    "login_success",
    "login_failed",
    "avatar_upload",
    "avatar_upload_failed",
})

FALLBACK_ACTION_PATTERN = re.compile(r"^[a-z]+_[^\s/]+?(_failed)?$")


def _segments(path: str) -> list[str]:
    parts = [part for part in path.split("?", 1)[0].split("/") if part]
    if parts and parts[0] == "api":
        parts.pop(0)
    return parts


def determine_action_type(method: str, path: str, status_code: int) -> str:
    """Map a request to its stable action string.

    Known routes map through ROUTE_ACTIONS; anything else becomes
    ``{method}_{first segment}`` with ``_failed`` appended on 4xx/5xx.
    """
    parts = _segments(path)
    route = f"{method.upper()} /{'/'.join(parts)}"
    mapper = ROUTE_ACTIONS.get(route)
    if mapper is not None:
        return mapper(status_code)
    first = parts[0] if parts else "unknown"
    suffix = "_failed" if status_code >= 400 else ""
    return f"{method.lower()}_{first}{suffix}"


def is_canonical_action(action: str) -> bool:
    """True when ``action`` belongs to the vocabulary or the fallback shape."""
    if action in CANONICAL_ACTIONS or action.startswith(FAMILY_PREFIXES):
        return True
    return FALLBACK_ACTION_PATTERN.match(action) is not None


def severity_for_status(status_code: int) -> str:
    """Severity ladder for API events."""
    if status_code in (401, 403):
        return HIGH
    if status_code >= 500:
        return ERROR
    if status_code >= 400:
        return WARN
    return INFO


def level_enabled(level: str, configured: str) -> bool:
    """Whether a system event at ``level`` passes the configured log level."""
    return LOG_LEVEL_ORDER.get(level, LOG_LEVEL_ORDER["INFO"]) <= LOG_LEVEL_ORDER.get(
        configured, LOG_LEVEL_ORDER["INFO"]
    )
