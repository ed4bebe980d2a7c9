"""Request threat heuristics.

Detection is pure and deterministic. It only labels requests for the audit
stream and never rejects one.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

SUSPICIOUS_USER_AGENT = "suspiciousUserAgent"
SQL_INJECTION_ATTEMPT = "sqlInjectionAttempt"
PATH_TRAVERSAL = "pathTraversal"
UNUSUAL_METHOD = "unusualMethod"

USER_AGENT_PATTERN = re.compile(r"bot|crawler|spider|scraper", re.IGNORECASE)
SQL_PATTERN = re.compile(r"union|select|insert|delete|drop|exec", re.IGNORECASE)
TRAVERSAL_PATTERN = re.compile(r"\.\./|\.\.\\")

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"})


@dataclass
class ThreatReport:
    """Flags raised for one request."""
    flags: list[str] = field(default_factory=list)

    @property
    def detected(self) -> bool:
        return bool(self.flags)

    @property
    def severity(self) -> Optional[str]:
        return "HIGH" if self.flags else None


def scan_user_agent(user_agent: Optional[str]) -> bool:
    return bool(user_agent) and USER_AGENT_PATTERN.search(user_agent) is not None


def scan_payload(query: Optional[dict[str, Any]], body: Any) -> bool:
    """Look for SQL keywords in the JSON rendering of query and body."""
    if not query and body is None:
        return False
    rendered = json.dumps({"query": query or {}, "body": body}, default=str)
    return SQL_PATTERN.search(rendered) is not None


def scan_path(path: str) -> bool:
    return TRAVERSAL_PATTERN.search(path or "") is not None


def scan_method(method: str) -> bool:
    return bool(method) and method.upper() not in ALLOWED_METHODS


def detect_threats(
    method: str,
    path: str,
    user_agent: Optional[str] = None,
    query: Optional[dict[str, Any]] = None,
    body: Any = None,
) -> ThreatReport:
    report = ThreatReport()
    if scan_user_agent(user_agent):
        report.flags.append(SUSPICIOUS_USER_AGENT)
    if scan_payload(query, body):
        report.flags.append(SQL_INJECTION_ATTEMPT)
    if scan_path(path):
        report.flags.append(PATH_TRAVERSAL)
    if scan_method(method):
        report.flags.append(UNUSUAL_METHOD)
    return report
