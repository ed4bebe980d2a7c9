"""Audit event variants.

Each variant has one pipeline method that turns it into an activity payload;
``AuditPipeline.record`` dispatches on the type.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from gatehouse.audit.actions import INFO, WARN


@dataclass
class ActivityPayload:
    """The common shape every event is reduced to before batching."""
    user_id: int
    tenant_id: int
    action: str
    details: dict[str, Any] = field(default_factory=dict)
    wallet_address: Optional[str] = None
    table_name: Optional[str] = None
    record_id: Optional[int] = None
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    severity: str = INFO


@dataclass
class UserActivityEvent:
    user_id: int
    tenant_id: int
    action: str
    details: dict[str, Any] = field(default_factory=dict)
    wallet_address: Optional[str] = None
    table_name: Optional[str] = None
    record_id: Optional[int] = None
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    severity: str = INFO


@dataclass
class SecurityEvent:
    tenant_id: Optional[int]
    event: str
    user_id: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    severity: str = WARN


@dataclass
class ApiEvent:
    tenant_id: Optional[int]
    method: str
    path: str
    status_code: int
    response_time_ms: float
    user_id: Optional[int] = None
    response_size: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class DatabaseEvent:
    tenant_id: Optional[int]
    operation: str
    table: str
    record_id: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)
    duration_ms: Optional[float] = None
    success: bool = True


@dataclass
class BlockchainEvent:
    tenant_id: Optional[int]
    operation: str
    user_id: Optional[int] = None
    tx_hash: Optional[str] = None
    contract_address: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    gas_used: Optional[int] = None
    block_number: Optional[int] = None


@dataclass
class SystemEvent:
    event: str
    level: str = INFO
    tenant_id: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)
