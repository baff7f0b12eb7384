"""
Permission Manager — the gate in front of every mutating sandbox operation.

Decision order for a single request:

1. Blocklist match       -> denied ("Blocked by policy")
2. Allowlist match       -> allowed (bypasses risk scoring)
3. Risk assessment       -> allowed when the level is at or below
                            ``accept_risk_level``, or when ``auto_accept`` is on
4. Otherwise             -> denied with the assessment's top reason

Every decision, allowed or denied, is appended to an in-memory audit log and
forwarded to an optional sink. Prompting a human for approval is the caller's
job; this class only answers yes or no.
"""

from __future__ import annotations

import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional, Union

import structlog

from agentbox.config import PermissionConfig
from agentbox.permissions.risk import RiskAssessment, RiskAssessor, RiskLevel

logger = structlog.get_logger(__name__)

RequestType = Literal["bash", "file_write", "file_read", "file_delete"]

AuditSink = Callable[["AuditLogEntry"], Union[None, Awaitable[None]]]


@dataclass
class PermissionRequest:
    """A single proposed sandbox action."""

    type: RequestType
    command: Optional[str] = None
    path: Optional[str] = None
    working_dir: Optional[str] = None

    @property
    def operation(self) -> str:
        return self.command or self.path or ""


@dataclass
class PermissionResult:
    allowed: bool
    reason: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    assessment: Optional[RiskAssessment] = None


@dataclass
class AuditLogEntry:
    type: RequestType
    operation: str
    decision: Literal["allowed", "denied"]
    risk_level: RiskLevel
    reason: str
    reasons: list[str] = field(default_factory=list)
    working_dir: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class PermissionManager:
    """Combines allow/deny lists and a risk threshold into a yes/no answer."""

    def __init__(
        self,
        config: Optional[PermissionConfig] = None,
        assessor: Optional[RiskAssessor] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self._config = config or PermissionConfig()
        self._assessor = assessor or RiskAssessor()
        self._audit_sink = audit_sink
        self._audit_log: deque[AuditLogEntry] = deque(maxlen=self._config.audit_log_max_entries)
        self._accept_level = RiskLevel(self._config.accept_risk_level)

    @property
    def assessor(self) -> RiskAssessor:
        return self._assessor

    @property
    def accept_risk_level(self) -> RiskLevel:
        return self._accept_level

    async def check_permission(self, request: PermissionRequest) -> PermissionResult:
        """Decide whether ``request`` may proceed. Never touches a sandbox."""
        operation = request.operation
        assessment = self._assessor.assess(operation)

        if self._assessor.is_blocked(operation, self._config.blocklist):
            result = PermissionResult(
                allowed=False,
                reason="Command is blocked by security policy",
                risk_level=assessment.level,
                assessment=assessment,
            )
            await self._audit(request, result, "Blocked by policy")
            return result

        if self._assessor.is_allowed(operation, self._config.allowlist):
            result = PermissionResult(
                allowed=True,
                reason="Command is in allowlist",
                risk_level=assessment.level,
                assessment=assessment,
            )
            await self._audit(request, result, "In allowlist")
            return result

        if assessment.level <= self._accept_level or self._config.auto_accept:
            result = PermissionResult(
                allowed=True,
                reason=f"Auto-accepted (risk level: {assessment.level.value})",
                risk_level=assessment.level,
                assessment=assessment,
            )
            await self._audit(request, result, result.reason)
            return result

        result = PermissionResult(
            allowed=False,
            reason=(
                f"Requires approval (risk level: {assessment.level.value}): "
                f"{assessment.top_reason}"
            ),
            risk_level=assessment.level,
            assessment=assessment,
        )
        await self._audit(request, result, result.reason)
        return result

    def get_audit_log(self) -> list[AuditLogEntry]:
        return list(self._audit_log)

    def clear_audit_log(self) -> None:
        self._audit_log.clear()

    async def _audit(
        self,
        request: PermissionRequest,
        result: PermissionResult,
        reason: str,
    ) -> None:
        entry = AuditLogEntry(
            type=request.type,
            operation=request.operation,
            decision="allowed" if result.allowed else "denied",
            risk_level=result.risk_level,
            reason=reason,
            reasons=list(result.assessment.reasons) if result.assessment else [],
            working_dir=request.working_dir,
        )
        self._audit_log.append(entry)

        log = logger.info if result.allowed else logger.warning
        log(
            "permission.allowed" if result.allowed else "permission.denied",
            type=request.type,
            operation=request.operation,
            risk_level=result.risk_level.value,
            reason=reason,
        )

        if self._audit_sink is not None:
            try:
                outcome: Any = self._audit_sink(entry)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.warning("permission.audit_sink_failed", exc_info=True)
