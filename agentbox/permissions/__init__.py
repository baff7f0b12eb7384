"""
Permissions — risk scoring and the policy gate for sandbox actions.
"""

from __future__ import annotations

from agentbox.permissions.manager import (
    AuditLogEntry,
    PermissionManager,
    PermissionRequest,
    PermissionResult,
)
from agentbox.permissions.risk import RiskAssessment, RiskAssessor, RiskLevel

__all__ = [
    "AuditLogEntry",
    "PermissionManager",
    "PermissionRequest",
    "PermissionResult",
    "RiskAssessment",
    "RiskAssessor",
    "RiskLevel",
]
