"""
Risk Assessor — scoring shell commands before they reach a sandbox.

Every command (or path, for file operations) is run through an ordered list of
pattern checks. Tier checks place the command in a band:

    critical  score >= 80   root deletion, disk formatting, shutdown, editing
                            /etc/passwd|shadow|sudoers, remote script piped to
                            an interpreter
    high      60 .. 79      recursive force delete, sudo rm, force push,
                            publishing, forced container removal, hard reset,
                            world-writable chmod
    medium    30 .. 59      dependency installs, git push, running containers,
                            remote shells, rsync
    low       < 30          everything else

The strongest tier that fires sets the base score. Independent heuristics
(length, chaining, redirection, bare sudo, PATH edits, base64, eval) then add
to it, so a score can exceed 100. The assessment is a pure function of the
input string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable


class RiskLevel(str, Enum):
    """Totally ordered risk tiers."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def __le__(self, other: object) -> bool:  # type: ignore[override]
        return self.rank <= RiskLevel(other).rank

    def __lt__(self, other: object) -> bool:  # type: ignore[override]
        return self.rank < RiskLevel(other).rank

    def __ge__(self, other: object) -> bool:  # type: ignore[override]
        return self.rank >= RiskLevel(other).rank

    def __gt__(self, other: object) -> bool:  # type: ignore[override]
        return self.rank > RiskLevel(other).rank


_LEVEL_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]

CRITICAL_SCORE = 100
HIGH_SCORE = 75
MEDIUM_SCORE = 50


@dataclass
class RiskAssessment:
    """Outcome of ``RiskAssessor.assess``."""

    level: RiskLevel
    score: int
    reasons: list[str] = field(default_factory=list)

    @property
    def top_reason(self) -> str:
        return self.reasons[0] if self.reasons else ""


# rm plus its option words, recursive and force both present in any spelling
# (-rf, -fR, -r -f, --recursive --force ...)
_RM_RF = (
    r"\brm"
    r"(?=(?:\s+-\S+)*?\s+(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)(?=\s|$))"
    r"(?=(?:\s+-\S+)*?\s+(?:-[a-zA-Z]*f[a-zA-Z]*|--force)(?=\s|$))"
    r"(?:\s+-\S+)+"
)
# any absolute operand except /tmp and /var/tmp (and what lives below them)
_ROOT_OPERAND = r"(?:\s+[^\s;&|]+)*?\s+[\"']?/(?!(?:var/)?tmp(?:/|[\s\"';&|]|$))"

_CRITICAL_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(_RM_RF + _ROOT_OPERAND), "Deletes root filesystem"),
    (re.compile(r"\bformat\s+[a-z]:", re.IGNORECASE), "Formats entire drive"),
    (re.compile(r"\bdel\s+/[sf]", re.IGNORECASE), "Deletes system files (Windows)"),
    (re.compile(r"\b(?:shutdown|reboot|poweroff|halt)\b|\binit\s+[06]\b"), "System shutdown/reboot"),
    (re.compile(r"\bdd\s+.*of=/dev/(?:sd|hd|nvme|xvd|vd|disk|mmcblk)"), "Direct disk write (can destroy data)"),
    (re.compile(r"\bmkfs\b"), "Formats filesystem"),
    (
        re.compile(r"(?:>|\bvim?\b|\bnano\b|\bemacs\b|\bedit\b|\btee\b|\bsed\s+-i).*/etc/(?:passwd|shadow|sudoers)\b"),
        "Modifies critical system files",
    ),
    (
        re.compile(r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|k|da)?sh\b"),
        "Executes remote script without inspection",
    ),
    (
        re.compile(r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:python[0-9.]*|perl|ruby|node)\b"),
        "Executes remote script without inspection",
    ),
]

_HIGH_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(_RM_RF + r"\s+(?!/(?:\s|$))\S"), "Recursive force delete"),
    (re.compile(r"\bsudo\s+rm\b"), "Elevated permissions file deletion"),
    (re.compile(r"\bgit\s+push\b.*(?:\s--force\b|\s-f\b|\s--force-with-lease\b)"), "Force pushes can overwrite history"),
    (
        re.compile(r"\b(?:npm|yarn|pnpm|poetry|cargo|gem)\s+publish\b|\btwine\s+upload\b"),
        "Publishes package to registry",
    ),
    (
        re.compile(r"\bdocker\s+(?:container\s+)?(?:rm|rmi)\b.*(?:\s-f\b|\s--force\b)"),
        "Force removes Docker containers or images",
    ),
    (re.compile(r"\bdocker\s+system\s+prune\b.*\s-a\b"), "Removes all unused Docker data"),
    (re.compile(r"\bgit\s+reset\s+--hard\b"), "Hard reset discards commits and local changes"),
    (re.compile(r"\bgit\s+clean\s+-[a-zA-Z]*f[a-zA-Z]*d|\bgit\s+clean\s+-[a-zA-Z]*d[a-zA-Z]*f"), "Deletes untracked files"),
    (re.compile(r"\bchmod\s+(?:-R\s+)?(?:0?777|0?666|[ug]*[oa][ugoa]*\+w|\+w\b)"), "Makes files world-writable (security risk)"),
    (re.compile(r"\bchown\s+-R\b"), "Recursive ownership change"),
]

_MEDIUM_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(?:npm|pnpm)\s+(?:install|i|add|ci)\b"), "Installs dependencies (can include malicious packages)"),
    (re.compile(r"\byarn\s+add\b"), "Installs dependencies (can include malicious packages)"),
    (re.compile(r"\bpip[0-9.]*\s+install\b|\buv\s+(?:pip\s+install|add)\b|\bpoetry\s+add\b"), "Installs Python packages"),
    (re.compile(r"\b(?:apt|apt-get|brew|dnf|yum)\s+install\b|\bcargo\s+install\b|\bgo\s+install\b"), "Installs system packages or tools"),
    (re.compile(r"\bgit\s+push\b"), "Pushes changes to remote"),
    (re.compile(r"\bdocker\s+(?:container\s+)?(?:run|start)\b"), "Runs Docker container"),
    (re.compile(r"\bdocker\s+exec\b"), "Executes command in container"),
    (re.compile(r"\bssh\s+"), "Remote connection"),
    (re.compile(r"\bscp\s+"), "Remote file transfer"),
    (re.compile(r"\brsync\s+"), "File synchronization"),
    (re.compile(r"\bnpm\s+run\s+build\b"), "Runs build scripts"),
]

_LONG_COMMAND_CHARS = 500
_MAX_CHAINS = 3


def matches_pattern(command: str, pattern: str) -> bool:
    """Match a policy list entry against a command.

    Entry forms, tried in order: exact string, trailing ``*`` prefix wildcard
    (``"git *"``), ``/regex/`` delimiters, a bare regular expression. Entries
    that fail to compile as regex fall back to substring matching.
    """
    if not pattern:
        return False
    if command == pattern:
        return True
    if pattern.endswith("*") and not pattern.endswith(".*"):
        return command.startswith(pattern[:-1].strip())
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        pattern = pattern[1:-1]
    try:
        return re.search(pattern, command) is not None
    except re.error:
        return pattern in command


class RiskAssessor:
    """Scores commands against fixed pattern tiers plus additive heuristics."""

    def assess(self, command: str) -> RiskAssessment:
        """Assess risk level and explain which checks fired."""
        reasons: list[str] = []
        base_score = 0

        for tier_label, tier_score, patterns in (
            ("CRITICAL", CRITICAL_SCORE, _CRITICAL_PATTERNS),
            ("HIGH", HIGH_SCORE, _HIGH_PATTERNS),
            ("MEDIUM", MEDIUM_SCORE, _MEDIUM_PATTERNS),
        ):
            for regex, reason in patterns:
                if regex.search(command):
                    reasons.append(f"{tier_label}: {reason}")
                    base_score = max(base_score, tier_score)

        extra_score, extra_reasons = self._assess_additional_risks(command)
        reasons.extend(extra_reasons)
        score = base_score + extra_score

        if not reasons:
            reasons.append("No specific risks detected")

        return RiskAssessment(level=self.score_to_level(score), score=score, reasons=reasons)

    def _assess_additional_risks(self, command: str) -> tuple[int, list[str]]:
        """Heuristics that add to the score regardless of tier."""
        reasons: list[str] = []
        score = 0

        if len(command) > _LONG_COMMAND_CHARS:
            reasons.append("Command is unusually long (possible obfuscation)")
            score += 30

        chain_count = len(re.findall(r"[;&|]+", command))
        if chain_count > _MAX_CHAINS:
            reasons.append(f"Multiple chained commands ({chain_count} chains)")
            score += 40

        if re.search(r">\s*/dev/null|2>&1", command):
            reasons.append("Output redirected (hiding results)")
            score += 20

        if re.search(r"\bsudo\s*$", command):
            reasons.append("Elevated permissions without specific command")
            score += 60

        if (re.search(r"\b(?:export|setenv)\s+", command) and "PATH" in command) or re.search(
            r"(?:^|[\s;&])PATH=", command
        ):
            reasons.append("Modifies PATH environment variable")
            score += 45

        if re.search(r"\bbase64\s+(?:-d\b|--decode\b)|\becho\s+.*\|\s*base64\b", command):
            reasons.append("Uses Base64 encoding (possible obfuscation)")
            score += 35

        if re.search(r"\beval\s+", command):
            reasons.append("Uses eval (dynamic code execution)")
            score += 65

        return score, reasons

    @staticmethod
    def score_to_level(score: int) -> RiskLevel:
        if score >= 80:
            return RiskLevel.CRITICAL
        if score >= 60:
            return RiskLevel.HIGH
        if score >= 30:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def is_allowed(self, command: str, allowlist: Iterable[str]) -> bool:
        """True when any allowlist entry matches the command."""
        return any(matches_pattern(command, pattern) for pattern in allowlist)

    def is_blocked(self, command: str, blocklist: Iterable[str]) -> bool:
        """True when any blocklist entry matches the command."""
        return any(matches_pattern(command, pattern) for pattern in blocklist)

    @staticmethod
    def summary(assessment: RiskAssessment) -> str:
        lines = [
            f"Risk Level: {assessment.level.value.upper()} (score: {assessment.score})",
            "",
            "Reasons:",
        ]
        lines.extend(f"  - {reason}" for reason in assessment.reasons)
        return "\n".join(lines)
