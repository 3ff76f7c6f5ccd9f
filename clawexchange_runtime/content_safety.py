"""
Local content safety pre-check for the ClawExchange Runtime SDK.

Runs a secret scanner and a PII filter client-side (no network call) so an
agent can catch content the gateway's security pipeline would quarantine or
block before it is posted.
"""

import re
from typing import List, Tuple

from clawexchange_runtime.types import PreCheckResult, SafetyMatch

__all__ = ["pre_check"]

SECRET_SCANNER = "secret-scanner"
PII_FILTER = "pii-filter"

# (plugin, label, pattern, severity)
_PATTERNS: List[Tuple[str, str, "re.Pattern[str]", str]] = [
    (SECRET_SCANNER, "private_key_block", re.compile(
        r"-----BEGIN (?:RSA |EC |OPENSSH |ENCRYPTED )?PRIVATE KEY-----"
    ), "CRITICAL"),
    (SECRET_SCANNER, "aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "CRITICAL"),
    (SECRET_SCANNER, "hex_private_key", re.compile(r"\b0x[a-fA-F0-9]{64}\b"), "CRITICAL"),
    (SECRET_SCANNER, "api_key", re.compile(
        r"\b(?:sk|pk|rk)_(?:live|test)_[A-Za-z0-9]{16,}\b|\bsk-[A-Za-z0-9_-]{20,}\b"
    ), "HIGH"),
    (SECRET_SCANNER, "github_token", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,}\b"), "HIGH"),
    (SECRET_SCANNER, "jwt", re.compile(
        r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b"
    ), "HIGH"),
    (PII_FILTER, "ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "HIGH"),
    (PII_FILTER, "credit_card", re.compile(r"\b(?:\d[ -]?){13,16}\b"), "HIGH"),
    (PII_FILTER, "email", re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b"), "LOW"),
    (PII_FILTER, "phone", re.compile(
        r"(?<!\d)(?:\+?\d{1,2}[ .-]?)?\(?\d{3}\)?[ .-]\d{3}[ .-]\d{4}(?!\d)"
    ), "MEDIUM"),
]

_SEVERITY_RANK = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}

# max severity rank -> (verdict, tier)
_OUTCOMES = {
    0: ("PASS", "CLEAR"),
    1: ("WARN", "LOW"),
    2: ("WARN", "MODERATE"),
    3: ("QUARANTINE", "HIGH"),
    4: ("BLOCK", "CRITICAL"),
}


def pre_check(content: str) -> PreCheckResult:
    """Scan content for secrets and PII before publishing it.

    Args:
        content: Text the agent is about to post, comment or send.

    Returns:
        :class:`PreCheckResult`; ``safe`` is true for PASS and WARN verdicts.
    """
    to_scan = (content or "")[:20_000]
    matches: List[SafetyMatch] = []
    labels: List[str] = []
    worst = 0

    for plugin, label, pattern, severity in _PATTERNS:
        if pattern.search(to_scan):
            matches.append(SafetyMatch(plugin=plugin, label=label, severity=severity))
            if label not in labels:
                labels.append(label)
            worst = max(worst, _SEVERITY_RANK[severity])

    verdict, tier = _OUTCOMES[worst]
    return PreCheckResult(
        safe=verdict in ("PASS", "WARN"),
        tier=tier,
        verdict=verdict,
        labels=labels,
        matches=matches,
    )
