"""
Credibility scoring.

A linear, severity-weighted deduction from a base of 100: each lost point
traces back to one recorded violation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from .config import ScoringConfig
from .models import Severity, ViolationEvent


@dataclass(frozen=True)
class CredibilityScore:
    score: float
    base_score: float
    total_violations: int
    breakdown: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "base_score": self.base_score,
            "total_violations": self.total_violations,
            "breakdown": dict(self.breakdown),
        }


def _severity_of(violation: Any) -> str:
    severity = violation.severity if isinstance(violation, ViolationEvent) else violation["severity"]
    return severity.value if isinstance(severity, Severity) else str(severity)


def score(violations: Iterable[Any], config: Optional[ScoringConfig] = None) -> CredibilityScore:
    """Accepts ViolationEvents or stored rows (dicts with a "severity" key)."""
    cfg = config or ScoringConfig()
    total = 0
    breakdown: Dict[str, float] = {}
    for violation in violations:
        total += 1
        severity = _severity_of(violation)
        delta = cfg.deltas.get(severity, 0.0)
        breakdown[severity] = breakdown.get(severity, 0.0) + delta

    raw = cfg.base_score + sum(breakdown[key] for key in sorted(breakdown))
    return CredibilityScore(
        score=max(0.0, min(100.0, raw)),
        base_score=cfg.base_score,
        total_violations=total,
        breakdown=breakdown,
    )


def severity_histogram(violations: Iterable[Any]) -> Dict[str, int]:
    counts = {s.value: 0 for s in (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW)}
    for violation in violations:
        severity = _severity_of(violation)
        if severity in counts:
            counts[severity] += 1
    return counts


def credibility_band(value: float) -> str:
    if value >= 80:
        return "trusted"
    if value >= 50:
        return "review"
    return "flagged"
