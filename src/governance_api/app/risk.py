"""Keyword-based risk classifier.

Matching is a case-insensitive substring test on the lower-cased prompt with a
fixed precedence: any HIGH marker wins over any MEDIUM marker, and everything
else is LOW. "deploy" on its own is not a HIGH marker; only "deploy to production"
is.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .models import RiskLevel

HIGH_RISK_MARKERS: tuple[str, ...] = (
    "deploy to production",
    "delete production",
    "drop production",
    "remove production",
    "production secret",
    "api key",
    "password",
    "credential",
    "token",
    "private key",
    "production database",
    "license violation",
    "copyright",
    "proprietary",
)

MEDIUM_RISK_MARKERS: tuple[str, ...] = (
    "modify",
    "update",
    "change",
    "refactor",
    "config",
    "dependency",
    "multi-file",
    "security",
    "auth",
)


def classify(prompt: str, context: Mapping[str, Any] | None = None) -> RiskLevel:
    """Map a prompt to a risk level. `context` is accepted but not consulted yet."""
    risk, _ = explain_classification(prompt)
    return risk


def explain_classification(prompt: str) -> tuple[RiskLevel, str | None]:
    """Return the risk level together with the first marker that decided it."""
    text = prompt.lower()
    for marker in HIGH_RISK_MARKERS:
        if marker in text:
            return RiskLevel.HIGH, marker
    for marker in MEDIUM_RISK_MARKERS:
        if marker in text:
            return RiskLevel.MEDIUM, marker
    return RiskLevel.LOW, None
