"""Strategic evaluation: advisory metadata attached to every task.

Nothing in here feeds back into the orchestrator's policy decisions. The output
is stored with the task and surfaced for audit and explanation only.
"""

from __future__ import annotations

import re
from typing import assert_never

from .models import RiskLevel, StrategicContext

DEPENDENCY_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"create\s+(\w+)", re.IGNORECASE), "May require schema/model definition"),
    (re.compile(r"deploy", re.IGNORECASE), "Requires build, test, staging validation"),
    (re.compile(r"update\s+(\w+)", re.IGNORECASE), "May affect dependent modules"),
    (re.compile(r"refactor", re.IGNORECASE), "May require test updates"),
    (re.compile(r"add\s+feature", re.IGNORECASE), "May require documentation, tests"),
)

BROAD_SCOPE_KEYWORDS: tuple[str, ...] = ("redesign", "rewrite", "overhaul", "complete")


def infer_dependencies(prompt: str) -> list[str]:
    return [description for pattern, description in DEPENDENCY_PATTERNS if pattern.search(prompt)]


def assess_roi(prompt: str) -> str:
    # Placeholder severity tag until there is a real signal to score against.
    return "medium"


def assess_scope_creep(prompt: str) -> str:
    text = prompt.lower()
    if any(keyword in text for keyword in BROAD_SCOPE_KEYWORDS):
        return "high"
    return "low"


def assess_long_term_cost(risk: RiskLevel) -> str:
    match risk:
        case RiskLevel.LOW:
            return "minimal"
        case RiskLevel.MEDIUM:
            return "moderate"
        case RiskLevel.HIGH:
            return "significant"
        case _:
            assert_never(risk)


def evaluate(prompt: str, risk: RiskLevel, dependencies: list[str]) -> StrategicContext:
    return StrategicContext(
        dependencies=list(dependencies),
        roi_assessment=assess_roi(prompt),
        scope_creep_risk=assess_scope_creep(prompt),
        long_term_cost=assess_long_term_cost(risk),
    )
