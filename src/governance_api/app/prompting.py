"""Assemble the text sent to the generation collaborator for a task.

Two optional blocks are prepended to the raw prompt, each inside a character
budget: files the caller attached under `context["context_files"]`, and a short
history of the same user's recently executed tasks.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from .models import PriorInteraction

CONTEXT_FILES_BUDGET = 4000
PRIOR_INTERACTIONS_BUDGET = 2500
PRIOR_INTERACTIONS_LIMIT = 6
PRIOR_PROMPT_SNIPPET = 180
PRIOR_OUTPUT_SNIPPET = 350
# Per-file bookkeeping allowance for the path header and separators.
_FILE_OVERHEAD = 50


def build_generation_prompt(
    prompt: str,
    context: dict[str, Any] | None = None,
    prior: Sequence[PriorInteraction] = (),
) -> str:
    assembled = _with_context_files(prompt, context)
    return _with_prior_interactions(assembled, prior)


def _with_context_files(prompt: str, context: dict[str, Any] | None) -> str:
    files = (context or {}).get("context_files")
    if not isinstance(files, list) or not files:
        return prompt

    parts = ["Context (AI sees):"]
    used = 0
    for item in files:
        if not isinstance(item, dict):
            continue
        path = str(item.get("path", ""))
        allowance = max(0, CONTEXT_FILES_BUDGET - used - 200)
        content = str(item.get("content", ""))[:allowance]
        cost = len(content) + len(path) + _FILE_OVERHEAD
        if used + cost > CONTEXT_FILES_BUDGET:
            break
        parts.append(f"--- {path} ---")
        parts.append(content)
        used += cost
    parts.append(f"--- End context ---\n\n{prompt}")
    return "\n".join(parts)


def _with_prior_interactions(prompt: str, prior: Sequence[PriorInteraction]) -> str:
    if not prior:
        return prompt

    parts = [
        'Recent prior interactions (use when user says "like before", '
        '"same as last time", "previous command", etc.):'
    ]
    used = 0
    for interaction in prior[:PRIOR_INTERACTIONS_LIMIT]:
        prompt_snippet = _snippet(interaction.prompt, PRIOR_PROMPT_SNIPPET)
        output_snippet = (
            _snippet(interaction.output, PRIOR_OUTPUT_SNIPPET)
            if interaction.output is not None
            else "(no output)"
        )
        block = f"[User] {prompt_snippet}\n[Assistant] {output_snippet}\n"
        if used + len(block) > PRIOR_INTERACTIONS_BUDGET:
            break
        parts.append(block)
        used += len(block)
    parts.append("--- End prior interactions ---\n\nCurrent request:")
    return "\n".join(parts) + "\n\n" + prompt


def _snippet(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"
