"""Parse ``SKILL:`` / ``CLI:`` directive lines out of free-form task descriptions.

Directives are declarative metadata only; the scheduler never looks at them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_SKILL_RE = re.compile(r"(?im)^SKILL:[ \t]*([^\n]+)")
_CLI_RE = re.compile(r"(?im)^CLI:[ \t]*([^\n]+)")
_DIRECTIVE_LINE_RE = re.compile(r"(?im)^(?:SKILL|CLI):[ \t]*[^\n]+\n*")


@dataclass(frozen=True, slots=True)
class TaskDirectives:
    skill: str | None = None
    clis: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""


def parse_directives(description: str | None) -> TaskDirectives:
    """Extract the first ``SKILL:`` and ``CLI:`` lines and the cleaned description."""

    text = description or ""
    skill_match = _SKILL_RE.search(text)
    skill = skill_match.group(1).strip() if skill_match else None
    cli_match = _CLI_RE.search(text)
    clis: tuple[str, ...] = ()
    if cli_match:
        clis = tuple(item.strip() for item in cli_match.group(1).split(",") if item.strip())
    return TaskDirectives(
        skill=skill or None,
        clis=clis,
        description=clean_description(text),
    )


def clean_description(description: str) -> str:
    return _DIRECTIVE_LINE_RE.sub("", description).strip()
