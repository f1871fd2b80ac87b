from __future__ import annotations

import allure

from swarm_engine.orchestrator.directives import clean_description, parse_directives

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Task Directives"),
]


def test_parse_skill_and_cli_lines() -> None:
    directives = parse_directives(
        "Summarize open incidents.\nskill: incident-report \nCLI: gh, , pagerduty\nThen post it.",
    )

    assert directives.skill == "incident-report"
    assert directives.clis == ("gh", "pagerduty")
    assert directives.description == "Summarize open incidents.\nThen post it."


def test_only_the_first_directive_of_each_kind_counts() -> None:
    directives = parse_directives("SKILL: first\nSKILL: second\nCLI: a\nCLI: b")

    assert directives.skill == "first"
    assert directives.clis == ("a",)
    assert directives.description == ""


def test_directives_must_start_a_line() -> None:
    directives = parse_directives("Use the SKILL: trick inline")

    assert directives.skill is None
    assert directives.clis == ()
    assert directives.description == "Use the SKILL: trick inline"


def test_empty_description() -> None:
    assert parse_directives(None).description == ""
    assert clean_description("\n\n") == ""
