from __future__ import annotations

import json
from pathlib import Path

import pytest

from skillgate.core.config import get_settings
from skillgate.skills.interpolation import extract_by_path, interpolate_body, interpolate_template
from skillgate.skills.models import (
    CliTemplateCommand,
    DeclarativeCommand,
    ExecutionResult,
    HandlerCommand,
    PromptCommand,
)
from skillgate.skills.parser import SkillDefinitionError, parse_skill_definition
from skillgate.skills.registry import SkillRegistry


def test_command_variant_is_fixed_at_load_time():
    skill = parse_skill_definition(
        {
            "id": "mixed",
            "commands": [
                {
                    "name": "both",
                    "request": {"method": "get", "path": "/x"},
                    "handler_file": "x.js",
                    "prompt_template": "ignored",
                },
                {"name": "cli", "cli_command_template": {"url_template": "https://x.test/{q}"}, "handler_file": "x.js"},
                {"name": "handler", "handler_file": "handlers/x.js", "vault_service": "GitHub"},
                {"name": "prompt", "prompt_template": "Say {word}"},
                {"name": "bare"},
            ],
        }
    )

    kinds = {command.name: type(command) for command in skill.commands}
    assert kinds == {
        "both": DeclarativeCommand,
        "cli": CliTemplateCommand,
        "handler": HandlerCommand,
        "prompt": PromptCommand,
        "bare": PromptCommand,
    }
    assert skill.command("both").request.method == "GET"
    assert skill.command("handler").vault_service == "GitHub"


@pytest.mark.parametrize(
    "raw",
    [
        {"name": "no id"},
        {"id": "x", "risk_level": "extreme"},
        {"id": "x", "connection_type": "smoke-signal"},
        {"id": "x", "commands": [{"name": "a"}, {"name": "a"}]},
        {"id": "x", "commands": [{"name": "a", "cli_command_template": {"gateway_exec": True}}]},
        {"id": "x", "commands": [{"name": "a", "request": {"path": "/"}, "multi_request": {"iterate_param": "p"}}]},
        {
            "id": "x",
            "commands": [
                {
                    "name": "a",
                    "request": {"path": "/"},
                    "multi_request": {"iterate_param": "p", "iterate_over": ["1"], "failure_policy": "some"},
                }
            ],
        },
    ],
)
def test_invalid_definitions_are_rejected(raw):
    with pytest.raises(SkillDefinitionError):
        parse_skill_definition(raw)


def test_registry_loads_shipped_skills():
    registry = SkillRegistry.load(get_settings().skills_root)

    marketplace = registry.get("marketplace")
    assert marketplace is not None
    assert marketplace.dangerous
    assert {c.name for c in marketplace.commands} >= {"register", "heartbeat", "fetch_peers", "forum_post"}
    fan_out = registry.get("github-repos").command("compare_repos")
    assert fan_out.multi_request.iterate_over == ("cpython", "pyperformance")


def test_registry_rejects_duplicate_ids(tmp_path: Path):
    for name in ("a.json", "b.json"):
        (tmp_path / name).write_text(json.dumps({"id": "same"}), encoding="utf-8")
    with pytest.raises(ValueError):
        SkillRegistry.load(tmp_path)


def test_extract_by_path_variants():
    data = {
        "items": [{"name": "a", "tags": []}, {"name": "b", "tags": ["x"]}],
        "meta": {"count": 2},
    }
    assert extract_by_path(data, "meta.count") == 2
    assert extract_by_path(data, "items[1].name") == "b"
    assert extract_by_path(data, "items[*].name") == ["a", "b"]
    assert extract_by_path(data, "items[?].tags[0]") == "x"
    assert extract_by_path(data, "items[5].name") is None
    assert extract_by_path(data, "meta.missing.deeper") is None


def test_interpolation_of_templates_and_bodies():
    assert interpolate_template("{name}: {tags}", {"name": "repo", "tags": ["a", "b"]}) == "repo: a, b"
    assert interpolate_template("{missing}!", {}) == "!"
    body = interpolate_body({"q": "{term}", "opts": ["{n}", 3], "flag": True}, {"term": "cats", "n": 5})
    assert body == {"q": "cats", "opts": ["5", 3], "flag": True}


def test_failed_result_must_carry_error():
    with pytest.raises(ValueError):
        ExecutionResult(success=False)
    assert ExecutionResult.failure("").error == "unknown error"
