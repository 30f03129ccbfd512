"""Tests for runbook pack loading."""

import json

import pytest
import yaml

from runguard.exceptions import NotFoundError
from runguard.runbooks import RunbookRegistry, discover_runbooks
from runguard.safety.analyzer import SafetyAnalyzer


@pytest.fixture
def packs(tmp_path):
    (tmp_path / "flush-queue.yaml").write_text(yaml.safe_dump({
        "name": "Flush queue",
        "steps": [
            {"id": "pause", "name": "Pause consumers"},
            {"id": "flush", "name": "Purge queue", "is_destructive": True, "max_retries": 0},
        ],
    }))
    (tmp_path / "rotate.json").write_text(json.dumps({
        "id": "rotate-keys",
        "name": "Rotate keys",
        "steps": [{"id": "rotate", "name": "Rotate API keys", "timeout_seconds": 20}],
    }))
    (tmp_path / "broken.yml").write_text(yaml.safe_dump({"name": "Broken", "steps": [{"id": "x"}]}))
    (tmp_path / "notes.txt").write_text("not a runbook")
    return tmp_path


def test_list_and_load(packs):
    registry = RunbookRegistry(packs)
    assert registry.list() == ["broken", "flush-queue", "rotate"]

    flush = registry.load("flush-queue")
    assert flush.id == "flush-queue"
    assert [s.id for s in flush.steps] == ["pause", "flush"]
    assert flush.steps[1].max_retries == 0
    assert flush.steps[0].max_retries == 3

    rotate = registry.load("rotate")
    assert rotate.id == "rotate-keys"
    assert rotate.steps[0].timeout_seconds == 20


def test_unknown_runbook(packs):
    with pytest.raises(NotFoundError) as exc:
        RunbookRegistry(packs).load("missing")
    assert exc.value.message == "Runbook not found: missing"


def test_discover_skips_invalid_packs(packs):
    summaries = discover_runbooks(packs)
    assert summaries == [
        {"id": "flush-queue", "name": "Flush queue", "file": "flush-queue", "steps": 2},
        {"id": "rotate-keys", "name": "Rotate keys", "file": "rotate", "steps": 1},
    ]


def test_load_file_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        RunbookRegistry.load_file(path)


def test_bundled_packs():
    registry = RunbookRegistry()
    assert {"purge-prod-cache", "restart-web-tier"} <= set(registry.list())

    analyzer = SafetyAnalyzer()
    assert analyzer.analyze(registry.load("restart-web-tier")).can_run_automatically is True
    purge = analyzer.analyze(registry.load("purge-prod-cache"))
    assert purge.can_run_automatically is False
    assert purge.finding_for("purge").danger_level.value == "critical"
