"""
Tests for definition sources, engine configuration and the CLI's validate
command.
"""

import argparse
import json

import pytest

from agentgraph.cli import cmd_validate
from agentgraph.config import EngineConfig, get_agentgraph_config, get_timeout
from agentgraph.errors import DefinitionNotFound
from agentgraph.storage.definitions import (
    FileDefinitionSource,
    InMemoryDefinitionSource,
    load_definition,
)

GREETER = {
    "id": "greeter",
    "name": "Greeter",
    "nodes": [
        {"id": "in", "type": "Input", "isStart": True},
        {"id": "out", "type": "Output", "isEnd": True, "config": {"outputMapping": {"text": "Hi {{input.name}}"}}},
    ],
    "edges": [{"id": "e1", "source": "in", "target": "out"}],
}


@pytest.fixture
def workflows_dir(tmp_path):
    (tmp_path / "greeter.json").write_text(json.dumps(GREETER))
    (tmp_path / "broken.json").write_text(json.dumps({"name": "no id"}))
    return tmp_path


# ---- Definition sources ----


def test_file_source_loads_by_id(workflows_dir):
    source = FileDefinitionSource(workflows_dir)

    definition = source.get_definition("greeter")

    assert definition.name == "Greeter"
    assert [node.id for node in definition.nodes] == ["in", "out"]


def test_file_source_errors(workflows_dir):
    source = FileDefinitionSource(workflows_dir)

    with pytest.raises(DefinitionNotFound):
        source.get_definition("missing")
    with pytest.raises(ValueError, match="Malformed"):
        source.get_definition("broken")
    with pytest.raises(ValueError, match="path"):
        source.get_definition("../greeter")


def test_in_memory_source(workflows_dir):
    definition = load_definition(workflows_dir / "greeter.json")
    source = InMemoryDefinitionSource([definition])

    assert source.get_definition("greeter") is definition
    with pytest.raises(DefinitionNotFound) as excinfo:
        source.get_definition("other")
    assert isinstance(excinfo.value, LookupError)


# ---- Configuration ----


def test_config_file_and_env_overrides(tmp_path, monkeypatch):
    config_file = tmp_path / "configuration.json"
    config_file.write_text(json.dumps({"timeouts": {"http": 12}}))

    assert get_agentgraph_config(config_file) == {"timeouts": {"http": 12}}
    assert get_agentgraph_config(tmp_path / "missing.json") == {}

    monkeypatch.setenv("AGENTGRAPH_CODE_TIMEOUT", "2.5")
    monkeypatch.setenv("AGENTGRAPH_MODEL", "anthropic/claude-test")

    assert get_timeout("code", 5.0) == 2.5
    config = EngineConfig()
    assert config.model == "anthropic/claude-test"
    assert config.code_timeout == 2.5
    assert config.failure_policy == "fail_fast"


# ---- CLI ----


def test_cli_validate(workflows_dir, capsys):
    ok = cmd_validate(argparse.Namespace(file=str(workflows_dir / "greeter.json")))
    broken = cmd_validate(argparse.Namespace(file=str(workflows_dir / "broken.json")))

    out, err = capsys.readouterr()
    assert ok == 0
    assert "✓ Greeter (2 nodes, 1 edges)" in out
    assert broken == 1
    assert "Malformed" in err


def test_cli_validate_reports_errors(tmp_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({**GREETER, "name": ""}))

    assert cmd_validate(argparse.Namespace(file=str(path))) == 1
    assert "Workflow name must not be empty" in capsys.readouterr().err
