"""Tests for loading plugin spec files."""

import json
from pathlib import Path

import pytest

from agentforge.errors import SpecValidationError
from agentforge.spec.loader import load_plugin_spec, save_plugin_spec
from agentforge.spec.models import PluginSpec


def test_load_yaml(tmp_path: Path):
    path = tmp_path / "agent.yaml"
    path.write_text(
        """
id: yaml-agent
name: from-yaml
kind: loop
max_iterations: 5
tools:
  - name: shorten
    parameters:
      - name: text
    implementation: |
      return text[:-1] if text else text
tee:
  isolation_level: container
  limits:
    memory_mb: 256
"""
    )

    spec = load_plugin_spec(path)

    assert spec.id == "yaml-agent"
    assert spec.kind == "loop"
    assert spec.tools[0].name == "shorten"
    assert spec.tee.isolation_level == "container"
    assert spec.tee.limits.memory_mb == 256


def test_load_json(tmp_path: Path):
    path = tmp_path / "agent.json"
    path.write_text(json.dumps({"name": "from-json", "resources": [{"name": "r", "content": "x"}]}))

    assert load_plugin_spec(path).resources[0].payload == b"x"


def test_missing_file(tmp_path: Path):
    with pytest.raises(SpecValidationError, match="Cannot read"):
        load_plugin_spec(tmp_path / "missing.yaml")


def test_invalid_yaml(tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("name: [unclosed")

    with pytest.raises(SpecValidationError, match="Invalid YAML"):
        load_plugin_spec(path)


def test_not_a_mapping(tmp_path: Path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n")

    with pytest.raises(SpecValidationError, match="mapping"):
        load_plugin_spec(path)


def test_save_roundtrip(tmp_path: Path, sample_spec: PluginSpec):
    path = tmp_path / "out" / "spec.yaml"

    save_plugin_spec(sample_spec, path)

    assert load_plugin_spec(path) == sample_spec
