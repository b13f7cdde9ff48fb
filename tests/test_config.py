"""Tests for config file and environment resolution."""

from __future__ import annotations

import pytest

from foreman.config import (
    DEFAULT_DAG_MAX_CONCURRENCY,
    CoordinatorConfig,
    _int_env,
    load_coordinator_config,
    load_dag_max_concurrency,
)

_ENV_VARS = (
    "FOREMAN_MAX_CONCURRENT_AGENTS",
    "FOREMAN_DEFAULT_MAX_TURNS",
    "FOREMAN_DEFAULT_AGENT",
    "FOREMAN_AUTO_QC",
    "FOREMAN_AUTO_MERGE_ON_QC_PASS",
    "FOREMAN_DAG_MAX_CONCURRENCY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_int_env_invalid_falls_back(monkeypatch):
    monkeypatch.setenv("FOREMAN_MAX_CONCURRENT_AGENTS", "abc")
    assert _int_env("FOREMAN_MAX_CONCURRENT_AGENTS", 3, min_value=1) == 3


def test_int_env_clamps_to_minimum(monkeypatch):
    monkeypatch.setenv("FOREMAN_MAX_CONCURRENT_AGENTS", "0")
    assert _int_env("FOREMAN_MAX_CONCURRENT_AGENTS", 3, min_value=1) == 1


def test_defaults_without_config_file(tmp_path):
    config = load_coordinator_config(tmp_path / "missing.toml")
    assert config == CoordinatorConfig()
    assert load_dag_max_concurrency(tmp_path / "missing.toml") == DEFAULT_DAG_MAX_CONCURRENCY


def test_file_values_then_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text(
        "[coordinator]\n"
        "max_concurrent_agents = 2\n"
        'default_agent = "claude"\n'
        "auto_qc = false\n"
        "\n[dag]\nmax_concurrency = 3\n"
    )
    config = load_coordinator_config(path)
    assert config.max_concurrent_agents == 2
    assert config.default_agent == "claude"
    assert config.auto_qc is False
    assert load_dag_max_concurrency(path) == 3

    monkeypatch.setenv("FOREMAN_MAX_CONCURRENT_AGENTS", "8")
    monkeypatch.setenv("FOREMAN_AUTO_QC", "yes")
    monkeypatch.setenv("FOREMAN_DAG_MAX_CONCURRENCY", "10")
    config = load_coordinator_config(path)
    assert config.max_concurrent_agents == 8
    assert config.auto_qc is True
    assert load_dag_max_concurrency(path) == 10


def test_invalid_file_section_is_ignored(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[coordinator]\nmax_concurrent_agents = -1\nbogus = 1\n")
    assert load_coordinator_config(path) == CoordinatorConfig()


def test_unparseable_file_degrades_to_defaults(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[coordinator\nnot toml")
    assert load_coordinator_config(path) == CoordinatorConfig()


def test_invalid_bool_env_falls_back(monkeypatch, tmp_path):
    monkeypatch.setenv("FOREMAN_AUTO_MERGE_ON_QC_PASS", "maybe")
    assert load_coordinator_config(tmp_path / "none.toml").auto_merge_on_qc_pass is False


def test_merged_rejects_bad_values():
    with pytest.raises(ValueError, match="Unknown coordinator config keys"):
        CoordinatorConfig().merged({"max_threads": 1})
    with pytest.raises(ValueError, match="default_agent"):
        CoordinatorConfig().merged({"default_agent": " "})
    with pytest.raises(ValueError, match="auto_qc"):
        CoordinatorConfig().merged({"auto_qc": "yes"})
