import pytest
import yaml

from fleetrun.config import load_config, load_targets, resolve_config_path, resolve_targets


def _write_config(path, config):
    with open(path, "w", encoding="utf-8") as config_file:
        yaml.safe_dump(config, config_file, sort_keys=False)


def test_load_config_from_explicit_path(tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, {"targets": {"web1": {"transport": "ssh", "host": "10.0.0.5", "user": "ops"}}})

    resolved, config = load_config(str(config_path))

    assert resolved == str(config_path)
    target = load_targets(config)["web1"]
    assert target.transport == "ssh"
    assert target.host == "10.0.0.5"
    assert target.options == {"user": "ops"}


def test_config_path_from_environment(monkeypatch, tmp_path):
    config_path = tmp_path / "env.yaml"
    _write_config(config_path, {})
    monkeypatch.setenv("FLEETRUN_CONFIG_PATH", str(config_path))

    assert resolve_config_path() == str(config_path)


def test_missing_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        resolve_config_path(str(tmp_path / "missing.yaml"))


def test_non_mapping_root_rejected(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(str(config_path))


def test_default_transport_and_empty_entries():
    targets = load_targets({"default_transport": "docker", "targets": {"app": None, "db": {"transport": "ssh"}}})
    assert targets["app"].transport == "docker"
    assert targets["app"].host == "app"
    assert targets["db"].transport == "ssh"


def test_resolve_targets_preserves_order_and_rejects_unknown():
    config = {"targets": {"a": {}, "b": {}}}
    assert [target.name for target in resolve_targets(config, ["b", "a"])] == ["b", "a"]
    with pytest.raises(KeyError):
        resolve_targets(config, ["c"])


def test_project_config_is_valid():
    _, config = load_config()
    assert "localhost" in load_targets(config)
