"""Tests for the JSON config store and its environment overrides."""

import json
import stat
from unittest.mock import patch

import pytest
from dropbox_appender.cli import Config, LocalIOError, default_config_path, load_config, save_config


class TestLoadConfig:
    def test_missing_file_is_empty_config(self, tmp_path):
        assert load_config(tmp_path / "nope.json", env={}) == Config()

    def test_malformed_file_is_empty_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_config(path, env={}) == Config()

    def test_non_object_file_is_empty_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2, 3]")
        assert load_config(path, env={}) == Config()

    def test_reads_fields_and_ignores_unknown(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "app_key": "key", "app_secret": "secret", "refresh_token": "rt", "extra": 1,
        }))
        assert load_config(path, env={}) == Config("key", "secret", "rt")

    def test_env_overrides_every_field(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"app_key": "k", "app_secret": "s", "refresh_token": "r"}))
        env = {
            "DROPBOX_APP_KEY": "env-k",
            "DROPBOX_APP_SECRET": "env-s",
            "DROPBOX_REFRESH_TOKEN": "env-r",
        }
        assert load_config(path, env=env) == Config("env-k", "env-s", "env-r")

    def test_partial_env_overrides_only_that_field(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"app_key": "k", "app_secret": "s", "refresh_token": "r"}))
        cfg = load_config(path, env={"DROPBOX_APP_SECRET": "env-s"})
        assert cfg == Config("k", "env-s", "r")

    def test_empty_env_value_does_not_override(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"app_key": "k"}))
        assert load_config(path, env={"DROPBOX_APP_KEY": ""}).app_key == "k"

    def test_env_applies_without_file(self, tmp_path):
        cfg = load_config(tmp_path / "missing.json", env={"DROPBOX_REFRESH_TOKEN": "r"})
        assert cfg == Config(refresh_token="r")

    def test_defaults_to_process_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DROPBOX_APP_KEY", "from-os")
        assert load_config(tmp_path / "missing.json").app_key == "from-os"


class TestSaveConfig:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "cfg" / "config.json"
        cfg = Config("key", "secret", "refresh")
        save_config(path, cfg)
        assert load_config(path, env={}) == cfg

    def test_indented_json(self, tmp_path):
        path = tmp_path / "config.json"
        save_config(path, Config("key", "secret", "refresh"))
        text = path.read_text()
        assert '\n  "app_key": "key"' in text
        assert json.loads(text) == {"app_key": "key", "app_secret": "secret", "refresh_token": "refresh"}

    def test_owner_only_permissions(self, tmp_path):
        path = tmp_path / "private" / "config.json"
        save_config(path, Config("k", "s", "r"))
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert stat.S_IMODE(path.parent.stat().st_mode) & 0o077 == 0

    def test_creates_missing_parents_owner_only(self, tmp_path):
        path = tmp_path / "home-config" / "dropbox-appender" / "config.json"
        save_config(path, Config("k", "s", "r"))
        for directory in (path.parent, path.parent.parent):
            assert stat.S_IMODE(directory.stat().st_mode) & 0o077 == 0

    def test_overwrites_existing(self, tmp_path):
        path = tmp_path / "config.json"
        save_config(path, Config("old", "old", "old"))
        save_config(path, Config("new", "new", "new"))
        assert load_config(path, env={}) == Config("new", "new", "new")
        assert [p.name for p in tmp_path.iterdir()] == ["config.json"]

    def test_write_failure_raises_and_keeps_original(self, tmp_path):
        path = tmp_path / "config.json"
        save_config(path, Config("k", "s", "r"))
        with patch("dropbox_appender.cli.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(LocalIOError, match="disk full"):
                save_config(path, Config("x", "y", "z"))
        assert load_config(path, env={}) == Config("k", "s", "r")
        assert [p.name for p in tmp_path.iterdir()] == ["config.json"]

    def test_directory_creation_failure(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(LocalIOError):
            save_config(blocker / "config.json", Config())


def test_default_config_path(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert default_config_path() == tmp_path / ".config" / "dropbox-appender" / "config.json"
