"""Tests for the command-line interface."""

import argparse
import os
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import macapptool
from macapptool import (
    ConfigurationError,
    _cmd_notarize,
    _cmd_sign,
    get_config_seconds,
    get_config_value,
    load_config,
)

REPO_ROOT = Path(__file__).resolve().parent.parent


def run_cli(*args: str, cwd: Path | None = None) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    env["PYTHONPATH"] = str(REPO_ROOT)
    for name in ("DEV_ID", "APPLE_ID", "APP_PASSWORD"):
        env.pop(name, None)
    return subprocess.run(
        [sys.executable, "-m", "macapptool", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
    )


@pytest.fixture(autouse=True)
def reset_config(monkeypatch):
    """Forget any config loaded by an earlier test."""
    monkeypatch.setattr(macapptool, "_config", None)


class TestCLIMain:
    """Tests for the main CLI entry point."""

    def test_no_subcommand(self):
        result = run_cli()
        assert result.returncode == 2
        assert "usage" in result.stderr.lower()

    def test_invalid_subcommand(self):
        result = run_cli("invalid")
        assert result.returncode != 0

    def test_main_help(self):
        result = run_cli("--help")
        assert result.returncode == 0
        assert "sign" in result.stdout
        assert "zip" in result.stdout
        assert "notarize" in result.stdout

    def test_version(self):
        result = run_cli("--version")
        assert result.returncode == 0
        assert macapptool.__version__ in result.stdout


class TestCLISign:
    """Tests for the 'sign' subcommand."""

    def test_sign_requires_bundle(self):
        result = run_cli("sign")
        assert result.returncode == 2

    def test_sign_help(self):
        result = run_cli("sign", "--help")
        assert result.returncode == 0
        assert "--identity" in result.stdout
        assert "--entitlements" in result.stdout
        assert "--dry-run" in result.stdout

    def test_sign_nonexistent_bundle(self, tmp_path):
        result = run_cli("sign", str(tmp_path / "Missing.app"), cwd=tmp_path)
        assert result.returncode == 1
        assert "error signing" in result.stderr

    def test_sign_dry_run(self, sample_app, tmp_path):
        result = run_cli(
            "sign", str(sample_app), "-i", "Test ID", "--dry-run", cwd=tmp_path
        )
        assert result.returncode == 0
        assert "@codesign" in result.stdout
        assert "--sign Test ID" in result.stdout
        assert "@spctl" in result.stdout


class TestCLIZip:
    """Tests for the 'zip' subcommand."""

    def test_zip_help(self):
        result = run_cli("zip", "--help")
        assert result.returncode == 0
        assert "--no-macos-suffix" in result.stdout
        assert "--force" in result.stdout

    def test_zip_dry_run(self, sample_app, tmp_path):
        result = run_cli("zip", str(sample_app), "--dry-run", cwd=tmp_path)
        assert result.returncode == 0
        assert "@ditto -c -k --norsrc" in result.stdout
        assert "MyApp_1.2_macOS.zip" in result.stdout
        assert not (tmp_path / "MyApp_1.2_macOS.zip").exists()

    def test_zip_missing_app(self, tmp_path):
        result = run_cli("zip", str(tmp_path / "Missing.app"), cwd=tmp_path)
        assert result.returncode == 1
        assert "error zipping" in result.stderr


class TestCLINotarize:
    """Tests for the 'notarize' subcommand."""

    def test_notarize_requires_artifact(self):
        result = run_cli("notarize")
        assert result.returncode == 2

    def test_notarize_help(self):
        result = run_cli("notarize", "--help")
        assert result.returncode == 0
        assert "--ticket" in result.stdout
        assert "--poll-interval" in result.stdout
        assert "--timeout" in result.stdout

    def test_unsupported_format(self, tmp_path):
        dmg = tmp_path / "MyApp.dmg"
        dmg.write_bytes(b"dmg")
        result = run_cli(
            "notarize", str(dmg), "-u", "me", "-p", "pw", cwd=tmp_path
        )
        assert result.returncode == 1
        assert "error notarizing" in result.stderr
        assert ".dmg format" in result.stderr

    def test_notarize_dry_run(self, sample_app, tmp_path):
        result = run_cli(
            "notarize",
            str(sample_app),
            "-u",
            "me@example.com",
            "-p",
            "hunter2",
            "--dry-run",
            cwd=tmp_path,
        )
        assert result.returncode == 0, result.stderr
        assert "@ditto -c -k" in result.stdout
        assert "@xcrun altool --notarize-app" in result.stdout
        assert "@xcrun altool --notarization-info" in result.stdout
        assert "@xcrun stapler staple" in result.stdout
        assert "hunter2" not in result.stdout
        assert "hunter2" not in result.stderr
        assert not sample_app.with_suffix(".zip").exists()


class TestCLIHandlersUnit:
    """Unit tests for CLI handler functions using mocks."""

    def notarize_args(self, artifact: Path, **overrides) -> argparse.Namespace:
        values = {
            "artifact": str(artifact),
            "username": "me",
            "password": "pw",
            "ticket": None,
            "poll_interval": None,
            "timeout": None,
            "dry_run": False,
            "verbose": False,
            "no_color": True,
            "config": None,
        }
        values.update(overrides)
        return argparse.Namespace(**values)

    def test_cmd_notarize_calls_notarizer(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        args = self.notarize_args(tmp_path / "MyApp.app", ticket="abc")
        with patch("macapptool.Notarizer") as MockNotarizer:
            mock_instance = MagicMock()
            mock_instance.notarize_file.return_value = tmp_path / "MyApp.zip"
            MockNotarizer.return_value = mock_instance

            _cmd_notarize(args)

        MockNotarizer.assert_called_once_with(
            dry_run=False, verbose=False, interval=10.0, timeout=None
        )
        (request,) = mock_instance.notarize_file.call_args.args
        assert request.username == "me"
        assert request.password == "pw"
        assert request.ticket == "abc"

    def test_cmd_notarize_uses_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("APPLE_ID", raising=False)
        monkeypatch.delenv("APP_PASSWORD", raising=False)
        (tmp_path / ".macapptool.toml").write_text(
            '[notarize]\nusername = "cfg@example.com"\n'
            'password = "cfg-pw"\npoll_interval = 30\ntimeout = "600"\n'
        )
        args = self.notarize_args(
            tmp_path / "MyApp.app", username=None, password=None
        )
        with patch("macapptool.Notarizer") as MockNotarizer:
            _cmd_notarize(args)

        assert MockNotarizer.call_args.kwargs["interval"] == 30.0
        assert MockNotarizer.call_args.kwargs["timeout"] == 600.0
        (request,) = MockNotarizer.return_value.notarize_file.call_args.args
        assert request.username == "cfg@example.com"
        assert request.password == "cfg-pw"

    def test_cmd_notarize_env_over_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("APPLE_ID", "env@example.com")
        (tmp_path / ".macapptool.toml").write_text(
            '[notarize]\nusername = "cfg@example.com"\n'
        )
        args = self.notarize_args(tmp_path / "MyApp.app", username=None)
        with patch("macapptool.Notarizer") as MockNotarizer:
            _cmd_notarize(args)
        (request,) = MockNotarizer.return_value.notarize_file.call_args.args
        assert request.username == "env@example.com"

    def test_cmd_notarize_error_exits(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        args = self.notarize_args(tmp_path / "Missing.app")
        with pytest.raises(SystemExit) as excinfo:
            _cmd_notarize(args)
        assert excinfo.value.code == 1

    def test_cmd_sign_calls_codesigner(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("DEV_ID", raising=False)
        (tmp_path / ".macapptool.toml").write_text(
            '[sign]\nidentity = "Config ID"\n'
        )
        args = argparse.Namespace(
            bundles=["A.app", "B.app"],
            identity=None,
            entitlements=None,
            dry_run=True,
            verbose=False,
            no_color=True,
            config=None,
        )
        with patch("macapptool.Codesigner") as MockCodesigner:
            _cmd_sign(args)

        assert MockCodesigner.call_count == 2
        assert MockCodesigner.call_args.kwargs["identity"] == "Config ID"
        assert MockCodesigner.return_value.process.call_count == 2


class TestConfigFile:
    """Tests for configuration file support."""

    def test_load_config_no_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert load_config() == {}

    def test_load_config_from_dotfile(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".macapptool.toml").write_text(
            '[sign]\nidentity = "Test Developer"\n\n'
            '[notarize]\nusername = "me@example.com"\n'
        )
        config = load_config()
        assert config["sign"]["identity"] == "Test Developer"
        assert config["notarize"]["username"] == "me@example.com"

    def test_dotfile_preferred(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".macapptool.toml").write_text('[zip]\noutput = "a.zip"\n')
        (tmp_path / "macapptool.toml").write_text('[zip]\noutput = "b.zip"\n')
        assert load_config()["zip"]["output"] == "a.zip"

    def test_pyproject_not_searched(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "pyproject.toml").write_text(
            '[tool.macapptool.notarize]\npassword = "x"\n'
        )
        assert load_config() == {}

    def test_load_config_explicit_path(self, tmp_path):
        config_path = tmp_path / "custom.toml"
        config_path.write_text('[notarize]\nusername = "custom"\n')
        config = load_config(config_path)
        assert config["notarize"]["username"] == "custom"

    def test_invalid_toml(self, tmp_path):
        config_path = tmp_path / "broken.toml"
        config_path.write_text("[notarize\nusername = ")
        with pytest.raises(ConfigurationError, match="Invalid config file"):
            load_config(config_path)

    def test_get_config_value(self):
        config = {
            "sign": {"identity": "John Doe", "count": 3},
            "zip": "not-a-table",
        }
        assert get_config_value(config, "sign", "identity") == "John Doe"
        assert get_config_value(config, "sign", "missing") is None
        assert (
            get_config_value(config, "sign", "missing", "default") == "default"
        )
        assert get_config_value(config, "sign", "count") is None
        assert get_config_value(config, "zip", "output") is None
        assert get_config_value(config, "nonexistent", "key") is None

    def test_get_config_seconds(self):
        config = {
            "notarize": {"poll_interval": 30, "timeout": "90.5", "bad": "x"}
        }
        assert get_config_seconds(config, "notarize", "poll_interval") == 30.0
        assert get_config_seconds(config, "notarize", "timeout") == 90.5
        assert get_config_seconds(config, "notarize", "missing", 10.0) == 10.0
        with pytest.raises(ConfigurationError, match="number of seconds"):
            get_config_seconds(config, "notarize", "bad")
