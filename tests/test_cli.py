"""
Tests for the click CLI (CliRunner, null backend injected).
"""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from pkgbridge.backends.null import NullBackend
from pkgbridge.core.errors import BackendReportedError, PackageNotFound
from pkgbridge.core.models.package import PackageSpec
from pkgbridge.main import cli


class StubBackend(NullBackend):
    def install(self, app, args):
        super().install(app, args)
        if "broken" in args:
            raise BackendReportedError(
                "Failed to install the packages!",
                output="full transcript\nE: broken package",
                error_lines=["E: broken package"],
            )
        return [PackageSpec(name=a) for a in args]

    def purge(self, app, is_update=False):
        super().purge(app, is_update)
        return ["curl"]

    def package_installed(self, name):
        return name == "curl"

    def package_installed_version(self, name):
        if name != "curl":
            raise PackageNotFound(f"Package {name} is not installed")
        return "8.5.0"

    def add_external_repo(self, name, uris, **kwargs):
        super().add_external_repo(name, uris, **kwargs)
        return True

    def has_external_repo(self, name):
        return name in ("tool", "busy")

    def repo_in_use(self, name):
        return name == "busy"

    def drop_external_repo(self, name):
        super().drop_external_repo(name)
        return True


@pytest.fixture
def backend(settings):
    return StubBackend(settings)


def _invoke(backend, *args):
    return CliRunner().invoke(cli, list(args), obj={"backend": backend})


class TestCommands:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("install", "purge", "update", "backend", "refresh-status", "query"):
            assert command in result.output

    def test_install(self, backend):
        result = _invoke(backend, "install", "myapp", "curl", "jq")
        assert result.exit_code == 0, result.output
        assert backend.call_log[0] == ("install", ("myapp", "curl", "jq"))

    def test_install_release_pin_reaches_backend(self, backend):
        result = _invoke(backend, "install", "myapp", "-t", "bookworm-backports", "foo")
        assert result.exit_code == 0, result.output
        assert backend.call_log[0] == ("install", ("myapp", "-t", "bookworm-backports", "foo"))

    def test_install_requires_packages(self, backend):
        result = _invoke(backend, "install", "myapp")
        assert result.exit_code == 2

    def test_install_failure_report(self, backend):
        result = _invoke(backend, "install", "myapp", "broken")
        assert result.exit_code == 1
        assert "Failed to install the packages!" in result.output
        assert "E: broken package" in result.output
        assert "full transcript" in result.output

    def test_purge_update_flag(self, backend):
        result = _invoke(backend, "purge", "myapp", "--update")
        assert result.exit_code == 0
        assert backend.call_log == [("purge", ("myapp", True))]

    def test_update(self, backend):
        assert _invoke(backend, "update").exit_code == 0
        assert backend.call_log == [("update_indices", ())]

    def test_backend_json(self, backend):
        with patch("shutil.which", return_value=None):
            result = _invoke(backend, "backend", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["name"] == "null"
        assert list(data["registered"]) == ["dpkg", "apk", "pacman", "null"]
        assert data["registered"]["dpkg"]["available"] is False
        assert data["registered"]["null"]["available"] is True

    def test_refresh_status(self, backend, tmp_path):
        apps = tmp_path / "apps"
        (apps / "Fetcher").mkdir(parents=True)
        (apps / "Fetcher" / "packages").write_text("curl\n")
        result = _invoke(backend, "refresh-status", str(apps), str(tmp_path / "status"), "--json")
        assert result.exit_code == 0
        assert json.loads(result.output) == {"Fetcher": "installed"}

    def test_refresh_status_uses_configured_dirs(self, settings, tmp_path):
        apps = tmp_path / "apps"
        (apps / "Fetcher").mkdir(parents=True)
        (apps / "Fetcher" / "packages").write_text("curl\n")
        backend = StubBackend(settings.model_copy(update={"apps_dir": apps}))
        result = _invoke(backend, "refresh-status", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"Fetcher": "installed"}
        assert settings.status_dir.is_dir()

    def test_refresh_status_needs_apps_dir(self, backend):
        result = _invoke(backend, "refresh-status")
        assert result.exit_code == 2
        assert "APPS_DIR is required" in result.output


class TestQuery:
    def test_installed_exit_codes(self, backend):
        assert _invoke(backend, "query", "installed", "curl").exit_code == 0
        assert _invoke(backend, "query", "installed", "jq").exit_code == 1

    def test_version(self, backend):
        result = _invoke(backend, "query", "version", "curl")
        assert result.exit_code == 0
        assert result.output.strip() == "8.5.0"

    def test_version_not_found(self, backend):
        result = _invoke(backend, "query", "version", "jq")
        assert result.exit_code == 1
        assert "jq is not installed" in result.output


class TestConfigOption:
    def test_invalid_config_file(self, tmp_path):
        bad = tmp_path / "config.yml"
        bad.write_text("- not a mapping\n")
        result = CliRunner().invoke(cli, ["--config", str(bad), "backend"])
        assert result.exit_code == 1
        assert "mapping" in result.output


class TestRepoCommands:
    def test_add(self, backend):
        result = _invoke(
            backend, "repo", "add", "tool", "https://repo.example.com/debian",
            "--key-url", "https://repo.example.com/key.asc", "--suites", "bookworm",
            "--option", "Architectures: amd64",
        )
        assert result.exit_code == 0, result.output
        assert "Added the tool repository" in result.output
        assert backend.call_log == [("add_external_repo", ("tool", "https://repo.example.com/debian"))]

    def test_remove_keeps_repo_in_use(self, backend):
        result = _invoke(backend, "repo", "remove", "busy")
        assert result.exit_code == 0
        assert "Removed" not in result.output
        assert backend.call_log == []

    def test_force_remove(self, backend):
        result = _invoke(backend, "repo", "remove", "busy", "--force")
        assert result.exit_code == 0
        assert "Removed the busy repository" in result.output
        assert backend.call_log == [("drop_external_repo", ("busy",))]

    def test_remove_invalid_name(self, backend):
        result = _invoke(backend, "repo", "remove", "my tool")
        assert result.exit_code == 1
        assert "whitespace" in result.output

    def test_prune_exit_codes(self, backend):
        assert _invoke(backend, "repo", "prune", "busy").exit_code == 1
        assert _invoke(backend, "repo", "prune", "tool", "--dry-run").exit_code == 0
        assert backend.call_log == []
        assert _invoke(backend, "repo", "prune", "tool").exit_code == 0
        assert backend.call_log == [("drop_external_repo", ("tool",))]

    def test_in_use_exit_codes(self, backend):
        assert _invoke(backend, "repo", "in-use", "busy").exit_code == 0
        assert _invoke(backend, "repo", "in-use", "tool").exit_code == 1
