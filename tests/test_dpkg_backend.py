"""
Tests for the dpkg-family backend (scripted apt/dpkg commands).
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from pkgbridge.backends.dpkg import DpkgBackend
from pkgbridge.backends.placeholder import PlaceholderPackage, placeholder_name
from pkgbridge.core.errors import (
    BackendReportedError,
    ExitCodeOnly,
    InvalidPackageSpec,
    PackageNotFound,
    RepositoryError,
    TransientStagingRace,
)
from pkgbridge.core.models.package import PackageSpec

DEB_INFO = {
    "a.deb": ("a", "va", "amd64"),
    "b.deb": ("b", "vb", "all"),
    "c.deb": ("c", "1.0", "armhf"),
}


def _deb_info(cmd, cwd):
    name, version, arch = DEB_INFO[Path(cmd[2]).name]
    return 0, (
        f" new Debian package, version 2.0.\n"
        f" Package: {name}\n Version: {version}\n Architecture: {arch}\n"
    )


@pytest.fixture
def backend(settings, runner, fake_lock, no_sleep):
    runner.on("dpkg", "--print-architecture", output="amd64\n")
    runner.on("dpkg-deb", "-I", effect=_deb_info)
    runner.on("apt-ftparchive", output="Package: a\nFilename: ./a.deb\n")
    return DpkgBackend(settings, runner, lock=fake_lock, sleep=no_sleep)


@pytest.fixture
def built(runner):
    """Capture the control file of every placeholder dpkg-deb builds."""
    controls: list[str] = []

    def _build(cmd, cwd):
        pkg_dir = Path(cmd[2])
        controls.append((pkg_dir / "DEBIAN" / "control").read_text())
        pkg_dir.with_name(pkg_dir.name + ".deb").write_bytes(b"deb")
        return 0, ""

    runner.on("dpkg-deb", "--build", effect=_build)
    return controls


def _debs(tmp_path: Path, *names: str) -> list[str]:
    paths = []
    for name in names:
        path = tmp_path / "incoming" / name
        path.parent.mkdir(exist_ok=True)
        path.write_bytes(b"!<arch>")
        paths.append(str(path))
    return paths


def _installs(runner):
    return [c for c in runner.commands("apt-get") if "install" in c and "--dry-run" not in c]


class TestLocalInstall:
    def test_two_local_debs(self, backend, runner, built, tmp_path, settings):
        debs = _debs(tmp_path, "a.deb", "b.deb")
        specs = backend.install("myapp", debs)

        assert not any(Path(d).exists() for d in debs)

        assert [s.render() for s in specs] == ["a (>= va)", "b (>= vb)"]
        assert len(built) == 1
        assert "Depends: a (>= va), b (>= vb)\n" in built[0]
        assert f"Package: {placeholder_name('myapp')}\n" in built[0]

        (install,) = _installs(runner)
        assert f"Dir::Etc::SourceList={backend.sources_file}" in install
        assert install[-1].endswith(f"{placeholder_name('myapp')}.deb")

        update = [c for c in runner.commands("apt-get") if "update" in c]
        assert update and f"Dir::Etc::SourceList={backend.sources_file}" in update[0]
        assert not settings.staging_root.exists()

    def test_index_and_sources_written(self, backend, runner, built, tmp_path, settings):
        seen = {}

        def _update(cmd, cwd):
            seen["packages"] = (backend.repo.directory / "Packages").read_text()
            seen["sources"] = backend.sources_file.read_text()
            return 0, ""

        settings.apt_sources_list.write_text("deb http://deb.debian.org/debian bookworm main\n")
        runner.on("apt-get", "update", effect=_update)
        backend.install("myapp", _debs(tmp_path, "a.deb"))

        assert "Filename: a.deb" in seen["packages"]
        assert seen["sources"].splitlines() == [
            f"deb [trusted=yes] file:{backend.repo.directory}/ ./",
            "deb http://deb.debian.org/debian bookworm main",
        ]

    def test_foreign_architecture_is_qualified(self, backend, tmp_path, built):
        specs = backend.install("myapp", _debs(tmp_path, "c.deb"))
        assert [s.render() for s in specs] == ["c:armhf (>= 1.0)"]

    def test_missing_file(self, backend):
        with pytest.raises(Exception, match="does not exist"):
            backend.install("myapp", ["/nonexistent/x.deb"])


class TestPlaceholderReuse:
    def _installed_placeholder(self, runner, depends: str):
        placeholder = PlaceholderPackage(
            app="myapp", depends=[PackageSpec.parse(d) for d in depends.split(", ")],
        )
        status = placeholder.control_text() + "Status: install ok installed\n"
        runner.on("dpkg", "-s", placeholder.package, output=status)

    def test_same_set_is_skipped(self, backend, runner, built):
        self._installed_placeholder(runner, "curl, wget")
        backend.install("myapp", ["wget"])
        assert built == []
        assert _installs(runner) == []

    def test_new_packages_are_merged(self, backend, runner, built):
        self._installed_placeholder(runner, "curl, wget")
        backend.install("myapp", ["jq"])
        assert "Depends: curl, jq, wget\n" in built[0]

    def test_bare_name_keeps_declared_constraint(self, backend, runner, built):
        self._installed_placeholder(runner, "a (>= 2.0), curl")
        backend.install("myapp", ["a", "curl"])
        assert built == []
        assert _installs(runner) == []

    def test_bare_name_with_new_package_keeps_constraint(self, backend, runner, built):
        self._installed_placeholder(runner, "a (>= 2.0), curl")
        backend.install("myapp", ["a", "jq"])
        assert "Depends: a (>= 2.0), curl, jq\n" in built[0]

    def test_local_file_replaces_declared_constraint(self, backend, runner, tmp_path, built):
        self._installed_placeholder(runner, "a (>= 1.0), curl")
        backend.install("myapp", _debs(tmp_path, "a.deb"))
        assert "Depends: a (>= va), curl\n" in built[0]


class TestStagingRace:
    def _lists_file_managed_by_update(self, backend, runner):
        def _update(cmd, cwd):
            backend.lists_file.parent.mkdir(parents=True, exist_ok=True)
            backend.lists_file.write_text("Package: a\n")
            return 0, ""

        runner.on("apt-get", "update", effect=_update)

    def test_retries_when_index_vanishes(self, backend, runner, built, tmp_path):
        self._lists_file_managed_by_update(backend, runner)
        attempts = []

        def _install(cmd, cwd):
            if "install" not in cmd:
                return None
            attempts.append(cmd)
            if len(attempts) == 1:
                backend.lists_file.unlink()
                return 100, "E: Unable to locate package a"
            return 0, ""

        runner.on("apt-get", "-o", effect=_install)
        backend.install("myapp", _debs(tmp_path, "a.deb"))
        assert len(attempts) == 2

    def test_gives_up_after_policy(self, backend, runner, built, tmp_path):
        self._lists_file_managed_by_update(backend, runner)

        def _install(cmd, cwd):
            if "install" not in cmd or "canary" in cmd:
                return None
            backend.lists_file.unlink()
            return 100, "E: Unable to locate package a"

        runner.on("apt-get", "-o", effect=_install)
        with pytest.raises(TransientStagingRace):
            backend.install("myapp", _debs(tmp_path, "a.deb"))
        assert len(_installs(runner)) == 3


class TestInstallFailures:
    def test_reported_errors_with_diagnostics(self, backend, runner, built, tmp_path):
        backend.settings.apt_lists_dir.mkdir(parents=True)
        backend.lists_file.write_text("")
        runner.on(
            "apt-get", "-o",
            rc=100,
            output=(
                " pkgbridge-x : Depends: a (>= va) but it is not installable\n"
                "E: Unable to correct problems, you have held broken packages.\n"
            ),
        )
        runner.on("apt-cache", "policy", output="a:\n  Installed: (none)\n  Candidate: (none)\n")
        with pytest.raises(BackendReportedError) as exc:
            backend.install("myapp", _debs(tmp_path, "a.deb"))
        assert exc.value.error_lines == [
            "E: Unable to correct problems, you have held broken packages.",
        ]
        assert "apt-cache policy output:" in exc.value.output
        assert ["apt-cache", "policy", "a"] in runner.calls

    def test_exit_code_without_error_lines(self, backend, runner, built):
        runner.on("apt-get", "-o", rc=1, output="Something odd happened\n")
        with pytest.raises(ExitCodeOnly) as exc:
            backend.install("myapp", ["curl"])
        assert exc.value.returncode == 1
        assert "damaged package system" in str(exc.value)

    def test_error_line_with_exit_zero_fails(self, backend, runner, built):
        runner.on("apt-get", "update", output="E: The repository is not signed.\n")
        with pytest.raises(BackendReportedError):
            backend.install("myapp", ["curl"])

    def test_staging_cleaned_after_failure(self, backend, runner, built, tmp_path, settings):
        runner.on("apt-get", "-o", rc=100, output="E: broken\n")
        with pytest.raises(BackendReportedError):
            backend.install("myapp", _debs(tmp_path, "a.deb"))
        assert not settings.staging_root.exists()


class TestArguments:
    def test_release_pin(self, backend, runner):
        runner.on(
            "apt-cache", "policy", "-t", "bookworm-backports",
            output="curl:\n  Installed: (none)\n  Candidate: 8.5.0-2+bpo12+1\n",
        )
        specs, local = backend.resolve(["-t", "bookworm-backports", "curl"])
        assert local == []
        assert specs == [PackageSpec(name="curl", min_version="8.5.0-2", repo="bookworm-backports")]

    def test_release_flag_needs_value(self, backend):
        with pytest.raises(InvalidPackageSpec):
            backend.resolve(["curl", "-t"])

    def test_wildcard(self, backend, runner):
        runner.on("apt-cache", "search", output="libfoo1 - Foo library\nlibfoo-dev - Foo headers\nbar - libfoo bindings\n")
        specs, _ = backend.resolve(["libfoo*"])
        assert [s.name for s in specs] == ["libfoo-dev", "libfoo1"]

    def test_wildcard_without_match(self, backend, runner):
        with pytest.raises(InvalidPackageSpec):
            backend.resolve(["nothing*"])

    def test_no_arguments(self, backend):
        with pytest.raises(InvalidPackageSpec):
            backend.install("myapp", [])


class TestPurge:
    def test_purges_placeholder(self, backend, runner):
        pkg = placeholder_name("myapp")
        runner.on(
            "dpkg", "-s", pkg,
            output=f"Package: {pkg}\nStatus: install ok installed\nDepends: curl, wget\n",
        )
        assert backend.purge("myapp") == [pkg]
        assert runner.commands("apt-get") == [["apt-get", "purge", "-y", pkg, "--autoremove"]]

    def test_update_keeps_dependencies(self, backend, runner):
        pkg = placeholder_name("myapp")
        runner.on("dpkg", "-s", pkg, output="Status: install ok installed\nDepends: curl\n")
        backend.purge("myapp", is_update=True)
        assert runner.commands("apt-get") == [["apt-get", "purge", "-y", pkg]]

    def test_legacy_tracking_file(self, backend, runner):
        backend.tracking.write("myapp", ["curl", "gone"])
        runner.on("dpkg", "-s", "curl", output="Status: install ok installed\n")
        runner.on("dpkg", "-s", "gone", rc=1, output="dpkg-query: package 'gone' is not installed")
        assert backend.purge("myapp") == ["curl"]
        assert runner.commands("apt-get") == [["apt-get", "purge", "-y", "curl", "--autoremove"]]
        assert not backend.tracking.exists("myapp")

    def test_nothing_recorded(self, backend, runner):
        assert backend.purge("myapp") == []
        assert runner.commands("apt-get") == []


class TestQueries:
    def test_installed(self, backend, runner):
        runner.on("dpkg", "-s", "curl", output="Package: curl\nStatus: install ok installed\n")
        runner.on("dpkg", "-s", "half", output="Package: half\nStatus: deinstall ok config-files\n")
        assert backend.package_installed("curl")
        assert not backend.package_installed("half")

    def test_available_uses_native_arch(self, backend, runner):
        runner.on("apt-cache", "policy", "curl:amd64", output="curl:\n  Candidate: 7.88\n")
        runner.on("apt-cache", "policy", "curl:i386", output="curl:\n  Candidate: (none)\n")
        assert backend.package_available("curl")
        assert not backend.package_available("curl", "i386")

    def test_dependencies(self, backend, runner):
        runner.on("dpkg", "-s", "curl", output="Package: curl\nDepends: libc6 (>= 2.34), libcurl4 (= 7.88)\n")
        assert backend.package_dependencies("curl") == ["libc6 (>= 2.34)", "libcurl4 (= 7.88)"]

    def test_installed_version(self, backend, runner):
        runner.on("dpkg-query", output="7.88.1-10")
        assert backend.package_installed_version("curl") == "7.88.1-10"

    def test_latest_version_not_found(self, backend, runner):
        runner.on("apt-cache", "policy", output="N: Unable to locate package nosuch\n")
        with pytest.raises(PackageNotFound):
            backend.package_latest_version("nosuch")

    def test_info_rejects_whitespace(self, backend):
        with pytest.raises(InvalidPackageSpec):
            backend.package_info("two words")

    def test_info_not_found(self, backend, runner):
        runner.on(
            "dpkg", "-s", "nosuch", rc=1,
            output="dpkg-query: package 'nosuch' is not installed and no information is available\n",
        )
        with pytest.raises(PackageNotFound):
            backend.package_info("nosuch")


ARMORED_KEY = b"-----BEGIN PGP PUBLIC KEY BLOCK-----\n\nmQINBF\n-----END PGP PUBLIC KEY BLOCK-----\n"

REPO_POLICY = """\
tool:
  Installed: 2.0-1
  Candidate: 2.0-1
  Version table:
 *** 2.0-1 500
        500 https://repo.example.com/debian bookworm/main amd64 Packages
        100 /var/lib/dpkg/status
"""


def _really_remove(cmd, cwd):
    for path in cmd[2:]:
        Path(path).unlink(missing_ok=True)
    return 0, ""


def _dearmor(cmd, cwd):
    Path(cmd[cmd.index("--output") + 1]).write_bytes(b"binary-key")
    return 0, ""


class TestExternalRepos:
    @pytest.fixture(autouse=True)
    def _commands(self, runner):
        runner.on("rm", "-f", effect=_really_remove)
        runner.on("gpg", "--dearmor", effect=_dearmor)
        with patch("pkgbridge.backends.base.fetch_bytes", return_value=ARMORED_KEY) as fetch:
            self.fetch = fetch
            yield

    def _add(self, backend):
        return backend.add_external_repo(
            "tool", "https://repo.example.com/debian",
            key_url="https://repo.example.com/key.asc", suites="bookworm", components="main",
        )

    def _mark_installed(self, backend, settings):
        settings.apt_lists_dir.mkdir(parents=True, exist_ok=True)
        index = "repo.example.com_debian_dists_bookworm_main_binary-amd64_Packages"
        (settings.apt_lists_dir / index).write_text("Package: tool\nVersion: 2.0-1\n")
        settings.dpkg_status_file.write_text("Package: tool\nStatus: install ok installed\n")

    def test_add_writes_sources_and_keyring(self, backend, runner, settings):
        assert self._add(backend)
        keyring = backend.external_keyring("tool")
        assert keyring.read_bytes() == b"binary-key"
        assert backend.external_sources_file("tool").read_text() == (
            "Types: deb\n"
            "URIs: https://repo.example.com/debian\n"
            "Suites: bookworm\n"
            "Components: main\n"
            f"Signed-By: {keyring}\n"
        )
        assert self.fetch.call_args[0][0] == "https://repo.example.com/key.asc"
        assert backend.has_external_repo("tool")

    def test_add_replaces_legacy_list_file(self, backend, settings):
        settings.apt_sources_dir.mkdir(parents=True)
        backend.external_list_file("tool").write_text("deb https://old.example.com stable main\n")
        self._add(backend)
        assert not backend.external_list_file("tool").exists()

    def test_add_requires_suite(self, backend):
        with pytest.raises(RepositoryError):
            backend.add_external_repo(
                "tool", "https://repo.example.com/debian", key_url="https://repo.example.com/key.asc",
            )
        self.fetch.assert_not_called()

    def test_add_rejects_whitespace_in_name(self, backend):
        with pytest.raises(RepositoryError):
            backend.add_external_repo(
                "my tool", "https://repo.example.com/debian",
                key_url="https://repo.example.com/key.asc", suites="bookworm",
            )

    def test_dearmor_failure(self, backend, runner):
        runner.on("gpg", "--dearmor", rc=2, output="gpg: no valid OpenPGP data found.")
        with pytest.raises(RepositoryError):
            self._add(backend)
        assert not backend.has_external_repo("tool")

    def test_in_use(self, backend, runner, settings):
        self._add(backend)
        assert not backend.repo_in_use("tool")
        self._mark_installed(backend, settings)
        runner.on("apt-cache", "policy", output=REPO_POLICY)
        assert backend.repo_in_use("tool")
        assert ["apt-cache", "policy", "tool"] in runner.calls

    def test_prune_keeps_repo_in_use(self, backend, runner, settings):
        self._add(backend)
        self._mark_installed(backend, settings)
        runner.on("apt-cache", "policy", output=REPO_POLICY)
        assert not backend.remove_repo_if_unused("tool")
        assert backend.has_external_repo("tool")

    def test_prune_dry_run(self, backend):
        self._add(backend)
        assert backend.remove_repo_if_unused("tool", dry_run=True)
        assert backend.has_external_repo("tool")

    def test_remove_unused(self, backend):
        self._add(backend)
        assert backend.remove_external_repo("tool")
        assert not backend.has_external_repo("tool")
        assert not backend.external_keyring("tool").exists()

    def test_force_remove_in_use(self, backend, runner, settings):
        self._add(backend)
        self._mark_installed(backend, settings)
        runner.on("apt-cache", "policy", output=REPO_POLICY)
        assert backend.remove_external_repo("tool", force=True)
        assert not backend.has_external_repo("tool")

    def test_remove_unknown(self, backend):
        assert not backend.remove_external_repo("tool")
        assert not backend.remove_external_repo("tool", force=True)
