"""
Alpine-family backend (apk).

Local ``.apk`` files are indexed with ``apk index`` into a signed
APKINDEX.tar.gz.  The signing keypair is generated with ``cryptography``
the first time a repository is indexed and reused while it exists.  The
staging root is prepended to /etc/apk/repositories for the duration of
the install (apk appends the architecture itself).

apk has been seen to exit 0 after printing ERROR lines, so success is
decided by the output patterns as much as by the exit status.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
from collections.abc import Sequence
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from pkgbridge.backends import repo_files
from pkgbridge.backends.base import PackageBackend, check_repo_fields
from pkgbridge.core.errors import (
    InvalidPackageSpec,
    PackageNotFound,
    QueryFailed,
    RepositoryError,
    StagingFailure,
)
from pkgbridge.core.execution.lock_wait import LockProfile
from pkgbridge.core.execution.output_filter import PatternTable
from pkgbridge.core.models.package import PackageSpec
from pkgbridge.core.observability import console

logger = logging.getLogger(__name__)

APK_PATTERNS = PatternTable(
    backend="apk",
    revision="apk-tools-2",
    noise=(
        r"^fetch ",
        r"^OK: ",
        r"^WARNING: ",
        r"^Executing ",
        r"^Purging .*\(",
        r"Need to download",
        r"After this operation",
        r"Do you want to continue",
        r"Installing .*\(.*\)",
        r"\.trigger: Executing",
        r"\.trigger: Regenerating",
    ),
    errors=(
        r"^\s*ERROR:",
        r"fetch.*error",
        r"unable to select packages",
        r"World entry .* not found",
    ),
)

APK_LOCK_FILES = ("/lib/apk/db/lock",)

# init systems that satisfy the pseudo-package "init"
INIT_SYSTEMS = ("openrc", "dinit", "s6", "busybox", "runit")

_VERSION_START_RE = re.compile(r"-\d")


def name_from_filename(path: Path) -> str:
    """``foo-bar-1.2-r0.apk`` -> ``foo-bar``."""
    base = path.name.removesuffix(".apk")
    m = _VERSION_START_RE.search(base)
    return base[: m.start()] if m else base


class ApkBackend(PackageBackend):
    """Alpine Linux, postmarketOS, Chimera and other apk systems."""

    package_suffix = ".apk"
    package_globs = ("*.apk",)

    @property
    def name(self) -> str:
        return "apk"

    def is_available(self) -> bool:
        return shutil.which("apk") is not None

    def default_patterns(self) -> PatternTable:
        return APK_PATTERNS

    def lock_profile(self) -> LockProfile:
        return LockProfile(label="APK", lock_files=APK_LOCK_FILES)

    def detect_architecture(self) -> str:
        result = self.runner.capture(["apk", "--print-arch"])
        arch = result.output.strip()
        if not result.exit_ok or not arch:
            raise QueryFailed("Could not determine the apk architecture", output=result.output)
        return arch

    # ── Local repository ────────────────────────────────────────

    @property
    def key_path(self) -> Path:
        return self.repo.directory / f"{self.settings.repo_name}.rsa"

    @property
    def repository_line(self) -> str:
        return f"file://{self.settings.staging_root}"

    def index_globs(self) -> tuple[str, ...]:
        return ("APKINDEX.tar.gz",)

    def ensure_signing_key(self) -> Path:
        """Create the RSA keypair next to the index unless it exists."""
        key = self.key_path
        pub = key.with_name(key.name + ".pub")
        if not key.is_file():
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            key.write_bytes(private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            ))
            key.chmod(0o600)
            logger.debug("Generated signing key %s", key)
        if not pub.is_file():
            private_key = serialization.load_pem_private_key(key.read_bytes(), password=None)
            pub.write_bytes(private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            ))
        return key

    def refresh_local_index(self) -> None:
        directory = self.repo.directory
        if not directory.is_dir():
            raise StagingFailure(f"Cannot index the local repository: {directory} is missing")
        packages = self.repo.files(*self.package_globs)
        if not packages:
            return

        key = self.ensure_signing_key()
        index = directory / "APKINDEX.tar.gz"
        index.unlink(missing_ok=True)

        result = self.runner.capture(
            ["apk", "index", "-o", index.name, *(p.name for p in packages)], cwd=directory,
        )
        if not result.exit_ok or not index.is_file():
            raise StagingFailure(
                f"apk index failed to index the local repository {directory}",
                output=result.output,
            )

        signed = self.runner.capture(["abuild-sign", "-k", str(key), str(index)], cwd=directory)
        if not signed.exit_ok:
            console.warning(
                "Failed to sign the local APK index (is abuild installed?). "
                "Installing with --allow-untrusted."
            )

        self._register_repository()

    def _register_repository(self) -> None:
        path = self.settings.apk_repositories
        current = path.read_text() if path.is_file() else ""
        if self.repository_line in current.splitlines():
            return
        if not self.write_system_file(path, f"{self.repository_line}\n{current}"):
            raise StagingFailure(f"Failed to add the local repository to {path}")

    def forget_local_source(self) -> None:
        path = self.settings.apk_repositories
        if not path.is_file():
            return
        lines = path.read_text().splitlines(keepends=True)
        kept = [line for line in lines if str(self.settings.staging_root) not in line]
        if len(kept) != len(lines):
            self.write_system_file(path, "".join(kept))

    # ── Indices ─────────────────────────────────────────────────

    def update_indices(self, *, staged: bool = False) -> None:
        self.wait_for_lock()
        console.status("Running apk update...")
        cmd = ["apk", "update"]
        if staged:
            cmd.append("--allow-untrusted")
        result = self.runner.run(cmd, sudo=True, patterns=self.patterns)
        self.check(result, "Failed to run apk update")
        console.status("apk update complete.")

    # ── Argument resolution ─────────────────────────────────────

    def inspect_local_file(self, path: Path) -> PackageSpec:
        if not path.is_file():
            raise StagingFailure(f"Local package does not exist: {path}")
        return PackageSpec(name=name_from_filename(path))

    def expand_wildcard(self, pattern: str) -> list[PackageSpec]:
        needle = pattern.replace("*", "")
        console.status(f"Expanding wildcard in '{pattern}'...")
        result = self.runner.capture(["apk", "search", needle])
        if not result.exit_ok:
            raise QueryFailed(f"apk search failed for {pattern}", output=result.output)
        names = sorted({
            name_from_filename(Path(line.split()[0] + ".apk"))
            for line in result.lines if line.strip()
        })
        names = [n for n in names if needle in n]
        if not names:
            raise InvalidPackageSpec(f"No packages match {pattern!r}")
        return [PackageSpec(name=n) for n in names]

    # ── Install / purge ─────────────────────────────────────────

    def install_command(self, specs: list[PackageSpec], staged: bool) -> list[str]:
        cmd = ["apk", "add", "--no-cache"]
        if staged:
            cmd.append("--allow-untrusted")
        return [*cmd, *(s.name for s in specs)]

    def purge_command(self, names: list[str], is_update: bool) -> list[str]:
        # apk drops orphaned dependencies on its own; nothing to skip on update
        return ["apk", "del", *names]

    # ── External repositories ───────────────────────────────────

    def add_external_repo(
        self,
        name: str,
        uris: str,
        *,
        key_url: str | None = None,
        suites: str = "",
        components: str = "",
        options: Sequence[str] = (),
    ) -> bool:
        check_repo_fields(name=name, uris=uris)
        if key_url:
            key = self.fetch_repo_key(key_url)
            try:
                serialization.load_pem_public_key(key)
            except ValueError as e:
                raise RepositoryError(f"{key_url} is not a PEM public key: {e}") from e
            digest = hashlib.sha1(key).hexdigest()[:16]
            key_file = self.settings.apk_keys_dir / f"{name}-{digest}.rsa.pub"
            self.ensure_system_dir(self.settings.apk_keys_dir)
            if not self.write_system_file(key_file, key):
                raise RepositoryError(f"Failed to install the key {key_file}")

        path = self.settings.apk_repositories
        current = path.read_text() if path.is_file() else ""
        if uris in (line.strip() for line in current.splitlines()):
            console.status(f"Repository {uris} already exists in {path}")
            return False
        if not self.write_system_file(path, repo_files.add_apk_repository(current, name, uris)):
            raise RepositoryError(f"Failed to add {uris} to {path}")
        logger.info("Added apk repository %s (%s)", name, uris)
        return True

    def _repositories_text(self) -> str:
        path = self.settings.apk_repositories
        return path.read_text() if path.is_file() else ""

    def has_external_repo(self, name: str) -> bool:
        return bool(repo_files.apk_marked_uris(self._repositories_text(), name))

    def repo_in_use(self, name: str) -> bool:
        uris = repo_files.apk_marked_uris(self._repositories_text(), name)
        if not uris:
            return False
        listed = self.runner.capture(["apk", "info"])
        if not listed.exit_ok:
            raise QueryFailed("apk info failed", output=listed.output)
        installed = sorted({line.strip() for line in listed.lines if line.strip()})
        if not installed:
            return False
        result = self.runner.capture(["apk", "policy", *installed])
        if not result.exit_ok:
            raise QueryFailed("apk policy failed", output=result.output)
        return any(repo_files.installed_from_apk_policy(result.output, uri) for uri in uris)

    def drop_external_repo(self, name: str) -> bool:
        path = self.settings.apk_repositories
        updated = repo_files.remove_apk_repository(self._repositories_text(), name)
        if updated is None:
            return False
        if not self.write_system_file(path, updated):
            raise RepositoryError(f"Failed to remove the {name} repository from {path}")
        self.remove_system_files(*sorted(self.settings.apk_keys_dir.glob(f"{name}-*.rsa.pub")))
        logger.info("Removed apk repository %s", name)
        return True

    # ── Queries ─────────────────────────────────────────────────

    def package_installed(self, name: str) -> bool:
        return self.runner.capture(["apk", "info", "-e", name]).exit_ok

    def package_available(self, name: str, arch: str | None = None) -> bool:
        if name == "init":
            if any(self.package_installed(s) for s in INIT_SYSTEMS):
                return True
            return any(self._search_exact(s) for s in INIT_SYSTEMS)
        return self._search_exact(name)

    def _search_exact(self, name: str) -> bool:
        result = self.runner.capture(["apk", "search", "-e", name])
        return result.exit_ok and bool(result.output.strip())

    def package_dependencies(self, name: str) -> list[str]:
        result = self.runner.capture(["apk", "info", "-R", name])
        if not result.exit_ok:
            raise PackageNotFound(f"Package {name} is not installed", output=result.output)
        deps = []
        for line in result.lines:
            line = line.strip()
            if not line or line == name or line.endswith("depends on:"):
                continue
            deps.append(line)
        return deps

    def package_installed_version(self, name: str) -> str:
        result = self.runner.capture(["apk", "list", "--installed", name])
        version = _version_from_list(result.lines, name)
        if not result.exit_ok or version is None:
            raise PackageNotFound(f"Package {name} is not installed")
        return version

    def package_latest_version(self, name: str, repo: str | None = None) -> str:
        result = self.runner.capture(["apk", "list", name])
        version = _version_from_list(result.lines, name)
        if not result.exit_ok or version is None:
            raise PackageNotFound(f"Package {name} is not available")
        return version

    def package_info(self, name: str) -> str:
        if not name or any(c.isspace() for c in name):
            raise InvalidPackageSpec(f"Invalid package name {name!r}")
        result = self.runner.capture(["apk", "info", name])
        if not result.exit_ok:
            raise QueryFailed(f"apk info {name} failed", output=result.output)
        if not result.output.strip():
            raise PackageNotFound(f"Package {name} is not available")
        return result.output


def _version_from_list(lines: list[str], name: str) -> str | None:
    """Version from ``apk list`` lines like ``curl-8.5.0-r0 x86_64 {main}``."""
    prefix = f"{name}-"
    for line in lines:
        fields = line.split()
        if fields and fields[0].startswith(prefix):
            version = fields[0][len(prefix):]
            if version[:1].isdigit():
                return version
    return None
