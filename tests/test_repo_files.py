"""
Tests for repository configuration parsing and editing.
"""

from __future__ import annotations

from pkgbridge.backends import repo_files
from pkgbridge.backends.repo_files import AptSource

POLICY = """\
code:
  Installed: 1.90.0-1
  Candidate: 1.90.0-1
  Version table:
 *** 1.90.0-1 500
        500 https://packages.microsoft.com/repos/code stable/main arm64 Packages
        100 /var/lib/dpkg/status
     1.89.1-1 500
        500 https://packages.microsoft.com/repos/code stable/main arm64 Packages
curl:
  Installed: 7.88.1-10
  Candidate: 7.88.1-10
  Version table:
 *** 7.88.1-10 500
        500 http://deb.debian.org/debian bookworm/main arm64 Packages
        100 /var/lib/dpkg/status
"""

APK_POLICY = """\
curl policy:
  8.5.0-r0:
    lib/apk/db/installed
    https://dl-cdn.alpinelinux.org/alpine/v3.19/main
tool policy:
  2.0-r0:
    https://repo.example.com/alpine
  1.0-r0:
    lib/apk/db/installed
"""


class TestAptSources:
    def test_list_file(self):
        text = (
            "# comment\n"
            "deb [arch=arm64 signed-by=/usr/share/keyrings/code.gpg] "
            "https://packages.microsoft.com/repos/code stable main contrib\n"
            "deb-src http://example.com/src stable main\n"
        )
        assert repo_files.parse_list_file(text) == [
            AptSource("https://packages.microsoft.com/repos/code", "stable", "main"),
            AptSource("https://packages.microsoft.com/repos/code", "stable", "contrib"),
        ]

    def test_sources_file_skips_disabled_stanzas(self):
        text = (
            "Types: deb\nURIs: https://a.example.com/apt\nSuites: ./\n"
            "\n"
            "Types: deb\nURIs: https://b.example.com\nSuites: jammy\n"
            "Components: main\nEnabled: no\n"
        )
        assert repo_files.parse_sources_file(text) == [AptSource("https://a.example.com/apt", "./")]

    def test_render_round_trips_through_parser(self):
        text = repo_files.render_sources_file(
            "https://x.example.com/debian", "bookworm", "main", "/usr/share/keyrings/x.gpg",
            ("Architectures: arm64",),
        )
        assert text.endswith("Architectures: arm64\nSigned-By: /usr/share/keyrings/x.gpg\n")
        assert repo_files.parse_sources_file(text) == [
            AptSource("https://x.example.com/debian", "bookworm", "main"),
        ]

    def test_lists_prefix(self):
        assert AptSource("https://x.example.com/debian/", "bookworm", "main").lists_prefix == (
            "x.example.com_debian_dists_bookworm_main_"
        )
        assert AptSource("https://x.example.com/apt", "./").lists_prefix == "x.example.com_apt_._"

    def test_installed_from_status(self):
        text = (
            "Package: curl\nStatus: install ok installed\n\n"
            "Package: old\nStatus: deinstall ok config-files\n\n"
            "Package: code\nStatus: install ok installed\n"
        )
        assert repo_files.installed_from_status(text) == {"curl", "code"}

    def test_installed_version_origin(self):
        code = AptSource("https://packages.microsoft.com/repos/code", "stable", "main")
        assert repo_files.installed_from_policy(POLICY, code.policy_marker)

    def test_origin_of_other_version_does_not_count(self):
        assert not repo_files.installed_from_policy(POLICY, "example.org/debian bookworm/main")
        local_build = (
            "code:\n"
            "  Installed: 1.90.0-1\n"
            "  Version table:\n"
            " *** 1.90.0-1 100\n"
            "        100 /var/lib/dpkg/status\n"
            "     1.89.1-1 500\n"
            "        500 https://packages.microsoft.com/repos/code stable/main arm64 Packages\n"
        )
        code = AptSource("https://packages.microsoft.com/repos/code", "stable", "main")
        assert not repo_files.installed_from_policy(local_build, code.policy_marker)


class TestApkRepositories:
    def test_add_and_remove(self):
        text = "https://dl-cdn.alpinelinux.org/alpine/v3.19/main"
        added = repo_files.add_apk_repository(text, "tool", "https://repo.example.com/alpine")
        assert added.splitlines() == [
            "https://dl-cdn.alpinelinux.org/alpine/v3.19/main",
            "# Added by pkgbridge: tool",
            "https://repo.example.com/alpine",
        ]
        assert repo_files.apk_marked_uris(added, "tool") == ["https://repo.example.com/alpine"]
        assert repo_files.remove_apk_repository(added, "tool") == text + "\n"

    def test_remove_unknown(self):
        assert repo_files.remove_apk_repository("https://a\n", "tool") is None

    def test_installed_from_policy(self):
        assert repo_files.installed_from_apk_policy(
            APK_POLICY, "https://dl-cdn.alpinelinux.org/alpine/v3.19/main/",
        )
        # only the not-installed 2.0 comes from the example repo
        assert not repo_files.installed_from_apk_policy(APK_POLICY, "https://repo.example.com/alpine")


class TestPacmanConf:
    CONF = (
        "[options]\nArchitecture = auto\n\n"
        "[core]\nInclude = /etc/pacman.d/mirrorlist\n\n"
        "[extra]\nInclude = /etc/pacman.d/mirrorlist\n"
    )

    def test_add_section(self):
        text = repo_files.add_pacman_section(self.CONF, "tool", ["Server = https://x/$arch"])
        assert text.endswith("Include = /etc/pacman.d/mirrorlist\n\n[tool]\nServer = https://x/$arch\n")
        assert repo_files.pacman_sections(text) == ["options", "core", "extra", "tool"]

    def test_remove_middle_section(self):
        text = repo_files.remove_pacman_section(self.CONF, "core")
        assert repo_files.pacman_sections(text) == ["options", "extra"]
        assert "\n\n\n" not in text

    def test_remove_missing_section(self):
        assert repo_files.remove_pacman_section(self.CONF, "tool") is None
