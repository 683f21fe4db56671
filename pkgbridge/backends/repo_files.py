"""
Parsing and editing of package-manager repository configuration.

Pure text functions, no I/O: the backends read the files, call these,
and write the result back through ``PackageBackend.write_system_file``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# ── apt ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AptSource:
    """One (URI, suite, component) triple from a sources file."""

    uri: str
    suite: str
    component: str = ""

    @property
    def lists_prefix(self) -> str:
        """File name prefix apt uses for this source under /var/lib/apt/lists."""
        uri = _strip_scheme(self.uri).replace("/", "_")
        suite = self.suite.rstrip("/").replace("/", "_")
        if not self.component:
            return f"{uri}_{suite}_"
        component = self.component.rstrip("/").replace("/", "_")
        return f"{uri}_dists_{suite}_{component}_"

    @property
    def policy_marker(self) -> str:
        """How ``apt-cache policy`` prints this source in its version table."""
        uri = _strip_scheme(self.uri)
        if not self.component:
            return f"{uri} {self.suite}"
        return f"{uri} {self.suite}/{self.component}"


def _strip_scheme(uri: str) -> str:
    return re.sub(r"^.*://", "", uri).rstrip("/")


def _expand(uris: list[str], suites: list[str], components: list[str]) -> list[AptSource]:
    return [
        AptSource(uri, suite, component)
        for uri in uris
        for suite in suites
        for component in (components or [""])
    ]


def parse_list_file(text: str) -> list[AptSource]:
    """Sources of one-line-style ``deb`` entries (``.list`` files)."""
    sources: list[AptSource] = []
    for line in text.splitlines():
        if not line.startswith("deb "):
            continue
        # drop options like [arch=amd64 signed-by=...]
        fields = re.sub(r"\[.*?\]", "", line[len("deb "):]).split()
        if len(fields) < 2:
            continue
        sources.extend(_expand([fields[0]], [fields[1]], fields[2:]))
    return sources


def parse_sources_file(text: str) -> list[AptSource]:
    """Sources of deb822-style stanzas (``.sources`` files).

    Stanzas with ``Enabled: no`` are skipped.
    """
    sources: list[AptSource] = []
    for stanza in re.split(r"\n\s*\n", text):
        fields: dict[str, list[str]] = {}
        for line in stanza.splitlines():
            if line.startswith("#") or ":" not in line:
                continue
            key, _, value = line.partition(":")
            fields[key.strip().lower()] = value.split()
        if [v.lower() for v in fields.get("enabled", [])] == ["no"]:
            continue
        sources.extend(_expand(
            fields.get("uris", []), fields.get("suites", []), fields.get("components", []),
        ))
    return sources


def render_sources_file(
    uris: str,
    suites: str,
    components: str,
    keyring: str,
    options: tuple[str, ...] = (),
) -> str:
    """deb822 stanza for an external repository signed by ``keyring``."""
    lines = ["Types: deb", f"URIs: {uris}", f"Suites: {suites}"]
    if components:
        lines.append(f"Components: {components}")
    lines.extend(options)
    lines.append(f"Signed-By: {keyring}")
    return "\n".join(lines) + "\n"


def installed_from_status(text: str) -> set[str]:
    """Names of fully installed packages in a dpkg status file."""
    installed: set[str] = set()
    for stanza in text.split("\n\n"):
        name = ""
        ok = False
        for line in stanza.splitlines():
            if line.startswith("Package: "):
                name = line[len("Package: "):].strip()
            elif line.strip() == "Status: install ok installed":
                ok = True
        if name and ok:
            installed.add(name)
    return installed


def packages_in_index(text: str) -> set[str]:
    """Package names listed in an apt ``Packages`` index."""
    return {
        line[len("Package: "):].strip()
        for line in text.splitlines()
        if line.startswith("Package: ")
    }


# " *** 1.2-3 500" / "     1.2-2 100"
_POLICY_VERSION_RE = re.compile(r"^ (\*\*\*| {3}) \S+ -?\d+$")


def installed_from_policy(output: str, marker: str) -> bool:
    """Whether ``apt-cache policy`` lists ``marker`` as an origin of an installed version."""
    installed = False
    for line in output.splitlines():
        if line and not line[0].isspace():
            installed = False
            continue
        m = _POLICY_VERSION_RE.match(line)
        if m:
            installed = m.group(1) == "***"
        elif installed and marker in line:
            return True
    return False


# ── apk ─────────────────────────────────────────────────────────


def apk_marker(name: str) -> str:
    return f"# Added by pkgbridge: {name}"


def apk_marked_uris(text: str, name: str) -> list[str]:
    """Repository lines that follow the marker comment for ``name``."""
    lines = text.splitlines()
    marker = apk_marker(name)
    return [
        lines[i + 1].strip()
        for i, line in enumerate(lines[:-1])
        if line.strip() == marker and lines[i + 1].strip()
    ]


def add_apk_repository(text: str, name: str, uri: str) -> str:
    if text and not text.endswith("\n"):
        text += "\n"
    return f"{text}{apk_marker(name)}\n{uri}\n"


def remove_apk_repository(text: str, name: str) -> str | None:
    """``text`` without the marker for ``name`` and the line after it.

    Returns:
        The new text, or None if no marker was found.
    """
    marker = apk_marker(name)
    kept: list[str] = []
    skip_next = False
    found = False
    for line in text.splitlines(keepends=True):
        if skip_next:
            skip_next = False
            continue
        if line.strip() == marker:
            found = skip_next = True
            continue
        kept.append(line)
    return "".join(kept) if found else None


def installed_from_apk_policy(output: str, uri: str) -> bool:
    """Whether ``apk policy`` lists ``uri`` as a source of an installed version.

    The output has one block per version::

        curl policy:
          8.5.0-r0:
            lib/apk/db/installed
            https://dl-cdn.alpinelinux.org/alpine/v3.19/main
    """
    uri = uri.rstrip("/")
    blocks: list[list[str]] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 2 and line.rstrip().endswith(":"):
            blocks.append([])
        elif indent >= 4 and blocks:
            blocks[-1].append(line.strip())
    return any(
        "lib/apk/db/installed" in block and any(uri in origin.rstrip("/") for origin in block)
        for block in blocks
    )


# ── pacman ──────────────────────────────────────────────────────

_SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")


def pacman_sections(text: str) -> list[str]:
    return [m.group(1) for m in map(_SECTION_RE.match, text.splitlines()) if m]


def add_pacman_section(text: str, name: str, lines: list[str]) -> str:
    """Append a ``[name]`` section at the end of pacman.conf."""
    section = "\n".join([f"[{name}]", *lines]) + "\n"
    if not text.strip():
        return section
    return text.rstrip("\n") + "\n\n" + section


def remove_pacman_section(text: str, name: str) -> str | None:
    """``text`` without the ``[name]`` section.

    The section runs up to the next section header.  Returns None if
    there is no such section.
    """
    kept: list[str] = []
    inside = found = False
    for line in text.splitlines(keepends=True):
        m = _SECTION_RE.match(line)
        if m:
            inside = m.group(1) == name
            found = found or inside
        if not inside:
            kept.append(line)
    if not found:
        return None
    result = re.sub(r"\n{3,}", "\n\n", "".join(kept)).rstrip("\n")
    return result + "\n" if result else ""
