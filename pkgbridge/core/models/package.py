"""
PackageSpec: one concrete package an install resolves to.

Raw install arguments (bare names, local files, URLs, globs) are turned
into specs by the backend.  A spec renders to the dependency syntax the
dpkg family uses in control files, ``name (>= version)``, and can be
parsed back from it when an installed placeholder is read.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict

# "name", "name:arch", "name (>= 1.2)", "name:arch (= 1.2-3)"
_DEPENDS_RE = re.compile(
    r"^(?P<name>[^\s:(]+)(?::(?P<arch>[^\s(]+))?"
    r"(?:\s*\(\s*(?P<relation><<|<=|=|>=|>>)\s*(?P<version>[^)\s]+)\s*\))?$"
)


class PackageSpec(BaseModel):
    """A package name with an optional version constraint and release pin."""

    model_config = ConfigDict(frozen=True)

    name: str
    min_version: str | None = None
    relation: str = ">="
    repo: str | None = None          # release pin (apt -t)
    arch: str | None = None          # foreign architecture qualifier

    @property
    def qualified_name(self) -> str:
        """Name as the package manager addresses it (``name:arch``)."""
        return f"{self.name}:{self.arch}" if self.arch else self.name

    @property
    def is_unresolved(self) -> bool:
        """True if the name still looks like a glob, URL or file path."""
        return "*" in self.name or "://" in self.name or "/" in self.name

    def render(self) -> str:
        """Render as a dependency entry, e.g. ``libfoo (>= 1.2)``."""
        if self.min_version:
            return f"{self.qualified_name} ({self.relation} {self.min_version})"
        return self.qualified_name

    @classmethod
    def parse(cls, text: str) -> PackageSpec:
        """Parse one rendered dependency entry.

        Raises:
            ValueError: if the entry is not a single package reference.
        """
        m = _DEPENDS_RE.match(text.strip())
        if not m:
            raise ValueError(f"Not a package reference: {text!r}")
        if m.group("version"):
            return cls(
                name=m.group("name"),
                arch=m.group("arch"),
                relation=m.group("relation"),
                min_version=m.group("version"),
            )
        return cls(name=m.group("name"), arch=m.group("arch"))

    def __str__(self) -> str:
        return self.render()


def dedupe_specs(specs: Iterable[PackageSpec]) -> list[PackageSpec]:
    """Collapse specs by qualified name (last one wins) and sort them.

    Sorting is on the rendered form so the result is stable regardless
    of the order arguments were given in.
    """
    by_name: dict[str, PackageSpec] = {}
    for spec in specs:
        by_name[spec.qualified_name] = spec
    return sorted(by_name.values(), key=lambda s: s.render())


def render_depends(specs: Iterable[PackageSpec]) -> str:
    """Render a sorted, de-duplicated ``Depends:`` value."""
    return ", ".join(s.render() for s in dedupe_specs(specs))
