"""
Output classifier: noise filtering and error extraction (pure).

Package managers report everything as free text.  Each backend ships a
``PatternTable`` describing, for one revision of its tool's wording,
which lines are progress chatter and which lines are real errors.
Newer wording is added with ``PatternTable.extend`` so orchestration
code never changes when a tool rephrases its messages.

No I/O, no subprocess.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")


def strip_ansi(text: str) -> str:
    """Remove terminal colour and cursor escape sequences."""
    return _ANSI_RE.sub("", text)


@dataclass(frozen=True)
class PatternTable:
    """Noise and error patterns for one backend tool revision.

    All patterns are regular expressions matched with ``re.search``
    against a single ANSI-stripped line.

    Attributes:
        backend: Backend name the table belongs to (``dpkg``, ``apk``...).
        revision: Free-form label of the tool wording this table matches.
        noise: Lines matching any of these are hidden from the user.
        errors: Lines matching any of these are reported as errors.
        keep: Lines matching any of these are always shown, even if a
            noise pattern also matches.
        drop_blank: Hide empty lines too.
    """

    backend: str
    revision: str
    noise: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    keep: tuple[str, ...] = ()
    drop_blank: bool = True
    _compiled: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def extend(
        self,
        *,
        revision: str,
        noise: tuple[str, ...] = (),
        errors: tuple[str, ...] = (),
        keep: tuple[str, ...] = (),
    ) -> PatternTable:
        """Return a new table with extra patterns for a newer tool wording."""
        return PatternTable(
            backend=self.backend,
            revision=revision,
            noise=self.noise + noise,
            errors=self.errors + errors,
            keep=self.keep + keep,
            drop_blank=self.drop_blank,
        )

    # ── Matching ────────────────────────────────────────────────

    def _regex(self, kind: str) -> re.Pattern[str] | None:
        if kind not in self._compiled:
            patterns = getattr(self, kind)
            self._compiled[kind] = (
                re.compile("|".join(f"(?:{p})" for p in patterns)) if patterns else None
            )
        return self._compiled[kind]

    def _matches(self, kind: str, line: str) -> bool:
        rx = self._regex(kind)
        return rx is not None and rx.search(line) is not None

    def is_error(self, line: str) -> bool:
        return self._matches("errors", strip_ansi(line))

    def is_noise(self, line: str) -> bool:
        """True if the line carries no diagnostic value for the user."""
        clean = strip_ansi(line)
        if self._matches("keep", clean):
            return False
        if self.drop_blank and not clean.strip():
            return True
        return self._matches("noise", clean)

    # ── Whole-output helpers ────────────────────────────────────

    def filter_line(self, line: str) -> str | None:
        """Return the ANSI-stripped line, or None if it is noise.

        Error lines are never filtered, even if a noise pattern matches.
        """
        clean = strip_ansi(line)
        if self.is_error(clean):
            return clean
        if self.is_noise(clean):
            return None
        return clean

    def filter_text(self, text: str) -> str:
        kept = (self.filter_line(line) for line in text.splitlines())
        return "\n".join(line for line in kept if line is not None)

    def extract_errors(self, text: str) -> list[str]:
        """Lines of ``text`` that report a real error, in order."""
        return [
            line.strip()
            for line in strip_ansi(text).splitlines()
            if self._matches("errors", line)
        ]


# Used for commands whose output is only captured, never classified.
PASSTHROUGH = PatternTable(backend="none", revision="passthrough", drop_blank=False)
