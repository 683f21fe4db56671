"""
Backend registry: which backend runs on this host.

The registry holds backend classes by name.  ``select_backend`` honours
an explicit ``Settings.backend`` and otherwise checks the registered
backends in order, falling back to the null backend so callers always
get a working object.
"""

from __future__ import annotations

import logging
from typing import Any

from pkgbridge.backends.apk import ApkBackend
from pkgbridge.backends.base import PackageBackend
from pkgbridge.backends.dpkg import DpkgBackend
from pkgbridge.backends.null import NullBackend
from pkgbridge.backends.pacman import PacmanBackend
from pkgbridge.core.execution.process_runner import ProcessRunner
from pkgbridge.core.models.settings import Settings

logger = logging.getLogger(__name__)


class UnknownBackend(LookupError):
    """Raised when a backend name is not registered."""


class BackendRegistry:
    """Ordered name -> backend class mapping."""

    def __init__(self) -> None:
        self._backends: dict[str, type[PackageBackend]] = {}

    def register(self, name: str, backend_cls: type[PackageBackend]) -> None:
        if name in self._backends:
            logger.warning("Overwriting existing backend: %s", name)
        self._backends[name] = backend_cls
        logger.debug("Registered backend: %s", name)

    def get(self, name: str) -> type[PackageBackend] | None:
        return self._backends.get(name)

    def list_backends(self) -> list[str]:
        return list(self._backends)

    def create(
        self,
        name: str,
        settings: Settings | None = None,
        runner: ProcessRunner | None = None,
    ) -> PackageBackend:
        backend_cls = self.get(name)
        if backend_cls is None:
            raise UnknownBackend(
                f"Unknown backend {name!r} (known: {', '.join(self._backends) or 'none'})"
            )
        return backend_cls(settings, runner)

    def select(
        self,
        settings: Settings | None = None,
        runner: ProcessRunner | None = None,
    ) -> PackageBackend:
        """Pick the backend for this host.

        Detection order is registration order; ``null`` is never checked
        and is what you get when nothing else is available.
        """
        settings = settings or Settings()
        if settings.backend:
            backend = self.create(settings.backend, settings, runner)
            logger.debug("Using configured backend %s", backend.name)
            return backend

        for name, backend_cls in self._backends.items():
            if name == "null":
                continue
            backend = backend_cls(settings, runner)
            try:
                available = backend.is_available()
            except OSError as e:
                logger.debug("Probing %s failed: %s", name, e)
                available = False
            if available:
                logger.debug("Detected backend %s", name)
                return backend

        logger.info("No supported package manager found; using the null backend")
        return NullBackend(settings, runner)

    def backend_status(self, settings: Settings | None = None) -> dict[str, dict[str, Any]]:
        """Availability of every registered backend."""
        status = {}
        for name, backend_cls in self._backends.items():
            try:
                available = backend_cls(settings).is_available()
            except OSError:
                available = False
            status[name] = {
                "name": name,
                "available": available,
                "type": backend_cls.__name__,
            }
        return status


def default_registry() -> BackendRegistry:
    registry = BackendRegistry()
    registry.register("dpkg", DpkgBackend)
    registry.register("apk", ApkBackend)
    registry.register("pacman", PacmanBackend)
    registry.register("null", NullBackend)
    return registry


def select_backend(
    settings: Settings | None = None,
    runner: ProcessRunner | None = None,
) -> PackageBackend:
    """Backend for this host using the default registry."""
    return default_registry().select(settings, runner)
