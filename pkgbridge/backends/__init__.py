"""
Package backends: one per distribution family, plus a null fallback.
"""

from pkgbridge.backends.base import PackageBackend
from pkgbridge.backends.registry import BackendRegistry, default_registry, select_backend

__all__ = ["BackendRegistry", "PackageBackend", "default_registry", "select_backend"]
