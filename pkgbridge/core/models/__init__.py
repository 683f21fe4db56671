"""
Domain models: pydantic types shared by the engine and the backends.

    from pkgbridge.core.models import PackageSpec, ProcessResult, Settings
"""

from pkgbridge.core.models.package import PackageSpec, dedupe_specs, render_depends
from pkgbridge.core.models.process import ProcessResult
from pkgbridge.core.models.settings import LockWaitPolicy, RetryPolicy, Settings

__all__ = [
    # package.py
    "PackageSpec",
    "dedupe_specs",
    "render_depends",
    # process.py
    "ProcessResult",
    # settings.py
    "LockWaitPolicy",
    "RetryPolicy",
    "Settings",
]
