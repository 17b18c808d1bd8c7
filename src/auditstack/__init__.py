"""Incremental multi-run audit orchestration."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__ = version("auditstack")
except PackageNotFoundError:  # source checkout without installed metadata
    __version__ = "0.1.0"
