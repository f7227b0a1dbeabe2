"""call-indexer: Resilient on-chain event indexer for the call registry."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("call-indexer")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
