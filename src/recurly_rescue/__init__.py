"""recurly-rescue: Recover Recurly accounts lost to failed payments."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("recurly-rescue")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
