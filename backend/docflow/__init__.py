"""Backend package for the DocFlow quote conversion engine."""

from importlib.metadata import version, PackageNotFoundError

__all__ = ["__version__"]

try:
    __version__ = version("docflow-backend")
except PackageNotFoundError:  # pragma: no cover - local dev without packaging
    __version__ = "0.1.0"
