"""notesbridge - scriptable access to Apple Notes."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notesbridge")
except PackageNotFoundError:
    # Source checkout that was never installed
    __version__ = "0.0.0+unknown"

__all__ = ["__version__"]
