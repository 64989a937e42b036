"""cohort — adaptive coordination for autonomous workers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("cohort")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
