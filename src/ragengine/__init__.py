"""ragengine: retrieval-and-ranking orchestration for retrieval augmented chat."""

from importlib import metadata

try:
    __version__ = metadata.version(__name__)
except metadata.PackageNotFoundError:  # running from a source checkout
    __version__ = "0.0.0"

__all__ = ["__version__"]
