"""Python distribution models."""

from .base import PythonDistribution
from .scanning import find_python_resources
from .standalone import StandaloneDistribution, read_manifest

__all__ = [
    "PythonDistribution",
    "StandaloneDistribution",
    "find_python_resources",
    "read_manifest",
]
