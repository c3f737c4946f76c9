"""Stagehand host convergence toolkit."""

from .engine import ConvergenceEngine
from .inventory import ManifestLoader

__all__ = ["ConvergenceEngine", "ManifestLoader"]
