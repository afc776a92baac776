"""Bulk RNA-seq differential expression and gene set enrichment pipeline."""

from ._version import __version__
from .config import WorkflowConfig, load_config

__all__ = ["__version__", "WorkflowConfig", "load_config"]
