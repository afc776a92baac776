"""Persistence helpers for intermediate analysis objects."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import dill

logger = logging.getLogger(__name__)

__all__ = ["save_object", "load_object"]


def save_object(obj: Any, path: Union[str, Path]) -> Path:
    """
    Serialize an analysis object (DESeq2 dataset, result containers) using dill.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as handle:
        dill.dump(obj, handle)
    logger.debug("Saved %s to %s", type(obj).__name__, path)
    return path


def load_object(path: Union[str, Path]) -> Any:
    """
    Load an object written by :func:`save_object`.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Serialized object not found: {path}")
    with open(path, "rb") as handle:
        return dill.load(handle)
