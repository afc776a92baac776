"""Run configuration for the differential expression workflow."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

__all__ = ["WorkflowConfig", "load_config"]


@dataclass
class WorkflowConfig:
    """
    Tunable parameters for :func:`bulk_de.de.workflow.perform_de_workflow`.

    Parameters
    ----------
    condition_col:
        Sample metadata column holding the condition (status) label.
    reference_level:
        Baseline level of ``condition_col``. Defaults to the first level in sorted order.
    contrasts:
        Explicit ``(numerator, denominator)`` pairs. When empty, every level is tested against
        ``reference_level``, or every pair of levels when no reference is set.
    covariates:
        Extra metadata columns kept in the design alongside estimated surrogate variables.
    alpha, lfc_threshold:
        Adjusted p-value cutoff and absolute log2 fold-change cutoff used to call DEGs.
    n_sv:
        Number of surrogate variables, or ``"auto"`` to estimate it by permutation.
    enrichment_method:
        ``"ora"``, ``"prerank"`` or ``"both"``.
    """

    condition_col: str = "condition"
    reference_level: Optional[str] = None
    contrasts: List[Tuple[str, str]] = field(default_factory=list)
    covariates: List[str] = field(default_factory=list)
    # DE options
    alpha: float = 0.05
    lfc_threshold: float = 1.0
    min_counts: float = 10.0
    min_samples: Optional[int] = None
    shrink_lfc: bool = False
    cooks_filter: bool = True
    independent_filter: bool = True
    # Surrogate variables
    n_sv: Union[int, str] = "auto"
    max_sv: Optional[int] = None
    sv_permutations: int = 20
    # Enrichment
    enrichment_method: str = "ora"
    pathway_libraries: List[str] = field(default_factory=list)
    pathway_base_dir: Optional[str] = None
    pathway_alpha: float = 0.05
    # prerank gene set size bounds; ORA is not size-filtered
    gsea_min_size: int = 15
    gsea_max_size: int = 500
    gsea_permutations: int = 1000
    # Execution
    seed: int = 123456
    n_jobs: int = 1
    # Output
    output_dir: Optional[str] = None
    save_objects: bool = True
    make_plots: bool = True
    dpi: int = 300

    def __post_init__(self) -> None:
        self.contrasts = [tuple(pair) for pair in self.contrasts]
        self.covariates = list(self.covariates)
        self.pathway_libraries = list(self.pathway_libraries)

    def validate(self) -> "WorkflowConfig":
        if not 0.0 < self.alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {self.alpha}")
        if not 0.0 < self.pathway_alpha <= 1.0:
            raise ValueError(f"pathway_alpha must be in (0, 1], got {self.pathway_alpha}")
        if self.lfc_threshold < 0:
            raise ValueError(f"lfc_threshold must be non-negative, got {self.lfc_threshold}")
        if isinstance(self.n_sv, str):
            if self.n_sv != "auto":
                raise ValueError(f"n_sv must be 'auto' or a non-negative integer, got {self.n_sv!r}")
        elif isinstance(self.n_sv, bool) or int(self.n_sv) != self.n_sv or self.n_sv < 0:
            raise ValueError(f"n_sv must be 'auto' or a non-negative integer, got {self.n_sv!r}")
        if self.max_sv is not None and self.max_sv < 0:
            raise ValueError("max_sv must be non-negative.")
        if self.enrichment_method not in {"ora", "prerank", "both"}:
            raise ValueError("enrichment_method must be 'ora', 'prerank' or 'both'")
        if self.gsea_min_size > self.gsea_max_size:
            raise ValueError("gsea_min_size cannot exceed gsea_max_size")
        for pair in self.contrasts:
            if len(pair) != 2:
                raise ValueError(f"Contrasts must be (numerator, denominator) pairs, got {pair!r}")
            if pair[0] == pair[1]:
                raise ValueError(f"Contrast compares '{pair[0]}' with itself.")
        return self

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["contrasts"] = [list(pair) for pair in self.contrasts]
        return out

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "WorkflowConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise KeyError(f"Unknown configuration keys: {unknown}. Valid keys: {sorted(known)}")
        return cls(**dict(values)).validate()

    def save(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        return path


def load_config(path: Union[str, Path], overrides: Optional[Mapping[str, Any]] = None) -> WorkflowConfig:
    """Read a JSON configuration file, applying optional keyword overrides."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    values = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(values, dict):
        raise ValueError(f"Configuration file {path} must contain a JSON object.")
    if overrides:
        values.update(overrides)
    return WorkflowConfig.from_mapping(values)
