"""Surrogate variable estimation for unmodelled batch effects.

Surrogate variables are estimated svaseq-style: counts are size-factor
normalised and log transformed, the known design (intercept + condition +
covariates) is regressed out, and the leading right singular vectors of the
residual matrix are taken as latent covariates. The number of variables can
be chosen with the Buja-Eyuboglu permutation test.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

__all__ = [
    "SurrogateVariableResult",
    "median_ratio_size_factors",
    "log_normalize",
    "model_matrix",
    "estimate_n_sv",
    "estimate_surrogate_variables",
    "remove_covariate_effects",
]

SV_PREFIX = "SV"


@dataclass
class SurrogateVariableResult:
    """Sample metadata with ``SV1..SVk`` columns appended, plus the raw SV matrix."""

    metadata: pd.DataFrame
    sv: pd.DataFrame
    n_sv: int
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def sv_columns(self) -> List[str]:
        return list(self.sv.columns)


def median_ratio_size_factors(counts: pd.DataFrame) -> pd.Series:
    """DESeq-style median-of-ratios size factors for a genes x samples matrix."""
    values = counts.to_numpy(dtype=float)
    positive = np.all(values > 0, axis=1)
    if not positive.any():
        # Fall back to library size scaling when no gene is expressed everywhere.
        totals = values.sum(axis=0)
        factors = totals / np.exp(np.mean(np.log(np.where(totals > 0, totals, 1.0))))
        return pd.Series(factors, index=counts.columns)
    log_vals = np.log(values[positive])
    log_geo_means = log_vals.mean(axis=1, keepdims=True)
    factors = np.exp(np.median(log_vals - log_geo_means, axis=0))
    return pd.Series(factors, index=counts.columns)


def log_normalize(counts: pd.DataFrame) -> pd.DataFrame:
    """``log(counts / size_factor + 1)`` for a genes x samples matrix."""
    factors = median_ratio_size_factors(counts)
    return np.log(counts.div(factors, axis=1) + 1.0)


def model_matrix(
    metadata: pd.DataFrame,
    terms: Sequence[str],
    *,
    intercept: bool = True,
) -> pd.DataFrame:
    """
    Build a treatment-coded design matrix from metadata columns.

    Categorical / string columns are one-hot encoded dropping the first level;
    numeric columns enter as-is.
    """
    missing = [t for t in terms if t not in metadata.columns]
    if missing:
        raise KeyError(f"Design columns not found in metadata: {missing}")
    parts = []
    if intercept:
        parts.append(pd.DataFrame({"Intercept": 1.0}, index=metadata.index))
    for term in terms:
        column = metadata[term]
        if pd.api.types.is_numeric_dtype(column) and not isinstance(column.dtype, pd.CategoricalDtype):
            parts.append(column.astype(float).to_frame(term))
        else:
            dummies = pd.get_dummies(column.astype(str), prefix=term, drop_first=True, dtype=float)
            parts.append(dummies)
    if not parts:
        return pd.DataFrame(index=metadata.index)
    return pd.concat(parts, axis=1)


def _residualize(y: np.ndarray, x: np.ndarray) -> np.ndarray:
    """Residuals of each row of ``y`` (genes x samples) regressed on ``x`` (samples x p)."""
    if x.shape[1] == 0:
        return y.copy()
    beta, *_ = np.linalg.lstsq(x, y.T, rcond=None)
    return y - (x @ beta).T


def _prepare(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    terms: Sequence[str],
) -> tuple:
    samples = [s for s in metadata.index if s in counts.columns]
    if len(samples) != len(metadata.index):
        missing = [s for s in metadata.index if s not in counts.columns]
        raise KeyError(
            f"Samples {missing} are missing from the count matrix columns. "
            "Counts must be genes x samples; transpose if samples are rows."
        )
    counts = counts.loc[:, samples]
    counts = counts.loc[counts.sum(axis=1) > 0]
    design = model_matrix(metadata.loc[samples], terms)
    rank = np.linalg.matrix_rank(design.to_numpy())
    if len(samples) <= rank:
        raise ValueError(
            f"Need more samples ({len(samples)}) than model columns (rank {rank}) to estimate surrogate variables."
        )
    y = log_normalize(counts).to_numpy()
    return samples, y, design.to_numpy(), rank


def _variance_fractions(residuals: np.ndarray, ndf: int) -> np.ndarray:
    singular = np.linalg.svd(residuals, compute_uv=False)[:ndf]
    power = singular ** 2
    total = power.sum()
    if total <= 0:
        return np.zeros(ndf)
    return power / total


def estimate_n_sv(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    condition_col: str,
    *,
    covariates: Sequence[str] = (),
    n_permutations: int = 20,
    significance: float = 0.10,
    seed: Optional[int] = 123456,
) -> int:
    """
    Estimate the number of surrogate variables with the Buja-Eyuboglu permutation test.

    Each permutation shuffles every gene's residuals independently, destroying
    shared structure; a component is retained while its share of residual
    variance beats the permuted shares at ``significance``.
    """
    _, y, x, rank = _prepare(counts, metadata, [condition_col, *covariates])
    residuals = _residualize(y, x)
    ndf = y.shape[1] - rank
    observed = _variance_fractions(residuals, ndf)

    rng = np.random.default_rng(seed)
    null = np.zeros((n_permutations, ndf))
    for i in range(n_permutations):
        shuffled = rng.permuted(residuals, axis=1)
        null[i] = _variance_fractions(_residualize(shuffled, x), ndf)

    pvals = (null >= observed[None, :]).mean(axis=0)
    pvals = np.maximum.accumulate(pvals)
    n_sv = int((pvals <= significance).sum())
    logger.info("Permutation test selected %d surrogate variables (%d permutations)", n_sv, n_permutations)
    return n_sv


def estimate_surrogate_variables(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    condition_col: str,
    *,
    covariates: Sequence[str] = (),
    n_sv: Union[int, str] = "auto",
    max_sv: Optional[int] = None,
    n_permutations: int = 20,
    seed: Optional[int] = 123456,
) -> SurrogateVariableResult:
    """
    Estimate surrogate variables and append them to a copy of ``metadata``.

    Parameters
    ----------
    counts:
        Genes x samples count matrix.
    metadata:
        Sample metadata indexed by sample id; not modified.
    condition_col:
        Column holding the condition of interest (protected from removal).
    covariates:
        Known covariates also protected by the full model.
    n_sv:
        Number of variables to extract, or ``"auto"`` for :func:`estimate_n_sv`.
    max_sv:
        Optional cap on the number of variables.
    """
    if condition_col not in metadata.columns:
        raise KeyError(f"Condition column '{condition_col}' not found in metadata.")
    samples, y, x, rank = _prepare(counts, metadata, [condition_col, *covariates])

    if n_sv == "auto":
        k = estimate_n_sv(
            counts,
            metadata,
            condition_col,
            covariates=covariates,
            n_permutations=n_permutations,
            seed=seed,
        )
    elif isinstance(n_sv, str):
        raise ValueError(f"n_sv must be 'auto' or an integer, got {n_sv!r}")
    else:
        k = int(n_sv)
        if k < 0:
            raise ValueError("n_sv must be non-negative.")
    ndf = len(samples) - rank
    if k > ndf:
        logger.warning("Requested %d surrogate variables but only %d residual degrees of freedom", k, ndf)
        k = ndf
    if max_sv is not None and k > max_sv:
        logger.info("Capping surrogate variables at max_sv=%d (estimated %d)", max_sv, k)
        k = max_sv

    columns = [f"{SV_PREFIX}{i + 1}" for i in range(k)]
    out = metadata.copy()
    if k == 0:
        sv = pd.DataFrame(index=pd.Index(samples, name=metadata.index.name))
    else:
        residuals = _residualize(y, x)
        residuals = residuals - residuals.mean(axis=1, keepdims=True)
        _, _, vt = np.linalg.svd(residuals, full_matrices=False)
        vectors = vt[:k].T
        # Fix the sign so the largest loading of each vector is positive.
        flip = np.sign(vectors[np.abs(vectors).argmax(axis=0), np.arange(k)])
        flip[flip == 0] = 1.0
        sv = pd.DataFrame(vectors * flip, index=samples, columns=columns)
        for col in columns:
            if col in out.columns:
                raise ValueError(f"Metadata already contains a '{col}' column.")
            out[col] = sv[col].reindex(out.index)

    logger.info("Added %d surrogate variables to sample metadata", k)
    return SurrogateVariableResult(
        metadata=out,
        sv=sv,
        n_sv=k,
        parameters={
            "condition_col": condition_col,
            "covariates": list(covariates),
            "n_sv_requested": n_sv,
            "max_sv": max_sv,
            "n_permutations": n_permutations,
            "seed": seed,
        },
    )


def remove_covariate_effects(
    log_expr: pd.DataFrame,
    metadata: pd.DataFrame,
    covariates: Sequence[str],
    *,
    keep: Sequence[str] = (),
) -> pd.DataFrame:
    """
    Regress covariate effects out of log expression (genes x samples).

    The ``keep`` terms are fitted jointly so their signal is preserved. Use the
    result for visualisation only; testing should model covariates explicitly.
    """
    if not covariates:
        return log_expr.copy()
    meta = metadata.loc[log_expr.columns]
    keep_design = model_matrix(meta, list(keep), intercept=True)
    cov_design = model_matrix(meta, list(covariates), intercept=False)
    x = pd.concat([keep_design, cov_design], axis=1).to_numpy()
    y = log_expr.to_numpy(dtype=float)
    beta, *_ = np.linalg.lstsq(x, y.T, rcond=None)
    n_keep = keep_design.shape[1]
    cov_effect = (cov_design.to_numpy() @ beta[n_keep:]).T
    return pd.DataFrame(y - cov_effect, index=log_expr.index, columns=log_expr.columns)
