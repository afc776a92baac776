"""Differential expression helpers backed by PyDESeq2."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from itertools import combinations
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..annotation import annotate_results
from .base import DEAnalysisResult

logger = logging.getLogger(__name__)

__all__ = [
    "prepare_deseq_dataset",
    "fit_deseq_dataset",
    "run_contrast",
    "run_pairwise_de",
    "run_all_pairwise_de",
    "classify_degs",
    "significant_genes",
    "common_degs",
    "write_common_degs",
    "contrast_key",
]


def _import_pydeseq2():
    try:
        from pydeseq2.dds import DeseqDataSet  # type: ignore
        from pydeseq2.ds import DeseqStats  # type: ignore
        from pydeseq2.default_inference import DefaultInference  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "Optional dependency 'pydeseq2' is required for differential expression. "
            "Install it via pip or conda before using `bulk_de.de.differential_expression`."
        ) from exc
    return DeseqDataSet, DeseqStats, DefaultInference


def _sanitize_column(name: str) -> str:
    return (
        str(name)
        .replace("-", "_")
        .replace(" ", "_")
        .replace("/", "_")
        .replace(":", "_")
        .replace(".", "_")
    )


def _effective_n_jobs(n_jobs: Optional[int]) -> int:
    """Normalize parallelism requests (0 -> all CPUs, negative offsets allowed)."""
    total = os.cpu_count() or 1
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return total
    if n_jobs < 0:
        return max(1, total + 1 + int(n_jobs))
    return max(1, int(n_jobs))


def contrast_key(numerator: str, denominator: str) -> str:
    return f"{numerator}_vs_{denominator}"


def _orient_counts(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """Return counts as samples x genes, validating the genes x samples input."""
    samples = [str(s) for s in metadata.index]
    columns = [str(c) for c in counts.columns]
    missing = [s for s in samples if s not in columns]
    if missing:
        index = {str(i) for i in counts.index}
        if all(s in index for s in samples):
            raise ValueError(
                "Counts appear to be samples x genes; expected genes (rows) x samples (columns). "
                "Transpose the count matrix before calling."
            )
        raise KeyError(f"Samples missing from count matrix columns: {missing}")
    counts = counts.copy()
    counts.columns = columns
    return counts.loc[:, samples].T


def _integer_counts(counts_df: pd.DataFrame) -> pd.DataFrame:
    """Reject negative or non-finite counts; round non-integer estimates."""
    values = counts_df.to_numpy(dtype=float)
    if not np.isfinite(values).all():
        raise ValueError("Count matrix contains missing or non-finite values.")
    if (values < 0).any():
        raise ValueError("Count matrix contains negative values.")
    if not np.allclose(values, np.round(values)):
        logger.warning("Rounding non-integer counts before DESeq2 fitting")
    return counts_df.round().astype(np.int64)


def prepare_deseq_dataset(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    condition_col: str = "condition",
    covariates: Sequence[str] = (),
    reference_level: Optional[str] = None,
    min_counts: Optional[float] = 10.0,
    min_samples: Optional[int] = None,
    gene_list: Optional[Sequence[str]] = None,
    refit_cooks: bool = True,
    n_cpus: Optional[int] = 1,
) -> "DeseqDataSet":
    """
    Prepare a :class:`pydeseq2.dds.DeseqDataSet` from a genes x samples count matrix.

    The design is ``~ covariates + condition``. Genes are kept when at least
    ``min_samples`` samples (default: the smallest condition group) reach
    ``min_counts`` reads.
    """
    DeseqDataSet, _, DefaultInference = _import_pydeseq2()

    for col in [condition_col, *covariates]:
        if col not in metadata.columns:
            raise KeyError(f"Design column '{col}' not found in metadata. Available: {list(metadata.columns)}")

    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    counts_df = _integer_counts(_orient_counts(counts, metadata))

    levels = sorted(metadata[condition_col].astype(str).unique())
    if len(levels) < 2:
        raise ValueError(f"Condition column '{condition_col}' needs at least two levels, found {levels}.")
    if reference_level is not None:
        if reference_level not in levels:
            raise ValueError(f"Reference level '{reference_level}' not among condition levels {levels}.")
        levels = [reference_level] + [lvl for lvl in levels if lvl != reference_level]

    rename_map = {col: _sanitize_column(col) for col in [condition_col, *covariates]}
    if len(set(rename_map.values())) != len(rename_map):
        raise ValueError("Sanitized design column names are not unique. Please rename metadata columns.")
    design_df = metadata.loc[:, list(rename_map)].rename(columns=rename_map)
    condition_name = rename_map[condition_col]
    design_df[condition_name] = pd.Categorical(design_df[condition_name].astype(str), categories=levels)

    mask = pd.Series(True, index=counts_df.columns)
    if min_counts is not None:
        if min_samples is None:
            min_samples = int(design_df[condition_name].value_counts().min())
        mask &= (counts_df >= min_counts).sum(axis=0) >= min_samples
    if gene_list is not None:
        mask &= counts_df.columns.isin(gene_list)
    counts_df = counts_df.loc[:, mask]
    if counts_df.shape[1] == 0:
        raise ValueError("No genes remain after filtering; relax filtering thresholds or provide a gene list.")
    logger.info(
        "Prepared DESeq2 dataset: %d samples x %d genes (%d filtered)",
        counts_df.shape[0],
        counts_df.shape[1],
        int((~mask).sum()),
    )

    inference = DefaultInference(n_cpus=_effective_n_jobs(n_cpus))
    terms = [rename_map[c] for c in covariates] + [condition_name]
    design_formula = "~ " + " + ".join(terms)
    dds = DeseqDataSet(
        counts=counts_df,
        metadata=design_df,
        design=design_formula,
        refit_cooks=refit_cooks,
        inference=inference,
        quiet=True,
    )
    dds.uns["bulk_de"] = {
        "condition_col": condition_name,
        "covariates": terms[:-1],
        "levels": levels,
        "design": design_formula,
    }
    return dds


def fit_deseq_dataset(dds: "DeseqDataSet") -> "DeseqDataSet":
    """
    Run the standard DESeq2 fitting chain (size factors, dispersions, LFCs, Cook's refit).
    """
    _import_pydeseq2()
    logger.info("Fitting DESeq2 model %s", dds.uns.get("bulk_de", {}).get("design", ""))
    dds.deseq2()
    return dds


def _design_info(dds: "DeseqDataSet") -> Mapping[str, object]:
    info = dds.uns.get("bulk_de") if hasattr(dds, "uns") else None
    if not info:
        raise AttributeError("DeseqDataSet was not built by prepare_deseq_dataset; design info missing.")
    return info


def classify_degs(
    df: pd.DataFrame,
    *,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    p_col: str = "padj",
    lfc_col: str = "log2FoldChange",
    out_col: str = "regulation",
) -> pd.DataFrame:
    """
    Label each gene ``up``, ``down`` or ``unchanged``.

    A gene is a DEG when ``padj < alpha`` and ``|log2FoldChange| > lfc_threshold``;
    missing adjusted p-values are never significant.
    """
    missing = [col for col in (p_col, lfc_col) if col not in df.columns]
    if missing:
        raise KeyError(f"Dataframe missing required columns: {missing}")
    out = df.copy()
    significant = (out[p_col] < alpha).fillna(False).to_numpy(dtype=bool)
    lfc = out[lfc_col].to_numpy(dtype=float)
    up = significant & (lfc > lfc_threshold)
    down = significant & (lfc < -lfc_threshold)
    out[out_col] = np.select([up, down], ["up", "down"], default="unchanged")
    return out


def significant_genes(
    df: pd.DataFrame,
    direction: Optional[str] = None,
    *,
    gene_col: str = "gene_name",
    regulation_col: str = "regulation",
) -> List[str]:
    """Unique gene symbols called ``up``/``down`` (either when ``direction`` is None)."""
    if regulation_col not in df.columns:
        raise KeyError(f"Column '{regulation_col}' not found; classify the table first.")
    if direction is None:
        mask = df[regulation_col].isin(["up", "down"])
    elif direction in ("up", "down"):
        mask = df[regulation_col] == direction
    else:
        raise ValueError("direction must be 'up', 'down' or None")
    return list(dict.fromkeys(df.loc[mask, gene_col].astype(str)))


def _shrunk_lfc(stats_obj, condition_col: str, numerator: str, denominator: str, levels: Sequence[str]) -> bool:
    coeffs = list(stats_obj.dds.varm["LFC"].columns)
    coeff = f"{condition_col}[T.{numerator}]"
    if denominator != levels[0] or coeff not in coeffs:
        logger.warning(
            "LFC shrinkage needs a contrast against the reference level '%s'; skipping for %s",
            levels[0],
            contrast_key(numerator, denominator),
        )
        return False
    stats_obj.lfc_shrink(coeff=coeff)
    return True


def run_contrast(
    dds: "DeseqDataSet",
    numerator: str,
    denominator: str,
    *,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    gene_annotations: Optional[pd.DataFrame] = None,
    drop_unmapped: bool = True,
    cooks_filter: bool = True,
    independent_filter: bool = True,
    shrink_lfc: bool = False,
) -> Tuple["DeseqStats", pd.DataFrame]:
    """
    Wald test of ``numerator`` versus ``denominator``, annotated and classified.

    Returns the PyDESeq2 stats object and the contrast result table.
    """
    _, DeseqStats, _ = _import_pydeseq2()
    info = _design_info(dds)
    condition_col = info["condition_col"]
    levels = list(info["levels"])
    if numerator == denominator:
        raise ValueError(f"Contrast compares '{numerator}' with itself.")
    unknown = [lvl for lvl in (numerator, denominator) if lvl not in levels]
    if unknown:
        raise ValueError(f"Condition levels {unknown} not found. Available levels: {levels}")

    stats_obj = DeseqStats(
        dds,
        contrast=[condition_col, numerator, denominator],
        alpha=alpha,
        cooks_filter=cooks_filter,
        independent_filter=independent_filter,
        quiet=True,
    )
    stats_obj.summary()
    shrunk = False
    if shrink_lfc:
        shrunk = _shrunk_lfc(stats_obj, condition_col, numerator, denominator, levels)
    results_df = stats_obj.results_df.copy()
    results_df = annotate_results(results_df, gene_annotations, drop_unmapped=drop_unmapped)
    results_df = classify_degs(results_df, alpha=alpha, lfc_threshold=lfc_threshold)
    results_df.attrs["lfc_shrunk"] = shrunk
    counts = results_df["regulation"].value_counts()
    logger.info(
        "%s: %d up, %d down of %d genes",
        contrast_key(numerator, denominator),
        int(counts.get("up", 0)),
        int(counts.get("down", 0)),
        len(results_df),
    )
    return stats_obj, results_df


def run_pairwise_de(
    dds: "DeseqDataSet",
    contrasts: Iterable[Tuple[str, str]],
    *,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    gene_annotations: Optional[pd.DataFrame] = None,
    drop_unmapped: bool = True,
    cooks_filter: bool = True,
    independent_filter: bool = True,
    shrink_lfc: bool = False,
    save_dir: Optional[Union[str, Path]] = None,
    n_jobs: int = 1,
) -> DEAnalysisResult:
    """
    Perform differential expression analysis for each ``(numerator, denominator)`` pair.
    """
    pairs = [(str(a), str(b)) for a, b in contrasts]
    if not pairs:
        raise ValueError("No contrasts requested.")

    def compute(numerator: str, denominator: str) -> Tuple[str, object, pd.DataFrame]:
        stats_obj, results_df = run_contrast(
            dds,
            numerator,
            denominator,
            alpha=alpha,
            lfc_threshold=lfc_threshold,
            gene_annotations=gene_annotations,
            drop_unmapped=drop_unmapped,
            cooks_filter=cooks_filter,
            independent_filter=independent_filter,
            shrink_lfc=shrink_lfc,
        )
        return contrast_key(numerator, denominator), stats_obj, results_df

    results_map: Dict[str, Tuple[object, pd.DataFrame]] = {}
    workers = _effective_n_jobs(n_jobs)
    if workers == 1 or len(pairs) <= 1:
        for numerator, denominator in pairs:
            key, stats_obj, results_df = compute(numerator, denominator)
            results_map[key] = (stats_obj, results_df)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {executor.submit(compute, a, b): (a, b) for a, b in pairs}
            for future in as_completed(future_map):
                key, stats_obj, results_df = future.result()
                results_map[key] = (stats_obj, results_df)

    contrast_results: Dict[str, pd.DataFrame] = {}
    artifacts: MutableMapping[str, object] = {}
    for numerator, denominator in pairs:
        key = contrast_key(numerator, denominator)
        stats_obj, results_df = results_map[key]
        contrast_results[key] = results_df
        artifacts[key] = stats_obj

    result = DEAnalysisResult(
        dds=dds,
        contrast_results=contrast_results,
        parameters={
            "alpha": alpha,
            "lfc_threshold": lfc_threshold,
            "cooks_filter": cooks_filter,
            "independent_filter": independent_filter,
            "shrink_lfc": shrink_lfc,
            "design": _design_info(dds).get("design"),
            "n_jobs": workers,
        },
        contrasts=pairs,
        artifacts=artifacts,
    )
    if save_dir is not None:
        result.write_tables(save_dir)
    return result


def run_all_pairwise_de(
    dds: "DeseqDataSet",
    **kwargs,
) -> DEAnalysisResult:
    """Evaluate every pair of condition levels (later level vs earlier level)."""
    levels = list(_design_info(dds)["levels"])
    if len(levels) < 2:
        raise ValueError("Need at least two condition levels to run pairwise comparisons.")
    pairs = [(b, a) for a, b in combinations(levels, 2)]
    return run_pairwise_de(dds, pairs, **kwargs)


def _direction_per_gene(df: pd.DataFrame, gene_col: str) -> pd.Series:
    degs = df[df["regulation"].isin(["up", "down"])]
    grouped = degs.groupby(degs[gene_col].astype(str))["regulation"]
    return grouped.agg(lambda calls: calls.iloc[0] if calls.nunique() == 1 else "mixed")


def common_degs(
    results: Union[DEAnalysisResult, Mapping[str, pd.DataFrame]],
    contrasts: Optional[Sequence[str]] = None,
    *,
    gene_col: str = "gene_name",
) -> pd.DataFrame:
    """
    Genes called DEGs in every selected contrast.

    ``change`` is ``up`` or ``down`` when all contrasts agree and ``mixed`` otherwise.
    """
    tables = results.contrast_results if isinstance(results, DEAnalysisResult) else results
    selected = list(contrasts) if contrasts is not None else list(tables)
    if not selected:
        raise ValueError("No contrasts available for common DEG detection.")
    missing = [key for key in selected if key not in tables]
    if missing:
        raise KeyError(f"Contrasts not found: {missing}. Available contrasts: {sorted(tables)}")

    per_contrast = pd.concat(
        {key: _direction_per_gene(tables[key], gene_col) for key in selected}, axis=1, join="inner"
    )
    if per_contrast.empty:
        return pd.DataFrame({"gene": pd.Series(dtype=str), "change": pd.Series(dtype=str)})
    change = per_contrast.apply(lambda row: row.iloc[0] if row.nunique() == 1 else "mixed", axis=1)
    out = pd.DataFrame({"gene": per_contrast.index.astype(str), "change": change.to_numpy()})
    return out.sort_values("gene").reset_index(drop=True)


def write_common_degs(
    results: Union[DEAnalysisResult, Mapping[str, pd.DataFrame], pd.DataFrame],
    path: Union[str, Path],
    contrasts: Optional[Sequence[str]] = None,
) -> Path:
    """Write the common DEG table as CSV with ``gene`` and ``change`` columns."""
    table = results if isinstance(results, pd.DataFrame) else common_degs(results, contrasts)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.loc[:, ["gene", "change"]].to_csv(path, index=False)
    logger.info("Wrote %d common DEGs to %s", len(table), path)
    return path
