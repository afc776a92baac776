"""High-level orchestration for counts -> surrogate variables -> DE -> pathway analysis."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import matplotlib.pyplot as plt

from ..config import WorkflowConfig
from ..quant import QuantificationResult, import_salmon
from ..sva import SurrogateVariableResult, estimate_surrogate_variables, log_normalize, remove_covariate_effects
from ..utils import save_object
from .base import DEAnalysisResult, PathwayEnrichmentResult, _save_figure
from .differential_expression import (
    common_degs,
    fit_deseq_dataset,
    prepare_deseq_dataset,
    run_pairwise_de,
    write_common_degs,
)
from .pathways import run_pathway_enrichment_for_contrasts
from .plots import plot_sample_pca

logger = logging.getLogger(__name__)

__all__ = ["perform_de_workflow", "perform_salmon_workflow", "default_contrasts"]


def _ensure_directory(path: Optional[Union[str, Path]]) -> Optional[Path]:
    if path is None:
        return None
    out = Path(path)
    out.mkdir(parents=True, exist_ok=True)
    return out


def default_contrasts(levels: Sequence[str], reference_level: Optional[str] = None) -> List[Tuple[str, str]]:
    """Every level against the reference, or every pair of levels when no reference is set."""
    levels = [str(lvl) for lvl in levels]
    if reference_level is not None:
        if reference_level not in levels:
            raise ValueError(f"Reference level '{reference_level}' not among condition levels {levels}.")
        return [(lvl, reference_level) for lvl in levels if lvl != reference_level]
    return [(levels[j], levels[i]) for i in range(len(levels)) for j in range(i + 1, len(levels))]


def _align_samples(counts: pd.DataFrame, metadata: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    counts = counts.copy()
    counts.columns = counts.columns.astype(str)
    missing = [s for s in metadata.index if s not in counts.columns]
    if missing:
        raise KeyError(
            f"Samples {missing} from metadata are not columns of the count matrix. "
            "Counts must be genes x samples; transpose if samples are rows."
        )
    extra = [s for s in counts.columns if s not in metadata.index]
    if extra:
        logger.warning("Ignoring %d count columns without metadata: %s", len(extra), extra)
    return counts.loc[:, list(metadata.index)], metadata


def _save_pca_plots(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    config: WorkflowConfig,
    sv_result: Optional[SurrogateVariableResult],
    plot_dir: Path,
) -> List[Path]:
    log_expr = log_normalize(counts)
    saved = []
    fig, _ = plot_sample_pca(log_expr, metadata, color_col=config.condition_col, title="Sample PCA")
    destination = plot_dir / "pca_samples.png"
    _save_figure(fig, destination, dpi=config.dpi)
    saved.append(destination)
    removable = list(config.covariates) + (sv_result.sv_columns if sv_result is not None else [])
    if removable:
        corrected = remove_covariate_effects(
            log_expr, sv_result.metadata if sv_result is not None else metadata, removable, keep=[config.condition_col]
        )
        fig, _ = plot_sample_pca(
            corrected, metadata, color_col=config.condition_col, title="Sample PCA (covariates removed)"
        )
        destination = plot_dir / "pca_samples_corrected.png"
        _save_figure(fig, destination, dpi=config.dpi)
        saved.append(destination)
    return saved


def perform_de_workflow(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Optional[WorkflowConfig] = None,
    *,
    gene_annotations: Optional[pd.DataFrame] = None,
    gene_sets: Optional[Mapping[str, Mapping[str, Sequence[str]]]] = None,
    genes_of_interest: Optional[Sequence[str]] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """
    End-to-end pipeline: surrogate variables, DESeq2 fit, contrasts, DEG calls, enrichment.

    Parameters
    ----------
    counts:
        Genes x samples integer count matrix.
    metadata:
        Sample metadata indexed by sample id, with ``config.condition_col``.
    config:
        Run configuration; keyword ``overrides`` replace individual fields.
    gene_annotations:
        Gene id -> symbol table. Genes without a symbol are dropped.
    gene_sets:
        Preloaded ``{library: {pathway: genes}}``; otherwise ``config.pathway_libraries``
        are read from disk.
    """
    config = dataclasses.replace(config or WorkflowConfig(), **overrides).validate()
    counts, metadata = _align_samples(counts, metadata)
    if config.condition_col not in metadata.columns:
        raise KeyError(f"Condition column '{config.condition_col}' not found in metadata.")

    base_output = _ensure_directory(config.output_dir)
    plot_dir = _ensure_directory(base_output / "plots") if base_output and config.make_plots else None
    table_dir = _ensure_directory(base_output / "tables") if base_output else None
    object_dir = _ensure_directory(base_output / "objects") if base_output and config.save_objects else None
    if base_output is not None:
        config.save(base_output / "config.json")

    logger.info("Starting DE workflow on %d genes x %d samples", counts.shape[0], counts.shape[1])

    sv_result: Optional[SurrogateVariableResult] = None
    design_metadata = metadata
    covariates = list(config.covariates)
    if config.n_sv != 0:
        sv_result = estimate_surrogate_variables(
            counts,
            metadata,
            config.condition_col,
            covariates=config.covariates,
            n_sv=config.n_sv,
            max_sv=config.max_sv,
            n_permutations=config.sv_permutations,
            seed=config.seed,
        )
        design_metadata = sv_result.metadata
        covariates += sv_result.sv_columns
        if table_dir is not None:
            design_metadata.to_csv(table_dir / "sample_metadata_with_sv.csv")

    dds = prepare_deseq_dataset(
        counts,
        design_metadata,
        condition_col=config.condition_col,
        covariates=covariates,
        reference_level=config.reference_level,
        min_counts=config.min_counts,
        min_samples=config.min_samples,
        n_cpus=config.n_jobs,
    )
    dds = fit_deseq_dataset(dds)

    contrasts = list(config.contrasts) or default_contrasts(
        dds.uns["bulk_de"]["levels"], config.reference_level
    )
    de_result = run_pairwise_de(
        dds,
        contrasts,
        alpha=config.alpha,
        lfc_threshold=config.lfc_threshold,
        gene_annotations=gene_annotations,
        cooks_filter=config.cooks_filter,
        independent_filter=config.independent_filter,
        shrink_lfc=config.shrink_lfc,
        save_dir=table_dir,
        n_jobs=config.n_jobs,
    )
    shared = common_degs(de_result)
    if table_dir is not None:
        write_common_degs(shared, table_dir / "common_degs.csv")
        de_result.summary().to_csv(table_dir / "deg_summary.csv", index=False)

    pathway_result: Optional[PathwayEnrichmentResult] = None
    libraries = gene_sets if gene_sets else config.pathway_libraries
    if libraries:
        pathway_result = run_pathway_enrichment_for_contrasts(
            de_result.contrast_results,
            libraries,
            base_dir=config.pathway_base_dir,
            method=config.enrichment_method,
            alpha=config.pathway_alpha,
            min_size=config.gsea_min_size,
            max_size=config.gsea_max_size,
            permutation_num=config.gsea_permutations,
            seed=config.seed,
            n_jobs=config.n_jobs,
        )
        if table_dir is not None:
            pathway_result.write_tables(table_dir)

    if plot_dir is not None:
        log = logger.debug
        de_result.save_volcano_plots(
            output_dir=plot_dir / "volcano", genes_of_interest=genes_of_interest, dpi=config.dpi, logger=log
        )
        de_result.save_ma_plots(output_dir=plot_dir / "ma", dpi=config.dpi, logger=log)
        _save_pca_plots(counts, metadata, config, sv_result, plot_dir)
        if pathway_result is not None:
            pathway_result.save_pathway_barplots(output_dir=plot_dir / "pathways", dpi=config.dpi, logger=log)
            if config.enrichment_method in {"prerank", "both"}:
                for contrast in pathway_result.available_contrasts:
                    pathway_result.save_pathway_scurves(
                        contrast, output_dir=plot_dir / "pathways", dpi=config.dpi, logger=log
                    )
        plt.close("all")

    if object_dir is not None:
        save_object(dds, object_dir / "dds.pkl")
        save_object(de_result, object_dir / "de_result.pkl")
        if sv_result is not None:
            save_object(sv_result, object_dir / "surrogate_variables.pkl")
        if pathway_result is not None:
            save_object(pathway_result, object_dir / "pathways.pkl")

    logger.info("DE workflow finished: %d contrasts, %d common DEGs", len(de_result.contrast_results), len(shared))
    return {
        "metadata": design_metadata,
        "surrogate_variables": sv_result,
        "dds": dds,
        "de": de_result,
        "common_degs": shared,
        "pathways": pathway_result,
        "config": config,
    }


def perform_salmon_workflow(
    salmon_source: Union[str, Path, Mapping[str, Union[str, Path]]],
    tx2gene: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Optional[WorkflowConfig] = None,
    *,
    counts_from_abundance: str = "no",
    ignore_tx_version: bool = False,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Import Salmon quantifications for the metadata samples, then run :func:`perform_de_workflow`."""
    quant: QuantificationResult = import_salmon(
        salmon_source,
        tx2gene,
        samples=[str(s) for s in metadata.index],
        counts_from_abundance=counts_from_abundance,
        ignore_tx_version=ignore_tx_version,
    )
    outputs = perform_de_workflow(quant.counts, metadata, config, **kwargs)
    outputs["quantification"] = quant
    return outputs
