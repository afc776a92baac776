"""Differential expression and pathway analysis utilities."""

from .base import (
    DEAnalysisResult,
    PathwayEnrichmentResult,
)
from .pathways import (
    load_multiple_pathway_libraries,
    load_pathway_library,
    rank_genes,
    read_gmt,
    resolve_pathway_filename,
    run_ora,
    run_prerank,
    run_pathway_enrichment,
    run_pathway_enrichment_for_contrasts,
)
from .plots import (
    plot_de_volcano,
    plot_enrichment_bar,
    plot_ma,
    plot_sample_pca,
    pathway_scurve_plot,
)
from .workflow import default_contrasts, perform_de_workflow, perform_salmon_workflow
from .differential_expression import (
    classify_degs,
    common_degs,
    contrast_key,
    prepare_deseq_dataset,
    fit_deseq_dataset,
    run_contrast,
    run_pairwise_de,
    run_all_pairwise_de,
    significant_genes,
    write_common_degs,
)

__all__ = [
    "DEAnalysisResult",
    "PathwayEnrichmentResult",
    "load_multiple_pathway_libraries",
    "load_pathway_library",
    "rank_genes",
    "read_gmt",
    "resolve_pathway_filename",
    "run_ora",
    "run_prerank",
    "run_pathway_enrichment",
    "run_pathway_enrichment_for_contrasts",
    "plot_de_volcano",
    "plot_enrichment_bar",
    "plot_ma",
    "plot_sample_pca",
    "pathway_scurve_plot",
    "default_contrasts",
    "perform_de_workflow",
    "perform_salmon_workflow",
    "classify_degs",
    "common_degs",
    "contrast_key",
    "prepare_deseq_dataset",
    "fit_deseq_dataset",
    "run_contrast",
    "run_pairwise_de",
    "run_all_pairwise_de",
    "significant_genes",
    "write_common_degs",
]
