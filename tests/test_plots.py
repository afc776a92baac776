import numpy as np
import pandas as pd
import pytest

import matplotlib.pyplot as plt

from bulk_de.de.base import DEAnalysisResult
from bulk_de.de.plots import (
    plot_de_volcano,
    plot_enrichment_bar,
    plot_ma,
    plot_sample_pca,
    volcano_plot,
)


def _make_mock_de_df() -> pd.DataFrame:
    genes = [f"GENE{i}" for i in range(1, 21)]
    log_fc = np.linspace(-3.0, 3.0, num=len(genes))
    padj = np.linspace(0.001, 0.2, num=len(genes))
    direction = np.where(log_fc > 1, "up", np.where(log_fc < -1, "down", "unchanged"))
    regulation = np.where(padj < 0.05, direction, "unchanged")
    return pd.DataFrame(
        {
            "gene_name": genes,
            "baseMean": np.linspace(5.0, 500.0, num=len(genes)),
            "log2FoldChange": log_fc,
            "padj": padj,
            "regulation": regulation,
        }
    )


def test_plot_de_volcano_labels_regulation_groups():
    fig, ax = plot_de_volcano(_make_mock_de_df(), genes_of_interest=["GENE1"], lfc_threshold=1.0)
    labels = [text.get_text() for text in ax.get_legend().get_texts()]
    assert any(label.startswith("down") for label in labels)
    assert any(label.startswith("unchanged") for label in labels)
    assert "GENE1" in [text.get_text() for text in ax.texts]
    plt.close(fig)


def test_plot_de_volcano_without_regulation_falls_back():
    df = _make_mock_de_df().drop(columns="regulation")
    fig, ax = plot_de_volcano(df)
    assert ax.get_title() == "Differential Expression Volcano"
    plt.close(fig)


def test_volcano_plot_requires_columns():
    with pytest.raises(KeyError):
        volcano_plot(pd.DataFrame({"log2FoldChange": [1.0]}))


def test_plot_ma_and_bar():
    fig, ax = plot_ma(_make_mock_de_df(), title="MA")
    assert ax.get_xscale() == "log"
    plt.close(fig)

    enrich = pd.DataFrame({"pathway": ["P1", "P2"], "padj": [0.01, 0.5]})
    fig, ax = plot_enrichment_bar(enrich, alpha=0.05)
    assert len(ax.patches) == 1
    plt.close(fig)

    fig, ax = plot_enrichment_bar(enrich, alpha=1e-6)
    assert ax.texts[0].get_text() == "No enriched pathways"
    plt.close(fig)


def test_plot_sample_pca():
    rng = np.random.default_rng(0)
    samples = [f"s{i}" for i in range(6)]
    log_expr = pd.DataFrame(rng.normal(size=(50, 6)), columns=samples)
    metadata = pd.DataFrame({"condition": ["a"] * 3 + ["b"] * 3}, index=samples)
    fig, ax = plot_sample_pca(log_expr, metadata, n_top_genes=20)
    assert ax.get_xlabel().startswith("PC1")
    plt.close(fig)
    with pytest.raises(KeyError):
        plot_sample_pca(log_expr, metadata, color_col="batch")


def test_de_save_plots_creates_outputs(tmp_path):
    contrast_names = ["t1_vs_ctrl", "t2_vs_ctrl"]
    de_result = DEAnalysisResult(
        dds=None,
        contrast_results={name: _make_mock_de_df() for name in contrast_names},
        parameters={"alpha": 0.05, "lfc_threshold": 1.0},
    )
    logs = []
    saved = de_result.save_volcano_plots(
        contrasts=contrast_names,
        output_dir=tmp_path / "volcano_de",
        genes_of_interest=["GENE1"],
        logger=logs.append,
        dpi=100,
    )
    saved += de_result.save_ma_plots(output_dir=tmp_path / "ma", logger=logs.append, dpi=100)
    assert len(saved) == 4
    for path in saved:
        assert path.exists()
    assert all("Saved plot" in msg for msg in logs)
