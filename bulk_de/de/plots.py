"""Plotting utilities for differential expression and pathway analysis."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.spatial.distance import squareform
from scipy.cluster.hierarchy import linkage, leaves_list
from sklearn.decomposition import PCA
from sklearn.metrics import pairwise_distances

__all__ = [
    "REGULATION_COLORS",
    "volcano_plot",
    "volcano_plot_with_labels",
    "plot_de_volcano",
    "plot_ma",
    "plot_sample_pca",
    "plot_enrichment_bar",
    "pathway_scurve_plot",
    "plot_pathway_enrichment_heatmap",
]

REGULATION_COLORS = {"up": "#d62728", "down": "#1f77b4", "unchanged": "lightgrey"}


def _prepare_dataframe(df: pd.DataFrame, required: Iterable[str]) -> pd.DataFrame:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise KeyError(f"Dataframe missing required columns: {missing}")
    return df.copy()


def _new_axes(ax: Optional[plt.Axes], figsize: Tuple[float, float]) -> Tuple[plt.Figure, plt.Axes, bool]:
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        return fig, ax, True
    return ax.figure, ax, False


def volcano_plot(
    df: pd.DataFrame,
    *,
    alpha: float = 0.05,
    x_col: str = "log2FoldChange",
    p_col: str = "padj",
    x_lab: str = "log2 Fold Change",
    y_lab: str = "-log10(padj)",
    title: str = "Volcano Plot",
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 10.0,
    epsilon: float = 1e-300,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Create a volcano plot from a differential expression dataframe.
    """
    plot_df = _prepare_dataframe(df, [x_col, p_col])
    plot_df["minusLog10Padj"] = -np.log10(plot_df[p_col] + epsilon)
    plot_df["significant"] = plot_df[p_col] < alpha

    fig, ax, created_fig = _new_axes(ax, figsize)
    ax.scatter(
        plot_df.loc[~plot_df["significant"], x_col],
        plot_df.loc[~plot_df["significant"], "minusLog10Padj"],
        c="black",
        s=point_size,
        label="Not significant",
    )
    ax.scatter(
        plot_df.loc[plot_df["significant"], x_col],
        plot_df.loc[plot_df["significant"], "minusLog10Padj"],
        c="red",
        s=point_size,
        label="Significant",
    )
    threshold = -np.log10(alpha)
    ax.axhline(
        threshold,
        color="grey",
        linestyle="dashed",
        linewidth=1,
        label=f"p-adj = {alpha} (-log10: {threshold:.2f})",
    )
    ax.set_xlabel(x_lab)
    ax.set_ylabel(y_lab)
    ax.set_title(title)
    ax.legend()

    if created_fig:
        fig.tight_layout()
    return fig, ax


def _annotate_points(
    ax: plt.Axes,
    plot_df: pd.DataFrame,
    labels: Iterable[str],
    *,
    var_name_col: str,
    x_col: str,
    y_values: pd.Series,
    point_size: float,
    offset: Tuple[float, float],
    highlight_only: bool,
) -> None:
    for label in labels:
        rows = plot_df[plot_df[var_name_col] == label]
        for idx, row in rows.iterrows():
            x_val = row[x_col]
            y_val = y_values.loc[idx]
            if highlight_only:
                ax.scatter(x_val, y_val, c="blue", s=point_size * 1.5, zorder=3)
            else:
                ax.annotate(
                    label,
                    xy=(x_val, y_val),
                    xytext=offset,
                    textcoords="offset points",
                    ha="left",
                    va="bottom",
                    arrowprops=dict(arrowstyle="-", color="blue", lw=1.5, alpha=1.0),
                    bbox=dict(boxstyle="round,pad=0.1", fc="white", ec="none", alpha=0.5),
                )


def volcano_plot_with_labels(
    df: pd.DataFrame,
    genes_of_interest: Iterable[str],
    *,
    var_name_col: str = "gene_name",
    alpha: float = 0.05,
    x_col: str = "log2FoldChange",
    p_col: str = "padj",
    x_lab: str = "log2 Fold Change",
    y_lab: str = "-log10(padj)",
    title: str = "Volcano Plot",
    highlight_only: bool = False,
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 10.0,
    offset: Tuple[float, float] = (5, 5),
    epsilon: float = 1e-300,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Create a volcano plot and annotate selected genes of interest.
    """
    plot_df = _prepare_dataframe(df, [var_name_col, x_col, p_col])
    fig, ax = volcano_plot(
        plot_df,
        alpha=alpha,
        x_col=x_col,
        p_col=p_col,
        x_lab=x_lab,
        y_lab=y_lab,
        title=title,
        figsize=figsize,
        point_size=point_size,
        epsilon=epsilon,
        ax=ax,
    )
    _annotate_points(
        ax,
        plot_df,
        genes_of_interest,
        var_name_col=var_name_col,
        x_col=x_col,
        y_values=-np.log10(plot_df[p_col] + epsilon),
        point_size=point_size,
        offset=offset,
        highlight_only=highlight_only,
    )
    fig.tight_layout()
    return fig, ax


def plot_de_volcano(
    df: pd.DataFrame,
    genes_of_interest: Optional[Iterable[str]] = None,
    *,
    alpha: float = 0.05,
    lfc_threshold: Optional[float] = None,
    x_col: str = "log2FoldChange",
    p_col: str = "padj",
    regulation_col: str = "regulation",
    title: str = "Differential Expression Volcano",
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 10.0,
    offset: Tuple[float, float] = (5, 5),
    highlight_only: bool = False,
    epsilon: float = 1e-300,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Volcano plot for a classified contrast table, coloured by regulation call.

    Falls back to the plain significance colouring of :func:`volcano_plot`
    when the table has no ``regulation`` column.
    """
    go_list: List[str] = list(genes_of_interest) if genes_of_interest is not None else []
    if regulation_col not in df.columns:
        if go_list:
            return volcano_plot_with_labels(
                df,
                go_list,
                alpha=alpha,
                x_col=x_col,
                p_col=p_col,
                title=title,
                figsize=figsize,
                point_size=point_size,
                offset=offset,
                highlight_only=highlight_only,
                ax=ax,
            )
        return volcano_plot(
            df, alpha=alpha, x_col=x_col, p_col=p_col, title=title, figsize=figsize, point_size=point_size, ax=ax
        )

    plot_df = _prepare_dataframe(df, [x_col, p_col, regulation_col])
    plot_df = plot_df.dropna(subset=[x_col, p_col])
    y_values = -np.log10(plot_df[p_col] + epsilon)

    fig, ax, created_fig = _new_axes(ax, figsize)
    for call in ("unchanged", "down", "up"):
        mask = plot_df[regulation_col] == call
        ax.scatter(
            plot_df.loc[mask, x_col],
            y_values[mask],
            c=REGULATION_COLORS[call],
            s=point_size,
            label=f"{call} ({int(mask.sum())})",
        )
    ax.axhline(-np.log10(alpha), color="grey", linestyle="dashed", linewidth=1)
    if lfc_threshold:
        for x in (-lfc_threshold, lfc_threshold):
            ax.axvline(x, color="grey", linestyle="dotted", linewidth=1)
    if go_list and "gene_name" in plot_df.columns:
        _annotate_points(
            ax,
            plot_df,
            go_list,
            var_name_col="gene_name",
            x_col=x_col,
            y_values=y_values,
            point_size=point_size,
            offset=offset,
            highlight_only=highlight_only,
        )
    ax.set_xlabel("log2 Fold Change")
    ax.set_ylabel(f"-log10({p_col})")
    ax.set_title(title)
    ax.legend()
    if created_fig:
        fig.tight_layout()
    return fig, ax


def plot_ma(
    df: pd.DataFrame,
    *,
    mean_col: str = "baseMean",
    x_col: str = "log2FoldChange",
    regulation_col: str = "regulation",
    title: str = "MA Plot",
    figsize: Tuple[float, float] = (8, 6),
    point_size: float = 8.0,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """Mean expression versus log2 fold change, coloured by regulation call."""
    plot_df = _prepare_dataframe(df, [mean_col, x_col])
    plot_df = plot_df[plot_df[mean_col] > 0].dropna(subset=[x_col])
    fig, ax, created_fig = _new_axes(ax, figsize)
    if regulation_col in plot_df.columns:
        for call in ("unchanged", "down", "up"):
            mask = plot_df[regulation_col] == call
            ax.scatter(
                plot_df.loc[mask, mean_col],
                plot_df.loc[mask, x_col],
                c=REGULATION_COLORS[call],
                s=point_size,
                label=call,
            )
        ax.legend()
    else:
        ax.scatter(plot_df[mean_col], plot_df[x_col], c="black", s=point_size)
    ax.set_xscale("log")
    ax.axhline(0, color="black", linewidth=0.8)
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel("log2 Fold Change")
    ax.set_title(title)
    if created_fig:
        fig.tight_layout()
    return fig, ax


def plot_sample_pca(
    log_expr: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    color_col: str = "condition",
    n_top_genes: Optional[int] = 500,
    title: str = "Sample PCA",
    figsize: Tuple[float, float] = (6, 5),
    point_size: float = 60.0,
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    PCA of samples from a genes x samples log-expression matrix.

    Only the ``n_top_genes`` most variable genes are used, matching DESeq2's plotPCA.
    """
    if color_col not in metadata.columns:
        raise KeyError(f"Column '{color_col}' not found in metadata.")
    expr = log_expr
    if n_top_genes is not None and expr.shape[0] > n_top_genes:
        top = expr.var(axis=1).sort_values(ascending=False).index[:n_top_genes]
        expr = expr.loc[top]
    if expr.shape[1] < 2:
        raise ValueError("Need at least two samples for PCA.")
    pca = PCA(n_components=2)
    coords = pca.fit_transform(expr.T.to_numpy())
    scores = pd.DataFrame(coords, index=expr.columns, columns=["PC1", "PC2"])
    scores[color_col] = metadata.loc[expr.columns, color_col].astype(str).to_numpy()

    fig, ax, created_fig = _new_axes(ax, figsize)
    sns.scatterplot(data=scores, x="PC1", y="PC2", hue=color_col, s=point_size, ax=ax)
    var = pca.explained_variance_ratio_ * 100
    ax.set_xlabel(f"PC1 ({var[0]:.1f}%)")
    ax.set_ylabel(f"PC2 ({var[1]:.1f}%)")
    ax.set_title(title)
    if created_fig:
        fig.tight_layout()
    return fig, ax


def plot_enrichment_bar(
    df: pd.DataFrame,
    *,
    p_col: str = "padj",
    label_col: str = "pathway",
    top_n: int = 20,
    alpha: Optional[float] = None,
    title: str = "Top enriched pathways",
    figsize: Tuple[float, float] = (8, 6),
    color: str = "#d62728",
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """Horizontal bar chart of -log10 adjusted p-values for the top pathways."""
    plot_df = _prepare_dataframe(df, [p_col, label_col]).dropna(subset=[p_col])
    if alpha is not None:
        plot_df = plot_df[plot_df[p_col] < alpha]
    plot_df = plot_df.sort_values(p_col).head(top_n).iloc[::-1]
    fig, ax, created_fig = _new_axes(ax, figsize)
    if plot_df.empty:
        ax.text(0.5, 0.5, "No enriched pathways", ha="center", va="center", transform=ax.transAxes)
    else:
        ax.barh(plot_df[label_col].astype(str), -np.log10(plot_df[p_col] + 1e-300), color=color)
    ax.set_xlabel(f"-log10({p_col})")
    ax.set_title(title)
    if created_fig:
        fig.tight_layout()
    return fig, ax


def pathway_scurve_plot(
    df: pd.DataFrame,
    *,
    alpha: float = 0.05,
    title: str = "Pathway S-curve Plot",
    figsize: Tuple[float, float] = (10, 6),
    point_size: float = 20.0,
    highlight_pathways: Optional[Iterable[str]] = None,
    offset: Tuple[float, float] = (5, 5),
    highlight_only: bool = False,
    enrichment_col: str = "nes",
    p_col: str = "padj",
    ax: Optional[plt.Axes] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Plot ranked enrichment scores (e.g. GSEA NES), highlighting significant pathways.
    """
    plot_df = _prepare_dataframe(df, {"pathway", enrichment_col, p_col})
    plot_df = plot_df.sort_values(by=enrichment_col, ascending=True).reset_index(drop=True)
    plot_df["rank"] = np.arange(1, len(plot_df) + 1)
    plot_df["significant"] = plot_df[p_col] < alpha

    fig, ax, created_fig = _new_axes(ax, figsize)
    ax.plot(plot_df["rank"], plot_df[enrichment_col], color="grey", alpha=0.7, zorder=1)
    nonsig = plot_df[~plot_df["significant"]]
    ax.scatter(nonsig["rank"], nonsig[enrichment_col], c="black", s=point_size, label="Not significant", zorder=2)
    sig = plot_df[plot_df["significant"]]
    ax.scatter(sig["rank"], sig[enrichment_col], c="red", s=point_size, label="Significant", zorder=3)

    if highlight_pathways is not None:
        for pathway in highlight_pathways:
            subset = plot_df[plot_df["pathway"] == pathway]
            for _, row in subset.iterrows():
                x_val = row["rank"]
                y_val = row[enrichment_col]
                if highlight_only:
                    ax.scatter(x_val, y_val, color="blue", s=point_size * 1.5, zorder=4)
                else:
                    horiz_offset = (-abs(offset[0]), offset[1]) if y_val >= 0 else (abs(offset[0]), offset[1])
                    ha = "right" if y_val >= 0 else "left"
                    ax.annotate(
                        pathway,
                        xy=(x_val, y_val),
                        xytext=horiz_offset,
                        textcoords="offset points",
                        ha=ha,
                        va="bottom",
                        arrowprops=dict(arrowstyle="-", color="blue", lw=1.5),
                        bbox=dict(boxstyle="round,pad=0.1", fc="white", ec="none", alpha=0.5),
                    )

    ax.set_xlabel("Rank Order")
    ax.set_ylabel(enrichment_col)
    ax.set_title(title)
    ax.legend()
    if created_fig:
        fig.tight_layout()
    return fig, ax


def _zscore(values: pd.DataFrame, axis: int) -> pd.DataFrame:
    """Standardise along ``axis`` (0: per column, 1: per row); constant vectors become NaN."""
    mean = values.mean(axis=axis, skipna=True)
    std = values.std(axis=axis, ddof=0, skipna=True)
    std = std.where(~np.isclose(std.fillna(0.0), 0.0))
    if axis == 0:
        return (values - mean) / std
    return values.sub(mean, axis=0).div(std, axis=0)


def _leaf_order(values: pd.DataFrame, metric: str) -> List[int]:
    """Average-linkage leaf order of the rows of ``values``."""
    if values.shape[0] < 2:
        return list(range(values.shape[0]))
    dist = pairwise_distances(np.nan_to_num(values.to_numpy(), nan=0.0), metric=metric)
    condensed = squareform(np.nan_to_num(dist, nan=0.0), checks=False)
    return leaves_list(linkage(condensed, method="average")).tolist()


def plot_pathway_enrichment_heatmap(
    matrix: pd.DataFrame,
    *,
    original_values: Optional[pd.DataFrame] = None,
    transpose: bool = False,
    zscore_axis: str = "columns",
    zscore: bool = True,
    clustering_metric: str = "cosine",
    figsize: Tuple[float, float] = (10, 6),
    cmap: str = "coolwarm",
    annot: bool = False,
    annot_fmt: str = ".2f",
    logger: Optional[Callable[[str], None]] = None,
    out_path: Optional[Union[str, Path]] = None,
    cbar_label: Optional[str] = None,
) -> Tuple[plt.Figure, plt.Axes]:
    """
    Plot a clustered heatmap of pathway enrichment statistics.

    Parameters
    ----------
    matrix:
        Contrasts (rows) x pathways (columns).
    original_values:
        Same-shape frame whose raw values are printed when ``annot`` is True.
    zscore_axis:
        ``"columns"`` standardises each pathway, ``"rows"`` each contrast.
    clustering_metric:
        Distance for average-linkage ordering of both axes.
    out_path:
        Optional path to save the figure.
    """
    if matrix.empty:
        raise ValueError("Heatmap matrix is empty.")
    if original_values is not None and original_values.shape != matrix.shape:
        raise ValueError("original_values must have the same shape as matrix.")

    raw = original_values if original_values is not None else matrix
    axis = 0 if zscore_axis.lower().startswith("col") else 1
    values = _zscore(matrix, axis) if zscore else matrix.copy()

    rows = _leaf_order(values, clustering_metric)
    cols = _leaf_order(values.T, clustering_metric)
    values = values.iloc[rows, cols]
    raw = raw.iloc[rows, cols]
    if transpose:
        values, raw = values.T, raw.T

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        values,
        ax=ax,
        cmap=cmap,
        center=0.0,
        mask=values.isnull(),
        annot=raw.to_numpy() if annot else False,
        fmt=annot_fmt,
        annot_kws={"fontsize": 8} if annot else None,
        cbar_kws={"label": cbar_label or ("z-scored statistic" if zscore else "statistic")},
    )
    row_name, col_name = ("Pathway", "Contrast") if transpose else ("Contrast", "Pathway")
    ax.set_xlabel(col_name)
    ax.set_ylabel(row_name)
    ax.set_title("Pathway enrichment heatmap")
    plt.setp(ax.get_xticklabels(), rotation=45, ha="right")
    plt.setp(ax.get_yticklabels(), rotation=0)

    if out_path is not None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path, dpi=300, bbox_inches="tight")
        if logger:
            logger(f"Saved heatmap to {out_path}")
    return fig, ax
