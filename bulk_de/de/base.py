"""Shared data structures for differential expression workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple, Union

import re

import pandas as pd
from matplotlib import pyplot as plt

from .plots import (
    pathway_scurve_plot,
    plot_de_volcano,
    plot_enrichment_bar,
    plot_ma,
    plot_pathway_enrichment_heatmap,
)

REGULATION_LEVELS = ("up", "down", "unchanged")


def _sanitize_fragment(fragment: str) -> str:
    clean = re.sub(r"[^A-Za-z0-9._-]+", "_", str(fragment).strip())
    clean = re.sub(r"_+", "_", clean).strip("_")
    return clean or "contrast"


def _ensure_output_dir(output_dir: Union[str, Path]) -> Path:
    path = Path(output_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _save_figure(
    fig: plt.Figure,
    destination: Path,
    *,
    dpi: int,
    logger: Optional[Callable[[str], None]] = None,
    message: Optional[str] = None,
) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(destination, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    if logger:
        logger(message or f"Saved plot to {destination}")


def _get_keyed(mapping: Mapping[str, pd.DataFrame], key: str, copy: bool) -> pd.DataFrame:
    try:
        df = mapping[key]
    except KeyError as exc:
        available = ", ".join(sorted(mapping))
        raise KeyError(f"Contrast '{key}' not found. Available contrasts: {available or '∅'}.") from exc
    return df.copy() if copy else df


@dataclass
class DEAnalysisResult:
    """Structured output for differential expression runs."""

    dds: Any
    contrast_results: Mapping[str, pd.DataFrame]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    contrasts: Optional[Sequence[Tuple[str, str]]] = None
    artifacts: Optional[MutableMapping[str, Any]] = None

    @property
    def available_contrasts(self) -> List[str]:
        """List of valid contrast identifiers."""
        return list(self.contrast_results.keys())

    def get_contrast_df(self, key: str, *, copy: bool = False) -> pd.DataFrame:
        """
        Retrieve the differential expression dataframe for a contrast.

        Parameters
        ----------
        key:
            Contrast identifier (``"{numerator}_vs_{denominator}"``).
        copy:
            When True, return a copy so cached results stay untouched.
        """
        return _get_keyed(self.contrast_results, key, copy)

    def degs(self, key: str, direction: Optional[str] = None) -> pd.DataFrame:
        """Rows of a contrast called ``up``/``down`` (both when ``direction`` is None)."""
        df = self.get_contrast_df(key)
        if "regulation" not in df.columns:
            raise KeyError(f"Contrast '{key}' has not been classified; run classify_degs first.")
        if direction is None:
            return df[df["regulation"] != "unchanged"].copy()
        if direction not in ("up", "down"):
            raise ValueError("direction must be 'up', 'down' or None")
        return df[df["regulation"] == direction].copy()

    def summary(self) -> pd.DataFrame:
        """Count of up / down / unchanged genes per contrast."""
        rows = []
        for key, df in self.contrast_results.items():
            counts = df["regulation"].value_counts() if "regulation" in df.columns else pd.Series(dtype=int)
            row: Dict[str, Any] = {"contrast": key, "n_genes": len(df)}
            for level in REGULATION_LEVELS:
                row[level] = int(counts.get(level, 0))
            rows.append(row)
        return pd.DataFrame(rows, columns=["contrast", "n_genes", *REGULATION_LEVELS])

    def write_tables(self, output_dir: Union[str, Path], *, prefix: str = "de") -> List[Path]:
        out_dir = _ensure_output_dir(output_dir)
        written = []
        for key, df in self.contrast_results.items():
            destination = out_dir / f"{prefix}_{_sanitize_fragment(key)}.csv"
            df.to_csv(destination)
            written.append(destination)
        return written

    def save_volcano_plots(
        self,
        *,
        contrasts: Optional[Sequence[str]] = None,
        output_dir: Union[str, Path],
        file_prefix: Optional[str] = None,
        genes_of_interest: Optional[Sequence[str]] = None,
        alpha: Optional[float] = None,
        lfc_threshold: Optional[float] = None,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (8, 6),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """
        Save volcano plots for one or more contrasts using :func:`plot_de_volcano`.
        """
        selected = list(contrasts) if contrasts is not None else self.available_contrasts
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or "de_volcano"
        alpha = alpha if alpha is not None else self.parameters.get("alpha", 0.05)
        if lfc_threshold is None:
            lfc_threshold = self.parameters.get("lfc_threshold")

        saved: List[Path] = []
        for contrast in selected:
            df = self.get_contrast_df(contrast, copy=True)
            fig, _ = plot_de_volcano(
                df,
                genes_of_interest=genes_of_interest,
                alpha=alpha,
                lfc_threshold=lfc_threshold,
                title=contrast,
                figsize=fig_size,
            )
            destination = out_dir / f"{prefix}_{_sanitize_fragment(contrast)}.png"
            _save_figure(fig, destination, dpi=dpi, logger=logger)
            saved.append(destination)
        return saved

    def save_ma_plots(
        self,
        *,
        contrasts: Optional[Sequence[str]] = None,
        output_dir: Union[str, Path],
        file_prefix: Optional[str] = None,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (8, 6),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        selected = list(contrasts) if contrasts is not None else self.available_contrasts
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or "MA_plot"
        saved: List[Path] = []
        for contrast in selected:
            fig, _ = plot_ma(self.get_contrast_df(contrast, copy=True), title=contrast, figsize=fig_size)
            destination = out_dir / f"{prefix}_{_sanitize_fragment(contrast)}.png"
            _save_figure(fig, destination, dpi=dpi, logger=logger)
            saved.append(destination)
        return saved


@dataclass
class PathwayEnrichmentResult:
    """Container for pathway enrichment outputs, one long table per contrast."""

    per_contrast: Mapping[str, pd.DataFrame]
    libraries: Sequence[str]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    concatenated: Optional[pd.DataFrame] = None

    def tidy(self) -> pd.DataFrame:
        """Return a concatenated long-form DataFrame (compute if needed)."""
        if self.concatenated is not None:
            return self.concatenated
        frames = []
        for contrast, df in self.per_contrast.items():
            temp = df.copy()
            temp.insert(0, "contrast", contrast)
            frames.append(temp)
        if frames:
            self.concatenated = pd.concat(frames, ignore_index=True)
        else:
            self.concatenated = pd.DataFrame()
        return self.concatenated

    @property
    def available_contrasts(self) -> List[str]:
        """List of contrasts with enrichment tables."""
        return list(self.per_contrast.keys())

    def get_contrast_df(self, key: str, *, copy: bool = False) -> pd.DataFrame:
        return _get_keyed(self.per_contrast, key, copy)

    def select(
        self,
        key: str,
        *,
        method: Optional[str] = None,
        direction: Optional[str] = None,
        library: Optional[str] = None,
    ) -> pd.DataFrame:
        """Filter a contrast table by enrichment method, gene-list direction and library."""
        df = self.get_contrast_df(key, copy=True)
        for col, value in (("method", method), ("direction", direction), ("library", library)):
            if value is not None and col in df.columns:
                df = df[df[col] == value]
        return df

    def significant(self, key: str, *, alpha: Optional[float] = None, **filters: Optional[str]) -> pd.DataFrame:
        alpha = alpha if alpha is not None else self.parameters.get("alpha", 0.05)
        df = self.select(key, **filters)
        return df[df["padj"] < alpha].sort_values("padj")

    def write_tables(self, output_dir: Union[str, Path], *, prefix: str = "enrichment") -> List[Path]:
        out_dir = _ensure_output_dir(output_dir)
        written = []
        for key, df in self.per_contrast.items():
            destination = out_dir / f"{prefix}_{_sanitize_fragment(key)}.csv"
            df.to_csv(destination, index=False)
            written.append(destination)
        return written

    def save_pathway_barplots(
        self,
        *,
        contrasts: Optional[Sequence[str]] = None,
        output_dir: Union[str, Path],
        file_prefix: Optional[str] = None,
        top_n: int = 20,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (8, 6),
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """
        Save one bar chart per contrast, method and gene-list direction.
        """
        selected = list(contrasts) if contrasts is not None else self.available_contrasts
        out_dir = _ensure_output_dir(output_dir)
        prefix = file_prefix or "pathway_bar"
        saved: List[Path] = []
        for contrast in selected:
            df = self.get_contrast_df(contrast, copy=True)
            if df.empty:
                if logger:
                    logger(f"No enrichment results for '{contrast}'; skipping bar plot.")
                continue
            group_cols = [c for c in ("method", "direction") if c in df.columns]
            groups = df.groupby(group_cols, dropna=False) if group_cols else [((), df)]
            for group_key, sub in groups:
                parts = group_key if isinstance(group_key, tuple) else (group_key,)
                suffix = "_".join(_sanitize_fragment(p) for p in parts if isinstance(p, str))
                fig, _ = plot_enrichment_bar(
                    sub,
                    top_n=top_n,
                    title=f"{contrast} {' '.join(p for p in parts if isinstance(p, str))}".strip(),
                    figsize=fig_size,
                )
                name = "_".join(x for x in (prefix, _sanitize_fragment(contrast), suffix) if x)
                destination = out_dir / f"{name}.png"
                _save_figure(
                    fig,
                    destination,
                    dpi=dpi,
                    logger=logger,
                    message=f"Saved pathway bar plot to {destination}",
                )
                saved.append(destination)
        return saved

    def save_pathway_scurves(
        self,
        contrast: str,
        pathways: Optional[Sequence[str]] = None,
        *,
        output_dir: Union[str, Path],
        file_prefix: Optional[str] = None,
        dpi: int = 300,
        fig_size: Tuple[float, float] = (10, 6),
        alpha: float = 0.05,
        highlight_only: bool = False,
        logger: Optional[Callable[[str], None]] = None,
    ) -> List[Path]:
        """
        Save a GSEA NES S-curve for a contrast, annotating the requested pathways.
        """
        out_dir = _ensure_output_dir(output_dir)
        df = self.select(contrast, method="prerank")
        if "nes" not in df.columns or df["nes"].isna().all():
            if logger:
                logger(f"No prerank results for '{contrast}'; skipping s-curve.")
            return []
        available = set(df["pathway"].astype(str))
        highlight = []
        for pathway in pathways or []:
            if pathway not in available:
                if logger:
                    logger(f"Pathway '{pathway}' not found in enrichment results; skipping.")
                continue
            highlight.append(pathway)

        prefix = file_prefix or f"{_sanitize_fragment(contrast)}_scurve"
        fig, _ = pathway_scurve_plot(
            df,
            alpha=alpha,
            title=f"{contrast} NES",
            figsize=fig_size,
            highlight_pathways=highlight,
            highlight_only=highlight_only,
        )
        destination = out_dir / f"{prefix}.png"
        _save_figure(
            fig,
            destination,
            dpi=dpi,
            logger=logger,
            message=f"Saved pathway s-curve plot to {destination}",
        )
        return [destination]

    def plot_pathway_enrichment_heatmap(
        self,
        pathways: Iterable[str],
        *,
        stat_column: str = "signed_neglog10_padj",
        method: Optional[str] = None,
        direction: Optional[str] = None,
        contrast_filter: Optional[Callable[[str], bool]] = None,
        transpose: bool = False,
        zscore: bool = True,
        clustering_metric: str = "cosine",
        figsize: Tuple[float, float] = (10, 6),
        cmap: str = "coolwarm",
        annot: bool = False,
        annot_fmt: str = ".2f",
        logger: Optional[Callable[[str], None]] = None,
        return_fig: bool = True,
        out_path: Optional[Union[str, Path]] = None,
        cbar_label: Optional[str] = None,
    ) -> Tuple[plt.Figure, plt.Axes]:
        """
        Plot a heatmap of one enrichment statistic across contrasts.

        Parameters
        ----------
        pathways:
            Pathway names to include.
        stat_column:
            Column to visualise (default ``signed_neglog10_padj``).
        method, direction:
            Restrict to one enrichment method / ORA gene-list direction.
        contrast_filter:
            Callable taking a contrast name and returning bool.
        """
        pathways = list(pathways)
        if not pathways:
            raise ValueError("No pathways provided.")
        contrasts = [
            c for c in self.available_contrasts if contrast_filter is None or contrast_filter(c)
        ]
        if not contrasts:
            raise ValueError("No contrasts matched the provided filters.")

        columns = {}
        for contrast in contrasts:
            df = self.select(contrast, method=method, direction=direction)
            if stat_column not in df.columns:
                raise KeyError(f"Column '{stat_column}' missing in contrast '{contrast}'.")
            hits = df[df["pathway"].isin(pathways)].drop_duplicates(subset="pathway", keep="first")
            columns[contrast] = hits.set_index("pathway")[stat_column].astype(float)
        heatmap_df = pd.DataFrame(columns).T.reindex(columns=pathways)
        heatmap_df.index.name = "contrast"

        empty_cols = heatmap_df.columns[heatmap_df.isna().all(axis=0)].tolist()
        empty_rows = heatmap_df.index[heatmap_df.isna().all(axis=1)].tolist()
        if logger and empty_cols:
            logger(f"Dropping pathways with no data: {empty_cols}")
        if logger and empty_rows:
            logger(f"Dropping contrasts with no data: {empty_rows}")
        heatmap_df = heatmap_df.drop(index=empty_rows, columns=empty_cols)
        if heatmap_df.empty:
            raise ValueError("No data available after filtering pathways and contrasts.")

        fig, ax = plot_pathway_enrichment_heatmap(
            heatmap_df,
            original_values=heatmap_df,
            transpose=transpose,
            zscore_axis="columns",
            zscore=zscore,
            clustering_metric=clustering_metric,
            figsize=figsize,
            cmap=cmap,
            annot=annot,
            annot_fmt=annot_fmt,
            logger=logger,
            out_path=out_path,
            cbar_label=cbar_label or stat_column,
        )
        if not return_fig:
            plt.close(fig)
        return fig, ax
