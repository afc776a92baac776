"""Gene set loading and enrichment (ORA / GSEA prerank) delegated to GSEApy."""

from __future__ import annotations

import csv
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .base import PathwayEnrichmentResult
from .differential_expression import _effective_n_jobs

logger = logging.getLogger(__name__)

__all__ = [
    "PATHWAY_FILE_SUFFIX",
    "ENRICHMENT_COLUMNS",
    "read_gmt",
    "resolve_pathway_filename",
    "resolve_pathway_libraries",
    "load_pathway_library",
    "load_multiple_pathway_libraries",
    "rank_genes",
    "run_ora",
    "run_prerank",
    "run_pathway_enrichment",
    "run_pathway_enrichment_for_contrasts",
]

PATHWAY_FILE_SUFFIX = ".gmt"
ENRICHMENT_COLUMNS = [
    "library",
    "method",
    "direction",
    "pathway",
    "set_size",
    "overlap",
    "es",
    "nes",
    "odds_ratio",
    "combined_score",
    "pvalue",
    "padj",
    "fwer",
    "genes",
    "signed_neglog10_padj",
]

GeneSets = Mapping[str, Sequence[str]]


def _import_gseapy():
    try:
        import gseapy  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "Optional dependency 'gseapy' is required for enrichment analysis. "
            "Install it via pip or conda before using `bulk_de.de.pathways`."
        ) from exc
    return gseapy


def _empty_table() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype=object) for col in ENRICHMENT_COLUMNS})


def resolve_pathway_filename(library: Union[str, Path], base_dir: Optional[Union[str, Path]] = None) -> Path:
    """
    Resolve a pathway library identifier to an on-disk Path.

    ``library`` may be a path, a file name under ``base_dir`` or a file-name prefix
    (``h.all`` matches ``h.all.v2024.1.Hs.symbols.gmt``).
    """
    candidate = Path(library)
    if candidate.exists():
        return candidate

    if base_dir is not None:
        base_dir = Path(base_dir)
        direct = base_dir / str(library)
        if direct.exists():
            return direct
        if not str(library).endswith(PATHWAY_FILE_SUFFIX):
            matches = sorted(base_dir.glob(f"{library}*{PATHWAY_FILE_SUFFIX}"))
            if matches:
                return matches[0]

    raise FileNotFoundError(
        f"Could not resolve pathway library '{library}' on disk. "
        "Either provide a full path or ensure the file exists under the supplied base_dir."
    )


def resolve_pathway_libraries(
    libraries: Optional[Iterable[Union[str, Path]]],
    *,
    base_dir: Optional[Union[str, Path]] = None,
) -> List[Path]:
    if not libraries:
        return []
    return [resolve_pathway_filename(lib, base_dir=base_dir) for lib in libraries]


def read_gmt(path: Union[str, Path]) -> Dict[str, List[str]]:
    """Parse a GMT pathway file into a mapping of pathway -> gene list."""
    path = Path(path)
    pathways: Dict[str, List[str]] = {}
    with path.open("r", encoding="utf-8") as handle:
        reader = csv.reader(handle, delimiter="\t")
        for row in reader:
            if not row or not row[0].strip():
                continue
            name = row[0].strip()
            genes = [gene.strip() for gene in row[2:] if gene.strip()]
            pathways[name] = list(dict.fromkeys(genes))
    return pathways


@lru_cache(maxsize=None)
def _load_cached(resolved: str) -> Dict[str, List[str]]:
    return read_gmt(resolved)


def load_pathway_library(
    library: Union[str, Path],
    *,
    base_dir: Optional[Union[str, Path]] = None,
) -> Dict[str, List[str]]:
    """
    Load a pathway library into memory.

    Returns
    -------
    dict
        Mapping from pathway name to list of member genes. Repeated loads of the
        same file share one parsed copy, so treat it as read-only.
    """
    resolved = resolve_pathway_filename(library, base_dir=base_dir)
    pathways = _load_cached(str(resolved.resolve()))
    logger.debug("Loaded %d gene sets from %s", len(pathways), resolved)
    return pathways


def load_multiple_pathway_libraries(
    libraries: Iterable[Union[str, Path]],
    *,
    base_dir: Optional[Union[str, Path]] = None,
) -> Dict[str, Dict[str, List[str]]]:
    """
    Load multiple pathway libraries at once.

    Returns a nested mapping ``{library_id: {pathway_name: genes}}``.
    """
    out: Dict[str, Dict[str, List[str]]] = {}
    for library in libraries:
        out[_library_name(library)] = load_pathway_library(library, base_dir=base_dir)
    return out


def _library_name(library: Union[str, Path]) -> str:
    name = Path(library).name
    return name[: -len(PATHWAY_FILE_SUFFIX)] if name.endswith(PATHWAY_FILE_SUFFIX) else name


def rank_genes(
    df: pd.DataFrame,
    *,
    stat_col: str = "stat",
    gene_col: str = "gene_name",
) -> pd.Series:
    """
    Ranking series (gene -> statistic), sorted descending.

    Duplicate symbols keep the value with the largest magnitude.
    """
    missing = [col for col in (stat_col, gene_col) if col not in df.columns]
    if missing:
        raise KeyError(f"Dataframe missing required columns: {missing}")
    ranked = df[[gene_col, stat_col]].dropna()
    ranked = ranked.assign(_abs=ranked[stat_col].abs()).sort_values("_abs", ascending=False)
    ranked = ranked.drop_duplicates(subset=gene_col, keep="first")
    series = pd.Series(ranked[stat_col].to_numpy(dtype=float), index=ranked[gene_col].astype(str).to_numpy())
    return series.sort_values(ascending=False)


def _signed_neglog10(padj: pd.Series, sign: Union[pd.Series, float]) -> pd.Series:
    return -np.log10(padj.astype(float).clip(lower=1e-300)) * sign


def run_ora(
    genes: Sequence[str],
    gene_sets: GeneSets,
    *,
    background: Optional[Sequence[str]] = None,
    library: str = "custom",
    direction: str = "all",
    min_size: int = 1,
    max_size: Optional[int] = None,
) -> pd.DataFrame:
    """
    Over-representation analysis via :func:`gseapy.enrich` (hypergeometric test).

    Gene sets are restricted to ``background`` before testing; an empty gene
    list yields an empty table with the standard columns.
    """
    genes = list(dict.fromkeys(str(g) for g in genes))
    universe = set(background) if background is not None else None
    sets = {}
    for name, members in gene_sets.items():
        kept = [g for g in members if universe is None or g in universe]
        if len(kept) >= min_size and (max_size is None or len(kept) <= max_size):
            sets[name] = kept
    if not genes or not sets:
        logger.info("ORA skipped for %s/%s: %d genes, %d gene sets", library, direction, len(genes), len(sets))
        return _empty_table()

    gp = _import_gseapy()
    enr = gp.enrich(
        gene_list=genes,
        gene_sets=sets,
        background=list(universe) if universe is not None else None,
        outdir=None,
        cutoff=1.0,
        no_plot=True,
        verbose=False,
    )
    raw = enr.results
    if not isinstance(raw, pd.DataFrame) or raw.empty:
        return _empty_table()
    sign = -1.0 if direction == "down" else 1.0
    out = pd.DataFrame(
        {
            "library": library,
            "method": "ora",
            "direction": direction,
            "pathway": raw["Term"].astype(str),
            "set_size": raw["Term"].map(lambda term: len(sets.get(term, ()))),
            "overlap": raw["Overlap"].astype(str),
            "es": np.nan,
            "nes": np.nan,
            "odds_ratio": raw.get("Odds Ratio", pd.Series(np.nan, index=raw.index)).astype(float),
            "combined_score": raw.get("Combined Score", pd.Series(np.nan, index=raw.index)).astype(float),
            "pvalue": raw["P-value"].astype(float),
            "padj": raw["Adjusted P-value"].astype(float),
            "fwer": np.nan,
            "genes": raw["Genes"].astype(str).str.replace(";", ",", regex=False),
        }
    )
    out["signed_neglog10_padj"] = _signed_neglog10(out["padj"], sign)
    return out.sort_values("pvalue").reset_index(drop=True).loc[:, ENRICHMENT_COLUMNS]


def run_prerank(
    ranked: pd.Series,
    gene_sets: GeneSets,
    *,
    library: str = "custom",
    min_size: int = 15,
    max_size: int = 500,
    permutation_num: int = 1000,
    seed: int = 123456,
    threads: int = 1,
) -> pd.DataFrame:
    """
    GSEA on a pre-ranked gene list via :func:`gseapy.prerank`.

    Gene sets whose overlap with the ranked genes falls outside
    ``[min_size, max_size]`` are dropped up front; if none remain the result is empty.
    """
    ranked = ranked.dropna()
    present = set(ranked.index)
    sets = {}
    for name, members in gene_sets.items():
        overlap = [g for g in members if g in present]
        if min_size <= len(overlap) <= max_size:
            sets[name] = list(members)
    if ranked.empty or not sets:
        logger.info("Prerank skipped for %s: %d ranked genes, %d gene sets", library, len(ranked), len(sets))
        return _empty_table()

    gp = _import_gseapy()
    pre = gp.prerank(
        rnk=ranked.sort_values(ascending=False),
        gene_sets=sets,
        outdir=None,
        min_size=min_size,
        max_size=max_size,
        permutation_num=permutation_num,
        seed=seed,
        threads=threads,
        no_plot=True,
        verbose=False,
    )
    raw = pre.res2d
    if raw is None or raw.empty:
        return _empty_table()
    nes = raw["NES"].astype(float)
    out = pd.DataFrame(
        {
            "library": library,
            "method": "prerank",
            "direction": "ranked",
            "pathway": raw["Term"].astype(str),
            "set_size": raw["Term"].map(lambda term: len(sets.get(term, ()))),
            "overlap": raw.get("Tag %", pd.Series("", index=raw.index)).astype(str),
            "es": raw["ES"].astype(float),
            "nes": nes,
            "odds_ratio": np.nan,
            "combined_score": np.nan,
            "pvalue": raw["NOM p-val"].astype(float),
            "padj": raw["FDR q-val"].astype(float),
            "fwer": raw["FWER p-val"].astype(float),
            "genes": raw["Lead_genes"].astype(str).str.replace(";", ",", regex=False),
        }
    )
    out["signed_neglog10_padj"] = _signed_neglog10(out["padj"], np.sign(nes))
    return out.sort_values("pvalue").reset_index(drop=True).loc[:, ENRICHMENT_COLUMNS]


def run_pathway_enrichment(
    de_df: pd.DataFrame,
    gene_sets: GeneSets,
    *,
    method: str = "ora",
    library: str = "custom",
    gene_col: str = "gene_name",
    stat_col: str = "stat",
    regulation_col: str = "regulation",
    min_size: int = 15,
    max_size: int = 500,
    permutation_num: int = 1000,
    seed: int = 123456,
) -> pd.DataFrame:
    """
    Enrichment for one contrast table.

    ``ora`` tests the ``up``, ``down`` and combined DEG lists against all tested
    genes; ``prerank`` runs GSEA on genes ranked by ``stat_col``; ``both`` does both.
    ``min_size``/``max_size`` bound the prerank gene sets only; ORA tests every set
    with at least one gene among the tested genes.
    """
    if method not in {"ora", "prerank", "both"}:
        raise ValueError("method must be 'ora', 'prerank' or 'both'")
    if gene_col not in de_df.columns:
        raise KeyError(f"Dataframe missing required column '{gene_col}'")
    frames = []
    if method in {"ora", "both"}:
        if regulation_col not in de_df.columns:
            raise KeyError(f"Column '{regulation_col}' not found; classify the table before ORA.")
        background = list(dict.fromkeys(de_df[gene_col].dropna().astype(str)))
        calls = de_df[regulation_col]
        lists = {
            "up": de_df.loc[calls == "up", gene_col],
            "down": de_df.loc[calls == "down", gene_col],
            "all": de_df.loc[calls.isin(["up", "down"]), gene_col],
        }
        for direction, genes in lists.items():
            frames.append(
                run_ora(
                    genes.dropna().astype(str).tolist(),
                    gene_sets,
                    background=background,
                    library=library,
                    direction=direction,
                )
            )
    if method in {"prerank", "both"}:
        frames.append(
            run_prerank(
                rank_genes(de_df, stat_col=stat_col, gene_col=gene_col),
                gene_sets,
                library=library,
                min_size=min_size,
                max_size=max_size,
                permutation_num=permutation_num,
                seed=seed,
            )
        )
    frames = [f for f in frames if not f.empty]
    if not frames:
        return _empty_table()
    return pd.concat(frames, ignore_index=True)


def run_pathway_enrichment_for_contrasts(
    contrast_results: Mapping[str, pd.DataFrame],
    libraries: Union[Iterable[Union[str, Path]], Mapping[str, GeneSets]],
    *,
    base_dir: Optional[Union[str, Path]] = None,
    method: str = "ora",
    alpha: float = 0.05,
    gene_col: str = "gene_name",
    stat_col: str = "stat",
    min_size: int = 15,
    max_size: int = 500,
    permutation_num: int = 1000,
    seed: int = 123456,
    n_jobs: int = 1,
    backend: str = "thread",
) -> PathwayEnrichmentResult:
    """
    Run enrichment for every contrast against every gene set library.

    ``libraries`` is either a list of GMT identifiers (resolved with
    :func:`resolve_pathway_filename`) or an already-loaded
    ``{library: {pathway: genes}}`` mapping.
    """
    if backend not in {"thread", "sequential"}:
        raise ValueError("backend must be 'thread' or 'sequential'")
    if isinstance(libraries, Mapping):
        loaded = {str(name): sets for name, sets in libraries.items()}
    else:
        loaded = load_multiple_pathway_libraries(libraries, base_dir=base_dir)
    if not loaded:
        raise ValueError("No pathway libraries provided.")

    tasks: List[Tuple[str, str]] = [(contrast, lib) for contrast in contrast_results for lib in loaded]

    def compute(contrast: str, lib: str) -> Tuple[str, pd.DataFrame]:
        table = run_pathway_enrichment(
            contrast_results[contrast],
            loaded[lib],
            method=method,
            library=lib,
            gene_col=gene_col,
            stat_col=stat_col,
            min_size=min_size,
            max_size=max_size,
            permutation_num=permutation_num,
            seed=seed,
        )
        return contrast, table

    workers = _effective_n_jobs(n_jobs)
    effective_backend = backend if workers > 1 and len(tasks) > 1 else "sequential"
    collected: Dict[Tuple[str, str], pd.DataFrame] = {}
    if effective_backend == "sequential":
        for contrast, lib in tasks:
            collected[(contrast, lib)] = compute(contrast, lib)[1]
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {executor.submit(compute, c, lib): (c, lib) for c, lib in tasks}
            for future in as_completed(future_map):
                collected[future_map[future]] = future.result()[1]

    per_contrast: Dict[str, pd.DataFrame] = {}
    for contrast in contrast_results:
        frames = [collected[(contrast, lib)] for lib in loaded if not collected[(contrast, lib)].empty]
        per_contrast[contrast] = pd.concat(frames, ignore_index=True) if frames else _empty_table()
        n_sig = int((per_contrast[contrast]["padj"].astype(float) < alpha).sum())
        logger.info("%s: %d enriched gene sets at padj < %s", contrast, n_sig, alpha)

    return PathwayEnrichmentResult(
        per_contrast=per_contrast,
        libraries=list(loaded),
        parameters={
            "method": method,
            "alpha": alpha,
            "min_size": min_size,
            "max_size": max_size,
            "permutation_num": permutation_num,
            "seed": seed,
            "backend": effective_backend,
            "n_jobs": workers,
        },
    )
