"""Gene identifier -> symbol annotation helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

__all__ = [
    "strip_version",
    "read_gtf",
    "standardize_gene_annotations",
    "load_gene_annotations",
    "annotate_results",
]

GTF_COLUMNS = [
    "seqname",
    "source",
    "feature",
    "start",
    "end",
    "score",
    "strand",
    "frame",
    "attributes",
]
GTF_ATTRIBUTES = ("gene_id", "gene_name", "gene_type", "gene_biotype", "transcript_id")


def strip_version(ids: Iterable[str]) -> pd.Index:
    """Drop Ensembl-style ``.N`` version suffixes (``ENSG00000141510.17`` -> ``ENSG00000141510``)."""
    return pd.Index([str(x) for x in ids]).str.replace(r"\.\d+$", "", regex=True)


def read_gtf(path: Union[str, Path], feature: Optional[str] = "gene") -> pd.DataFrame:
    """
    Parse a GTF file into a table of records with the common attributes expanded.

    Parameters
    ----------
    path:
        GTF file (optionally gzip-compressed).
    feature:
        Keep only records of this feature type (``gene``, ``transcript``...). ``None`` keeps all.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"GTF file not found: {path}")
    gtf = pd.read_csv(
        path,
        sep="\t",
        comment="#",
        header=None,
        names=GTF_COLUMNS,
        dtype={"seqname": str, "attributes": str},
    )
    if feature is not None:
        gtf = gtf[gtf["feature"] == feature].copy()
    for attr in GTF_ATTRIBUTES:
        gtf[attr] = gtf["attributes"].str.extract(rf'{attr} "([^"]*)"', expand=False)
    if "gene_type" in gtf.columns and "gene_biotype" in gtf.columns:
        gtf["gene_type"] = gtf["gene_type"].combine_first(gtf["gene_biotype"])
    return gtf.drop(columns=["attributes", "gene_biotype"]).reset_index(drop=True)


def standardize_gene_annotations(df: pd.DataFrame) -> pd.DataFrame:
    annot = df.copy()
    rename_map = {
        "Gene stable ID": "gene_id",
        "geneID": "gene_id",
        "GeneID": "gene_id",
        "ensg": "gene_id",
        "ensembl_id": "gene_id",
        "ensembl_gene_id": "gene_id",
        "Chromosome/scaffold name": "chromosome",
        "chrom": "chromosome",
        "seqname": "chromosome",
        "Gene name": "gene_name",
        "geneSymbol": "gene_name",
        "symbol": "gene_name",
        "SYMBOL": "gene_name",
        "external_gene_name": "gene_name",
        "Gene description": "gene_description",
        "description": "gene_description",
        "Gene type": "gene_type",
    }
    for orig, new in rename_map.items():
        if orig in annot.columns and new not in annot.columns:
            annot = annot.rename(columns={orig: new})

    if "gene_id" not in annot.columns:
        if annot.index.name == "gene_id":
            annot = annot.reset_index(drop=False)
        else:
            raise KeyError(
                "Gene annotations must include a 'gene_id' column or be indexed by gene_id."
            )
    if "gene_name" not in annot.columns:
        raise KeyError("Gene annotations must include a 'gene_name' column.")

    annot["gene_id"] = annot["gene_id"].astype(str)
    annot = annot.drop_duplicates(subset="gene_id", keep="first")
    annot = annot.set_index("gene_id", drop=False)
    # Missing symbols stay NA so unmapped genes can be filtered downstream.
    names = annot["gene_name"]
    cleaned = names[names.notna()].astype(str).str.strip()
    annot["gene_name"] = cleaned.reindex(annot.index)
    annot["gene_name"] = annot["gene_name"].mask(annot["gene_name"] == "")
    return annot


def load_gene_annotations(path: Union[str, Path]) -> pd.DataFrame:
    """Load gene annotations from a GTF or a delimited table (BioMart export, etc.)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene annotation file not found: {path}")
    suffixes = [s.lower() for s in path.suffixes]
    if ".gtf" in suffixes:
        table = read_gtf(path, feature="gene")
        table = table.loc[:, ["gene_id", "gene_name", "seqname", "gene_type"]]
    else:
        sep = "," if suffixes and suffixes[-1] == ".csv" else "\t"
        table = pd.read_csv(path, sep=sep)
    annot = standardize_gene_annotations(table)
    logger.info("Loaded annotations for %d genes from %s", len(annot), path)
    return annot


def annotate_results(
    results_df: pd.DataFrame,
    annotations: Optional[pd.DataFrame],
    *,
    drop_unmapped: bool = True,
) -> pd.DataFrame:
    """
    Attach ``gene_id`` / ``gene_name`` to a results table indexed by gene id.

    Genes without a symbol are dropped when ``drop_unmapped`` is True;
    otherwise their id stands in for the symbol. Version suffixes are ignored
    when matching ids.
    """
    merged = results_df.copy()
    index_series = pd.Series(merged.index.astype(str), index=merged.index)
    merged["gene_id"] = index_series

    if annotations is None:
        merged["gene_name"] = index_series
        return merged

    annot = standardize_gene_annotations(annotations)
    lookup = annot["gene_name"].copy()
    lookup.index = strip_version(lookup.index)
    lookup = lookup[~lookup.index.duplicated(keep="first")]
    symbols = lookup.reindex(strip_version(merged.index))
    symbols.index = merged.index
    merged["gene_name"] = symbols

    extra_cols = [c for c in annot.columns if c not in {"gene_id", "gene_name"}]
    if extra_cols:
        extra = annot[extra_cols].copy()
        extra.index = strip_version(extra.index)
        extra = extra[~extra.index.duplicated(keep="first")].reindex(strip_version(merged.index))
        extra.index = merged.index
        for col in extra_cols:
            if col not in merged.columns:
                merged[col] = extra[col]

    unmapped = merged["gene_name"].isna()
    if drop_unmapped:
        if unmapped.any():
            logger.debug("Dropping %d genes without a gene symbol", int(unmapped.sum()))
        merged = merged.loc[~unmapped]
    else:
        merged["gene_name"] = merged["gene_name"].fillna(index_series)
    return merged
