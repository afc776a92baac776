"""Import of Salmon quantifications and precomputed count tables.

Transcript-level Salmon estimates are summarised to genes the way tximport
does it, producing a genes x samples integer count matrix ready for
:func:`bulk_de.de.differential_expression.prepare_deseq_dataset`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .annotation import read_gtf, strip_version

logger = logging.getLogger(__name__)

__all__ = [
    "QuantificationResult",
    "SALMON_COLUMNS",
    "read_salmon_quant",
    "discover_salmon_samples",
    "read_tx2gene",
    "tx2gene_from_gtf",
    "import_salmon",
    "read_count_matrix",
    "read_sample_metadata",
]

SALMON_COLUMNS = ("Name", "Length", "EffectiveLength", "TPM", "NumReads")
SALMON_FILENAME = "quant.sf"
COUNTS_FROM_ABUNDANCE = ("no", "scaledTPM", "lengthScaledTPM")


@dataclass
class QuantificationResult:
    """Gene-level matrices (genes x samples) summarised from transcript estimates."""

    counts: pd.DataFrame
    abundance: pd.DataFrame
    lengths: pd.DataFrame
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def samples(self) -> List[str]:
        return list(self.counts.columns)


def _sep_for(path: Path) -> str:
    return "," if path.suffix.lower() == ".csv" else "\t"


def read_salmon_quant(path: Union[str, Path]) -> pd.DataFrame:
    """Read a single ``quant.sf`` file indexed by transcript name."""
    path = Path(path)
    if path.is_dir():
        path = path / SALMON_FILENAME
    if not path.exists():
        raise FileNotFoundError(f"Salmon quantification file not found: {path}")
    df = pd.read_csv(path, sep="\t")
    missing = [col for col in SALMON_COLUMNS if col not in df.columns]
    if missing:
        raise KeyError(f"{path} is missing Salmon columns: {missing}")
    df["Name"] = df["Name"].astype(str)
    return df.set_index("Name")


def discover_salmon_samples(directory: Union[str, Path]) -> Mapping[str, Path]:
    """Map sample name -> quant.sf for each subdirectory holding a Salmon result."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Salmon output directory not found: {directory}")
    found = {
        entry.name: entry / SALMON_FILENAME
        for entry in sorted(directory.iterdir())
        if entry.is_dir() and (entry / SALMON_FILENAME).exists()
    }
    if not found:
        raise FileNotFoundError(f"No Salmon quantification directories found in {directory}")
    logger.info("Found %d Salmon samples in %s", len(found), directory)
    return found


def _standardize_tx2gene(df: pd.DataFrame) -> pd.DataFrame:
    rename_map = {
        "TXNAME": "transcript_id",
        "tx": "transcript_id",
        "tx_id": "transcript_id",
        "Transcript stable ID": "transcript_id",
        "GENEID": "gene_id",
        "gene": "gene_id",
        "Gene stable ID": "gene_id",
        "Gene name": "gene_name",
        "symbol": "gene_name",
    }
    out = df.rename(columns={k: v for k, v in rename_map.items() if k in df.columns})
    if "transcript_id" not in out.columns or "gene_id" not in out.columns:
        # Headerless two/three column tables follow the tximport convention.
        if out.shape[1] < 2:
            raise KeyError("tx2gene table needs transcript_id and gene_id columns.")
        names = ["transcript_id", "gene_id", "gene_name"][: min(out.shape[1], 3)]
        out = out.iloc[:, : len(names)]
        out.columns = names
    if "gene_name" not in out.columns:
        out["gene_name"] = np.nan
    out = out.loc[:, ["transcript_id", "gene_id", "gene_name"]].copy()
    out["transcript_id"] = out["transcript_id"].astype(str)
    out["gene_id"] = out["gene_id"].astype(str)
    return out.drop_duplicates(subset="transcript_id", keep="first").reset_index(drop=True)


def read_tx2gene(path: Union[str, Path]) -> pd.DataFrame:
    """Read a transcript -> gene table (TSV/CSV, with or without header)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"tx2gene file not found: {path}")
    df = pd.read_csv(path, sep=_sep_for(path))
    known = {"transcript_id", "TXNAME", "tx", "tx_id", "Transcript stable ID"}
    if not known.intersection(df.columns):
        df = pd.read_csv(path, sep=_sep_for(path), header=None)
    return _standardize_tx2gene(df)


def tx2gene_from_gtf(path: Union[str, Path]) -> pd.DataFrame:
    """Build a transcript -> gene table from the ``transcript`` records of a GTF."""
    gtf = read_gtf(path, feature="transcript")
    if gtf.empty:
        raise ValueError(f"No transcript records found in GTF {path}")
    return _standardize_tx2gene(gtf)


def _as_sample_files(
    source: Union[str, Path, Mapping[str, Union[str, Path]]],
    samples: Optional[Sequence[str]],
) -> Mapping[str, Path]:
    if isinstance(source, Mapping):
        files = {str(name): Path(p) for name, p in source.items()}
    else:
        files = dict(discover_salmon_samples(source))
    if samples is not None:
        missing = [s for s in samples if s not in files]
        if missing:
            raise KeyError(f"Samples without Salmon output: {missing}")
        files = {s: files[s] for s in samples}
    return files


def import_salmon(
    source: Union[str, Path, Mapping[str, Union[str, Path]]],
    tx2gene: pd.DataFrame,
    *,
    samples: Optional[Sequence[str]] = None,
    counts_from_abundance: str = "no",
    ignore_tx_version: bool = False,
) -> QuantificationResult:
    """
    Summarise Salmon transcript quantifications to gene-level counts.

    Parameters
    ----------
    source:
        Directory with one subdirectory per sample, or an explicit mapping of
        sample name -> ``quant.sf`` path (or directory).
    tx2gene:
        Table with ``transcript_id`` and ``gene_id`` columns
        (see :func:`read_tx2gene` / :func:`tx2gene_from_gtf`).
    counts_from_abundance:
        ``"no"`` sums estimated reads; ``"scaledTPM"`` and ``"lengthScaledTPM"``
        regenerate counts from abundances scaled to each sample's library size.
    ignore_tx_version:
        Strip ``.N`` version suffixes from transcript ids before matching.
    """
    if counts_from_abundance not in COUNTS_FROM_ABUNDANCE:
        raise ValueError(f"counts_from_abundance must be one of {COUNTS_FROM_ABUNDANCE}")
    files = _as_sample_files(source, samples)
    mapping = _standardize_tx2gene(tx2gene)
    if ignore_tx_version:
        mapping["transcript_id"] = strip_version(mapping["transcript_id"])
        mapping = mapping.drop_duplicates(subset="transcript_id", keep="first")
    tx_to_gene = mapping.set_index("transcript_id")["gene_id"]

    reads, tpm, eff_len = {}, {}, {}
    for sample, path in files.items():
        quant = read_salmon_quant(path)
        if ignore_tx_version:
            quant.index = strip_version(quant.index)
        reads[sample] = quant["NumReads"]
        tpm[sample] = quant["TPM"]
        eff_len[sample] = quant["EffectiveLength"]

    reads_df = pd.DataFrame(reads).fillna(0.0)
    tpm_df = pd.DataFrame(tpm).fillna(0.0)
    len_df = pd.DataFrame(eff_len)

    genes = tx_to_gene.reindex(reads_df.index)
    unmapped = genes.isna()
    if unmapped.any():
        logger.warning(
            "Dropping %d of %d transcripts missing from tx2gene", int(unmapped.sum()), len(genes)
        )
    keep = ~unmapped.to_numpy()
    reads_df, tpm_df, len_df = reads_df.loc[keep], tpm_df.loc[keep], len_df.loc[keep]
    genes = genes[keep]
    if reads_df.empty:
        raise ValueError("No transcripts could be mapped to genes; check tx2gene identifiers.")

    gene_reads = reads_df.groupby(genes.to_numpy()).sum()
    gene_tpm = tpm_df.groupby(genes.to_numpy()).sum()
    # Abundance-weighted average transcript length per gene.
    weighted = (tpm_df * len_df.fillna(0.0)).groupby(genes.to_numpy()).sum()
    plain = len_df.groupby(genes.to_numpy()).mean()
    gene_len = (weighted / gene_tpm.where(gene_tpm > 0)).fillna(plain)

    if counts_from_abundance == "no":
        counts = gene_reads
    else:
        scaled = gene_tpm
        if counts_from_abundance == "lengthScaledTPM":
            scaled = gene_tpm.mul(gene_len.mean(axis=1), axis=0)
        col_sums = scaled.sum(axis=0).replace(0.0, np.nan)
        counts = (scaled / col_sums * gene_reads.sum(axis=0)).fillna(0.0)

    counts = counts.round().astype(np.int64)
    counts.index.name = "gene_id"
    logger.info(
        "Imported %d samples x %d genes from Salmon (counts_from_abundance=%s)",
        counts.shape[1],
        counts.shape[0],
        counts_from_abundance,
    )
    return QuantificationResult(
        counts=counts,
        abundance=gene_tpm,
        lengths=gene_len,
        parameters={
            "counts_from_abundance": counts_from_abundance,
            "ignore_tx_version": ignore_tx_version,
            "n_transcripts_unmapped": int(unmapped.sum()),
            "files": {name: str(p) for name, p in files.items()},
        },
    )


def read_count_matrix(path: Union[str, Path], *, index_col: Union[int, str] = 0) -> pd.DataFrame:
    """Read a genes x samples count table, rounding non-integer estimates."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")
    counts = pd.read_csv(path, sep=_sep_for(path), index_col=index_col)
    counts.index = counts.index.astype(str)
    non_numeric = [col for col in counts.columns if not pd.api.types.is_numeric_dtype(counts[col])]
    if non_numeric:
        raise ValueError(f"Count matrix has non-numeric sample columns: {non_numeric}")
    if counts.isna().any().any():
        raise ValueError("Count matrix contains missing values.")
    if (counts < 0).any().any():
        raise ValueError("Count matrix contains negative values.")
    values = counts.to_numpy(dtype=float)
    if not np.allclose(values, np.round(values)):
        logger.warning("Rounding non-integer counts in %s", path)
    return counts.round().astype(np.int64)


def read_sample_metadata(
    path: Union[str, Path],
    *,
    sample_col: str = "sample",
    condition_col: str = "condition",
) -> pd.DataFrame:
    """Read per-sample metadata indexed by sample id with a categorical condition."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sample metadata not found: {path}")
    meta = pd.read_csv(path, sep=_sep_for(path))
    for col in (sample_col, condition_col):
        if col not in meta.columns:
            raise KeyError(f"Column '{col}' not found in sample metadata. Available: {list(meta.columns)}")
    meta[sample_col] = meta[sample_col].astype(str)
    if meta[sample_col].duplicated().any():
        dupes = meta.loc[meta[sample_col].duplicated(), sample_col].tolist()
        raise ValueError(f"Duplicated sample ids in metadata: {dupes}")
    meta = meta.set_index(sample_col)
    meta[condition_col] = meta[condition_col].astype(str).astype("category")
    return meta
