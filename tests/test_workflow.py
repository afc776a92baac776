import logging

import numpy as np
import pandas as pd
import pytest

from bulk_de import WorkflowConfig
from bulk_de.utils import load_object


def _simulate(seed: int = 0, n_genes: int = 300, with_batch: bool = False):
    rng = np.random.default_rng(seed)
    conditions = ["ctrl"] * 4 + ["t1"] * 4 + ["t2"] * 4
    samples = [f"sample{i}" for i in range(len(conditions))]
    cond = np.array(conditions)
    mu = np.repeat(rng.uniform(200, 1000, size=n_genes)[:, None], len(samples), axis=1)
    # genes 0-19 up in both treatments, genes 20-29 down in t1 only
    mu[:20, cond != "ctrl"] *= 8.0
    mu[20:30, cond == "t1"] /= 8.0
    if with_batch:
        batch = np.array([0, 1] * 6)
        affected = np.arange(100, 200)
        mu[np.ix_(affected, batch == 1)] *= 4.0
    dispersion = 0.05
    counts = rng.negative_binomial(1.0 / dispersion, 1.0 / (1.0 + mu * dispersion))
    counts_df = pd.DataFrame(counts, index=[f"gene{i}" for i in range(n_genes)], columns=samples)
    metadata = pd.DataFrame({"condition": conditions}, index=samples)
    return counts_df, metadata


def test_workflow_end_to_end(tmp_path):
    pytest.importorskip("pydeseq2")
    pytest.importorskip("gseapy")
    from bulk_de.de.workflow import perform_de_workflow

    counts, metadata = _simulate()
    gene_sets = {
        "toy": {
            "SHARED_UP": [f"gene{i}" for i in range(15)],
            "T1_DOWN": [f"gene{i}" for i in range(20, 30)],
            "BACKGROUND": [f"gene{i}" for i in range(200, 230)],
        }
    }
    config = WorkflowConfig(
        reference_level="ctrl",
        n_sv=0,
        output_dir=str(tmp_path / "run"),
        dpi=50,
    )
    outputs = perform_de_workflow(counts, metadata, config, gene_sets=gene_sets)

    de = outputs["de"]
    assert de.available_contrasts == ["t1_vs_ctrl", "t2_vs_ctrl"]
    t1 = de.get_contrast_df("t1_vs_ctrl")
    assert set(t1["regulation"]) <= {"up", "down", "unchanged"}
    assert (t1.loc[[f"gene{i}" for i in range(20)], "regulation"] == "up").sum() >= 18
    assert (t1.loc[[f"gene{i}" for i in range(20, 30)], "regulation"] == "down").sum() >= 8

    shared = outputs["common_degs"].set_index("gene")["change"]
    assert (shared.reindex([f"gene{i}" for i in range(20)]) == "up").sum() >= 18
    assert not shared.reindex([f"gene{i}" for i in range(20, 30)]).eq("down").any()

    assert outputs["surrogate_variables"] is None
    assert outputs["pathways"].libraries == ["toy"]
    assert not outputs["pathways"].significant("t1_vs_ctrl", direction="up").empty

    run_dir = tmp_path / "run"
    written = pd.read_csv(run_dir / "tables" / "common_degs.csv")
    assert list(written.columns) == ["gene", "change"]
    assert (run_dir / "config.json").exists()
    assert (run_dir / "tables" / "de_t1_vs_ctrl.csv").exists()
    assert (run_dir / "tables" / "enrichment_t2_vs_ctrl.csv").exists()
    assert (run_dir / "plots" / "pca_samples.png").exists()
    assert list((run_dir / "plots" / "volcano").glob("*.png"))
    reloaded = load_object(run_dir / "objects" / "de_result.pkl")
    assert reloaded.available_contrasts == de.available_contrasts


def test_workflow_adds_surrogate_variables_to_design():
    pytest.importorskip("pydeseq2")
    from bulk_de.de.workflow import perform_de_workflow

    counts, metadata = _simulate(seed=1, with_batch=True)
    outputs = perform_de_workflow(
        counts,
        metadata,
        WorkflowConfig(n_sv=1, contrasts=[("t2", "t1")]),
    )
    assert outputs["surrogate_variables"].sv_columns == ["SV1"]
    assert "SV1" in outputs["metadata"].columns
    assert "SV1" in outputs["dds"].uns["bulk_de"]["design"]
    assert outputs["de"].available_contrasts == ["t2_vs_t1"]
    assert outputs["pathways"] is None


def test_workflow_rejects_invalid_config():
    from bulk_de.de.workflow import perform_de_workflow

    counts, metadata = _simulate(n_genes=20)
    with pytest.raises(ValueError):
        perform_de_workflow(counts, metadata, alpha=2.0)
    with pytest.raises(KeyError):
        perform_de_workflow(counts, metadata, condition_col="status")


@pytest.fixture(scope="module")
def fitted_dds():
    pytest.importorskip("pydeseq2")
    from bulk_de.de.differential_expression import fit_deseq_dataset, prepare_deseq_dataset

    counts, metadata = _simulate(seed=2, n_genes=150)
    dds = prepare_deseq_dataset(counts, metadata, reference_level="ctrl")
    return fit_deseq_dataset(dds)


def test_run_contrast_rejects_bad_levels(fitted_dds):
    from bulk_de.de.differential_expression import run_contrast

    with pytest.raises(ValueError, match="itself"):
        run_contrast(fitted_dds, "t1", "t1")
    with pytest.raises(ValueError, match="not found"):
        run_contrast(fitted_dds, "t3", "ctrl")


def test_run_all_pairwise_de_orders_later_vs_earlier(fitted_dds):
    from bulk_de.de.differential_expression import run_all_pairwise_de

    result = run_all_pairwise_de(fitted_dds)
    assert result.available_contrasts == ["t1_vs_ctrl", "t2_vs_ctrl", "t2_vs_t1"]
    assert result.contrasts == [("t1", "ctrl"), ("t2", "ctrl"), ("t2", "t1")]


def test_lfc_shrinkage_only_against_reference(fitted_dds, caplog):
    from bulk_de.de.differential_expression import run_pairwise_de

    with caplog.at_level(logging.WARNING, logger="bulk_de.de.differential_expression"):
        result = run_pairwise_de(fitted_dds, [("t1", "ctrl"), ("t2", "t1")], shrink_lfc=True)

    assert result.get_contrast_df("t1_vs_ctrl").attrs["lfc_shrunk"] is True
    assert result.get_contrast_df("t2_vs_t1").attrs["lfc_shrunk"] is False
    assert any("t2_vs_t1" in rec.getMessage() for rec in caplog.records)
    assert result.parameters["shrink_lfc"] is True


def test_run_pairwise_de_threads_match_sequential(fitted_dds):
    from bulk_de.de.differential_expression import run_pairwise_de

    pairs = [("t1", "ctrl"), ("t2", "ctrl"), ("t2", "t1")]
    sequential = run_pairwise_de(fitted_dds, pairs, n_jobs=1)
    threaded = run_pairwise_de(fitted_dds, pairs, n_jobs=2)

    assert threaded.available_contrasts == sequential.available_contrasts
    assert threaded.parameters["n_jobs"] == 2
    for key in sequential.available_contrasts:
        pd.testing.assert_series_equal(
            threaded.get_contrast_df(key)["regulation"],
            sequential.get_contrast_df(key)["regulation"],
        )
        np.testing.assert_allclose(
            threaded.get_contrast_df(key)["log2FoldChange"],
            sequential.get_contrast_df(key)["log2FoldChange"],
        )


def _write_salmon_run(root, counts):
    # two transcripts per gene, reads split between them
    for sample in counts.columns:
        reads = counts[sample].to_numpy()
        first = reads // 2
        names, num_reads = [], []
        for gene, a, total in zip(counts.index, first, reads):
            names += [f"{gene}_txA.1", f"{gene}_txB.1"]
            num_reads += [a, total - a]
        num_reads = np.asarray(num_reads, dtype=float)
        rate = num_reads / 900.0
        quant = pd.DataFrame(
            {
                "Name": names,
                "Length": 1000,
                "EffectiveLength": 900.0,
                "TPM": rate / rate.sum() * 1e6,
                "NumReads": num_reads,
            }
        )
        (root / sample).mkdir(parents=True)
        quant.to_csv(root / sample / "quant.sf", sep="\t", index=False)
    genes = list(counts.index)
    return pd.DataFrame(
        {
            "transcript_id": [f"{g}_tx{s}" for g in genes for s in ("A", "B")],
            "gene_id": [g for g in genes for _ in range(2)],
        }
    )


def test_salmon_workflow_aggregates_and_runs(tmp_path):
    pytest.importorskip("pydeseq2")
    from bulk_de.de.workflow import perform_salmon_workflow

    counts, metadata = _simulate(seed=3, n_genes=120)
    tx2gene = _write_salmon_run(tmp_path / "salmon", counts)

    outputs = perform_salmon_workflow(
        tmp_path / "salmon",
        tx2gene,
        metadata,
        WorkflowConfig(reference_level="ctrl", n_sv=0),
        ignore_tx_version=True,
    )

    quant = outputs["quantification"]
    aggregated = quant.counts.loc[counts.index, counts.columns]
    np.testing.assert_array_equal(aggregated.to_numpy(), counts.to_numpy())
    assert quant.parameters["n_transcripts_unmapped"] == 0
    assert outputs["de"].available_contrasts == ["t1_vs_ctrl", "t2_vs_ctrl"]
    up = outputs["de"].get_contrast_df("t1_vs_ctrl")
    assert (up.loc[[f"gene{i}" for i in range(20)], "regulation"] == "up").sum() >= 18
