import numpy as np
import pandas as pd
import pytest

import matplotlib.pyplot as plt

from bulk_de.de.base import PathwayEnrichmentResult
from bulk_de.de.differential_expression import classify_degs
from bulk_de.de.pathways import (
    ENRICHMENT_COLUMNS,
    load_multiple_pathway_libraries,
    load_pathway_library,
    rank_genes,
    read_gmt,
    resolve_pathway_filename,
    run_ora,
    run_pathway_enrichment,
    run_pathway_enrichment_for_contrasts,
)


def _make_de_df(seed: int, n_genes: int = 60) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    genes = [f"GENE{i}" for i in range(n_genes)]
    lfc = rng.normal(0.0, 0.3, size=n_genes)
    padj = rng.uniform(0.2, 1.0, size=n_genes)
    # First ten genes are strongly up, next five strongly down.
    lfc[:10] = rng.uniform(2.0, 4.0, size=10)
    padj[:10] = 1e-6
    lfc[10:15] = rng.uniform(-4.0, -2.0, size=5)
    padj[10:15] = 1e-5
    df = pd.DataFrame(
        {
            "gene_name": genes,
            "log2FoldChange": lfc,
            "stat": lfc * 5.0,
            "padj": padj,
        },
        index=[f"ENSG{i}" for i in range(n_genes)],
    )
    return classify_degs(df)


def _gene_sets():
    return {
        "UP_PATHWAY": [f"GENE{i}" for i in range(8)] + ["GENE40", "GENE41"],
        "DOWN_PATHWAY": [f"GENE{i}" for i in range(10, 15)] + ["GENE42"],
        "NOISE_PATHWAY": [f"GENE{i}" for i in range(30, 40)],
    }


def _write_gmt(path, gene_sets):
    lines = ["\t".join([name, "NA", *genes]) for name, genes in gene_sets.items()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_read_gmt_deduplicates_and_skips_blank(tmp_path):
    path = tmp_path / "toy.gmt"
    path.write_text("toy_pathway\tNA\tGENE1\tGENE1\tGENE2\n\n\tNA\tGENE3\n", encoding="utf-8")
    assert read_gmt(path) == {"toy_pathway": ["GENE1", "GENE2"]}


def test_resolve_pathway_filename_prefix(tmp_path):
    _write_gmt(tmp_path / "h.all.v2024.1.Hs.symbols.gmt", _gene_sets())
    resolved = resolve_pathway_filename("h.all", base_dir=tmp_path)
    assert resolved.name == "h.all.v2024.1.Hs.symbols.gmt"
    with pytest.raises(FileNotFoundError):
        resolve_pathway_filename("c2.cp", base_dir=tmp_path)


def test_load_multiple_pathway_libraries_names(tmp_path):
    _write_gmt(tmp_path / "hallmark.gmt", _gene_sets())
    _write_gmt(tmp_path / "custom.gmt", {"ONE": ["GENE1"]})
    loaded = load_multiple_pathway_libraries(["hallmark.gmt", "custom"], base_dir=tmp_path)
    assert sorted(loaded) == ["custom", "hallmark"]
    assert load_pathway_library("hallmark.gmt", base_dir=tmp_path) is load_pathway_library(
        tmp_path / "hallmark.gmt"
    )


def test_rank_genes_keeps_strongest_duplicate():
    df = pd.DataFrame(
        {
            "gene_name": ["A", "B", "A", "C"],
            "stat": [1.0, -2.0, -5.0, np.nan],
        }
    )
    ranked = rank_genes(df)
    assert ranked.to_dict() == {"B": -2.0, "A": -5.0}
    assert ranked.index.tolist() == ["B", "A"]


def test_run_ora_empty_list_returns_standard_columns():
    out = run_ora([], _gene_sets(), background=["GENE1"])
    assert out.empty
    assert list(out.columns) == ENRICHMENT_COLUMNS


def test_ora_detects_up_and_down_pathways():
    pytest.importorskip("gseapy")
    de_df = _make_de_df(0)
    result = run_pathway_enrichment(de_df, _gene_sets(), method="ora", library="toy")
    assert list(result.columns) == ENRICHMENT_COLUMNS
    assert set(result["direction"]) <= {"up", "down", "all"}

    up = result[(result["direction"] == "up") & (result["pathway"] == "UP_PATHWAY")].iloc[0]
    assert up["padj"] < 0.05
    assert up["signed_neglog10_padj"] > 0
    assert "GENE0" in up["genes"]

    down = result[(result["direction"] == "down") & (result["pathway"] == "DOWN_PATHWAY")].iloc[0]
    assert down["padj"] < 0.05
    assert down["signed_neglog10_padj"] < 0


def test_ora_ignores_prerank_size_bounds():
    pytest.importorskip("gseapy")
    de_df = _make_de_df(3)
    result = run_pathway_enrichment(
        de_df, _gene_sets(), method="ora", library="toy", min_size=50, max_size=100
    )
    tested = set(result.loc[result["direction"] == "all", "pathway"])
    assert {"UP_PATHWAY", "DOWN_PATHWAY"} <= tested


def test_prerank_signs_follow_ranking():
    pytest.importorskip("gseapy")
    de_df = _make_de_df(1)
    result = run_pathway_enrichment(
        de_df,
        _gene_sets(),
        method="prerank",
        library="toy",
        min_size=3,
        max_size=50,
        permutation_num=50,
        seed=7,
    )
    assert set(result["method"]) == {"prerank"}
    nes = result.set_index("pathway")["nes"]
    assert nes["UP_PATHWAY"] > 0
    assert nes["DOWN_PATHWAY"] < 0


def test_run_pathway_enrichment_validates_inputs():
    de_df = _make_de_df(2)
    with pytest.raises(ValueError):
        run_pathway_enrichment(de_df, _gene_sets(), method="gsva")
    with pytest.raises(KeyError):
        run_pathway_enrichment(de_df.drop(columns="regulation"), _gene_sets(), method="ora")


def test_parallel_enrichment_matches_sequential(tmp_path):
    pytest.importorskip("gseapy")
    de_tables = {
        "contrastA": _make_de_df(1),
        "contrastB": _make_de_df(2),
    }
    _write_gmt(tmp_path / "toy.gmt", _gene_sets())

    sequential = run_pathway_enrichment_for_contrasts(
        de_tables,
        libraries=["toy.gmt"],
        base_dir=tmp_path,
        n_jobs=1,
        backend="thread",
    )
    parallel = run_pathway_enrichment_for_contrasts(
        de_tables,
        libraries=["toy.gmt"],
        base_dir=tmp_path,
        n_jobs=2,
        backend="thread",
    )

    assert sequential.parameters["backend"] == "sequential"
    assert parallel.parameters["backend"] == "thread"
    assert sequential.libraries == ["toy"]

    for key in de_tables:
        seq_df = sequential.per_contrast[key]
        par_df = parallel.per_contrast[key]
        pd.testing.assert_frame_equal(
            seq_df.sort_values(["direction", "pathway"]).reset_index(drop=True),
            par_df.sort_values(["direction", "pathway"]).reset_index(drop=True),
            check_dtype=False,
        )


def test_enrichment_accepts_loaded_gene_sets_and_rejects_backend():
    pytest.importorskip("gseapy")
    tables = {"contrast": _make_de_df(3)}
    result = run_pathway_enrichment_for_contrasts(tables, {"toy": _gene_sets()}, n_jobs=1)
    assert result.available_contrasts == ["contrast"]
    assert not result.significant("contrast", direction="up").empty
    assert set(result.tidy()["contrast"]) == {"contrast"}
    with pytest.raises(ValueError):
        run_pathway_enrichment_for_contrasts(tables, {"toy": _gene_sets()}, backend="process")


def _make_mock_enrichment_df(pathways) -> pd.DataFrame:
    n = len(pathways)
    nes = np.linspace(-2.0, 2.0, num=n)
    padj = np.linspace(0.001, 0.2, num=n)
    return pd.DataFrame(
        {
            "library": "toy",
            "method": ["prerank"] * (n - 1) + ["ora"],
            "direction": ["ranked"] * (n - 1) + ["up"],
            "pathway": pathways,
            "nes": nes,
            "padj": padj,
            "signed_neglog10_padj": -np.log10(padj) * np.sign(nes),
        }
    )


def test_save_pathway_scurves_creates_outputs(tmp_path):
    contrast = "treated_vs_control"
    path_result = PathwayEnrichmentResult(
        per_contrast={contrast: _make_mock_enrichment_df(["PathwayA", "PathwayB", "PathwayC", "PathwayD"])},
        libraries=[],
        parameters={},
    )
    logs = []
    saved = path_result.save_pathway_scurves(
        contrast,
        pathways=["PathwayA", "Missing"],
        output_dir=tmp_path / "scurves",
        logger=logs.append,
        dpi=100,
    )
    assert len(saved) == 1
    assert saved[0].exists()
    assert any("s-curve plot" in msg for msg in logs)
    assert any("not found" in msg for msg in logs)


def test_save_pathway_scurves_skips_ora_only(tmp_path):
    df = _make_mock_enrichment_df(["PathwayA", "PathwayB"])
    df["method"] = "ora"
    path_result = PathwayEnrichmentResult(per_contrast={"c": df}, libraries=[], parameters={})
    logs = []
    assert path_result.save_pathway_scurves("c", output_dir=tmp_path, logger=logs.append) == []
    assert any("No prerank results" in msg for msg in logs)


def test_save_pathway_barplots_per_method(tmp_path):
    path_result = PathwayEnrichmentResult(
        per_contrast={"c1": _make_mock_enrichment_df(["P1", "P2", "P3"])},
        libraries=["toy"],
        parameters={},
    )
    logs = []
    saved = path_result.save_pathway_barplots(output_dir=tmp_path / "bars", logger=logs.append, dpi=100)
    assert len(saved) == 2
    assert all(path.exists() for path in saved)
    assert all("Saved pathway bar plot" in msg for msg in logs)


def test_write_tables_and_select(tmp_path):
    df = _make_mock_enrichment_df(["P1", "P2", "P3"])
    path_result = PathwayEnrichmentResult(per_contrast={"t/ctrl": df}, libraries=["toy"], parameters={})
    written = path_result.write_tables(tmp_path)
    assert [p.name for p in written] == ["enrichment_t_ctrl.csv"]
    assert len(path_result.select("t/ctrl", method="prerank")) == 2
    assert path_result.significant("t/ctrl", alpha=0.05)["pathway"].tolist() == ["P1"]


def test_pathway_enrichment_heatmap_creates_file(tmp_path):
    pathways = ["PathwayA", "PathwayB"]
    per_contrast = {
        "t1_vs_ctrl": pd.DataFrame(
            {
                "pathway": pathways,
                "signed_neglog10_padj": [1.2, -0.8],
            }
        ),
        "t2_vs_ctrl": pd.DataFrame(
            {
                "pathway": pathways,
                "signed_neglog10_padj": [0.4, 2.1],
            }
        ),
    }
    path_result = PathwayEnrichmentResult(
        per_contrast=per_contrast,
        libraries=[],
        parameters={},
    )
    out_path = tmp_path / "heatmap.png"
    fig, ax = path_result.plot_pathway_enrichment_heatmap(
        pathways,
        annot=True,
        out_path=out_path,
        logger=None,
    )
    assert out_path.exists()
    plt.close(fig)


def test_pathway_enrichment_heatmap_no_zscore():
    pathways = ["PathwayA"]
    per_contrast = {
        "t1_vs_ctrl": pd.DataFrame({"pathway": pathways, "signed_neglog10_padj": [1.0]}),
        "t2_vs_ctrl": pd.DataFrame({"pathway": pathways, "signed_neglog10_padj": [2.0]}),
    }
    path_result = PathwayEnrichmentResult(
        per_contrast=per_contrast,
        libraries=[],
        parameters={},
    )
    fig, ax = path_result.plot_pathway_enrichment_heatmap(
        pathways,
        zscore=False,
        return_fig=True,
    )
    plt.close(fig)


def test_pathway_enrichment_heatmap_transpose_keeps_pathway_zscores():
    pathways = ["P1", "P2", "P3"]
    stats = {"c1": [1.0, 4.0, -2.0], "c2": [2.0, 0.5, 3.0], "c3": [6.0, 1.0, 0.0]}
    per_contrast = {
        contrast: pd.DataFrame({"pathway": pathways, "signed_neglog10_padj": values})
        for contrast, values in stats.items()
    }
    path_result = PathwayEnrichmentResult(per_contrast=per_contrast, libraries=[], parameters={})

    plotted = []
    for transpose in (False, True):
        fig, ax = path_result.plot_pathway_enrichment_heatmap(pathways, transpose=transpose)
        plotted.append(np.sort(np.asarray(ax.collections[0].get_array(), dtype=float).ravel()))
        plt.close(fig)

    np.testing.assert_allclose(plotted[0], plotted[1])
    frame = pd.DataFrame(stats, index=pathways).T
    expected = (frame - frame.mean(axis=0)) / frame.std(axis=0, ddof=0)
    np.testing.assert_allclose(plotted[0], np.sort(expected.to_numpy().ravel()), atol=1e-8)
