"""
Tests for the command-line interface and config handling.
"""

import argparse
import json
import sys
from pathlib import Path

import pandas as pd
import pytest
import yaml

from markerscan.cli import main
from markerscan.cli._validators import (
    _nonnegative_float,
    _nonnegative_int,
    _positive_int,
    _probability,
)
from markerscan.cli.config import load_config, merge_config_with_args, validate_config


class TestValidators:
    """argparse type functions."""

    def test_accepts_valid_values(self):
        assert _positive_int("3") == 3
        assert _nonnegative_int("0") == 0
        assert _probability("0.05") == 0.05
        assert _nonnegative_float("0") == 0.0

    @pytest.mark.parametrize("func,value", [
        (_positive_int, "0"),
        (_nonnegative_int, "-1"),
        (_probability, "1"),
        (_probability, "0"),
        (_nonnegative_float, "-0.5"),
    ])
    def test_rejects_out_of_range(self, func, value):
        with pytest.raises(argparse.ArgumentTypeError):
            func(value)


class TestConfig:
    """Config loading, validation and merging."""

    def test_load_yaml_and_json(self, tmp_path):
        yaml_path = tmp_path / "run.yaml"
        yaml_path.write_text("genetics:\n  outcome: casecontrol\n  permutations: 99\n")
        assert load_config(yaml_path) == {"genetics": {"outcome": "casecontrol", "permutations": 99}}

        json_path = tmp_path / "run.json"
        json_path.write_text(json.dumps({"expression": {"n_sv": 2}}))
        assert load_config(json_path)["expression"]["n_sv"] == 2

        empty = tmp_path / "empty.yaml"
        empty.write_text("")
        assert load_config(empty) == {}

    def test_load_errors(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

        toml = tmp_path / "run.toml"
        toml.write_text("a = 1")
        with pytest.raises(ValueError, match="Unsupported config format"):
            load_config(toml)

        listing = tmp_path / "list.yaml"
        listing.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping at top level"):
            load_config(listing)

        broken = tmp_path / "broken.yaml"
        broken.write_text("genetics: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(broken)

    @pytest.mark.parametrize("config,message", [
        ({"expression": ["not", "a", "mapping"]}, "must be a mapping"),
        ({"expression": {"missing": "drop"}}, "missing-value policy"),
        ({"expression": {"adjust": "fdr"}}, "adjustment method"),
        ({"expression": {"n_sv": -1}}, "n_sv"),
        ({"expression": {"contrasts": ["AD - control"]}}, "contrasts"),
        ({"enrichment": {"target_type": "refseq"}}, "target id type"),
        ({"genetics": {"permutations": 0}}, "permutations"),
        ({"genetics": {"window_widths": [2, 0]}}, "window_widths"),
        ({"genetics": {"hwe_alpha": 1.5}}, "hwe_alpha"),
        ({"genetics": {"freq_min": 1.0}}, "freq_min"),
    ])
    def test_validation_errors(self, config, message):
        with pytest.raises(ValueError, match=message):
            validate_config(config)

    def test_valid_config_passes(self):
        validate_config({
            "expression": {"n_sv": 2, "missing": "impute", "contrasts": {"AD": "AD - control"}},
            "genetics": {"permutations": 100, "window_widths": [2, 3], "hwe_alpha": 0.001},
        })

    def test_merge_priority(self):
        args = argparse.Namespace(outcome=None, permutations=1000, seed=None, output=None, input=Path("cli.txt"))
        config = {
            "input": "config.txt",
            "output": "results",
            "genetics": {"outcome": "casecontrol", "permutations": 50, "seed": 7},
            "expression": {"n_sv": 3},
        }
        merged = merge_config_with_args(config, args, ["--input", "cli.txt", "--permutations", "200"])

        assert merged.input == Path("cli.txt")
        assert merged.output == Path("results")
        assert merged.outcome == "casecontrol"
        assert merged.permutations == 1000
        assert merged.seed == 7
        # Keys the subcommand does not know are ignored
        assert not hasattr(merged, "n_sv")


class TestMain:
    """Top-level dispatcher."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "markerscan" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0


@pytest.fixture
def genotype_file(case_control_frame, tmp_path):
    path = tmp_path / "asthma.txt"
    case_control_frame.to_csv(path, sep="\t", index_label="id")
    return path


class TestGeneticsCommand:
    """``markerscan genetics`` end to end."""

    def test_run(self, genotype_file, tmp_path):
        out = tmp_path / "results"
        code = main([
            "genetics",
            "--input", str(genotype_file),
            "--outcome", "casecontrol",
            "--covariates", "age",
            "--permutations", "19",
            "--seed", "1",
            "--haplotype-snps", "rs1", "rs2", "rs3",
            "--window-widths", "2",
            "--output", str(out),
        ])
        assert code == 0

        association = pd.read_csv(out / "association.csv", index_col=0)
        assert "rs1" in association.index
        assert "rs_het" not in association.index
        hwe = pd.read_csv(out / "hwe.csv", index_col=0)
        assert "rs_het" in hwe.index
        for name in ("haplotype_glm.csv", "sliding_window.csv", "polygenic_score.csv", "ld_r2.csv"):
            assert (out / name).exists()
        assert (out / "figures" / "roc.png").exists()
        assert (out / "figures" / "sliding_window.png").exists()

    def test_missing_required_arguments(self, genotype_file, tmp_path, capsys):
        assert main(["genetics", "--output", str(tmp_path)]) == 1
        assert "--input is required" in capsys.readouterr().out
        assert main(["genetics", "--input", str(genotype_file), "--output", str(tmp_path)]) == 1
        assert "--outcome is required" in capsys.readouterr().out

    def test_unknown_outcome_column(self, genotype_file, tmp_path):
        with pytest.raises(ValueError, match="Outcome column"):
            main([
                "genetics", "--input", str(genotype_file), "--outcome", "asthma",
                "--output", str(tmp_path / "out"),
            ])

    def test_config_file(self, genotype_file, tmp_path, monkeypatch):
        out = tmp_path / "from_config"
        config = tmp_path / "asthma.yaml"
        config.write_text(yaml.safe_dump({
            "input": str(genotype_file),
            "output": str(out),
            "genetics": {"outcome": "casecontrol", "permutations": 9, "seed": 3},
        }))
        argv = ["markerscan", "genetics", "--config", str(config), "--no-polygenic"]
        monkeypatch.setattr(sys, "argv", argv)

        assert main(argv[1:]) == 0
        assert (out / "association.csv").exists()
        assert not (out / "polygenic_score.csv").exists()

    def test_bad_config(self, tmp_path, capsys):
        config = tmp_path / "bad.yaml"
        config.write_text(yaml.safe_dump({"genetics": {"permutations": -1}}))
        assert main(["genetics", "--config", str(config)]) == 1
        assert "Config file error" in capsys.readouterr().out


class TestExpressionCommand:
    """``markerscan expression`` end to end."""

    @pytest.fixture
    def inputs(self, expression_matrix, tmp_path):
        matrix_path = tmp_path / "matrix.txt"
        expression_matrix.to_frame().to_csv(matrix_path, sep="\t", index_label="ID_REF")
        pheno_path = tmp_path / "phenotypes.txt"
        expression_matrix.sample_metadata.to_csv(pheno_path, sep="\t", index_label="sample")

        probes = list(expression_matrix.feature_ids)
        gmt_path = tmp_path / "toy_sets.gmt"
        gmt_path.write_text(
            "planted\tprobes shifted in AD\t" + "\t".join(probes[:30]) + "\n"
            + "background\tunchanged probes\t" + "\t".join(probes[100:160]) + "\n"
        )
        return matrix_path, pheno_path, gmt_path

    def test_run_with_enrichment(self, inputs, tmp_path):
        matrix_path, pheno_path, gmt_path = inputs
        out = tmp_path / "results"
        code = main([
            "expression",
            "--input", str(matrix_path),
            "--phenotypes", str(pheno_path),
            "--term", "disease=control",
            "--contrast", "AD_vs_control=AD - control",
            "--gmt", str(gmt_path),
            "--output", str(out),
        ])
        assert code == 0

        table = pd.read_csv(out / "de_AD_vs_control.csv", index_col=0)
        assert len(table) == 300
        assert (out / "normalized.data.csv").exists()
        assert (out / "figures" / "density.png").exists()
        assert (out / "figures" / "volcano_AD_vs_control.png").exists()

        enrichment = pd.read_csv(out / "enrichment_toy_sets_AD_vs_control.csv")
        assert enrichment.iloc[0]["term"] == "planted"
        assert "planted" in (out / "report.html").read_text()

    def test_conditional_needs_hierarchy(self, inputs, tmp_path, capsys):
        matrix_path, pheno_path, gmt_path = inputs
        code = main([
            "expression", "--input", str(matrix_path), "--phenotypes", str(pheno_path),
            "--term", "disease=control", "--contrast", "AD_vs_control=AD - control",
            "--gmt", str(gmt_path), "--conditional", "--output", str(tmp_path / "out"),
        ])
        assert code == 1
        assert "--conditional requires --hierarchy" in capsys.readouterr().out

    def test_requires_terms_and_contrasts(self, inputs, tmp_path, capsys):
        matrix_path, _, _ = inputs
        assert main(["expression", "--input", str(matrix_path), "--output", str(tmp_path)]) == 1
        assert "--term is required" in capsys.readouterr().out
