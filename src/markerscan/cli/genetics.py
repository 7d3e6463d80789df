"""
markerscan genetics command - SNP association, haplotypes and polygenic score.

Usage:
    markerscan genetics --input asthma.txt --outcome casecontrol \\
        --covariates gender smoke --haplotype-snps rs1422993 rs1050152 rs2286455 \\
        --permutations 1000 --seed 1 --output results/asthma
    markerscan genetics --config asthma.yaml
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

from markerscan.cli._validators import _positive_int, _probability
from markerscan.cli.config import GeneticsConfig

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the genetics subcommand."""
    defaults = GeneticsConfig()

    parser = subparsers.add_parser(
        "genetics",
        help="Case-control SNP association analysis",
        description="Hardy-Weinberg filtering, inheritance-model tests with max-statistic "
                    "correction, haplotype GLM and sliding windows, LD and a polygenic score",
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")

    inputs = parser.add_argument_group("input / output")
    inputs.add_argument("--input", "-i", type=Path, default=None,
                        help="Samples x columns table of genotype calls and phenotypes")
    inputs.add_argument("--phenotypes", "-p", type=Path, default=None,
                        help="Extra phenotype table indexed by sample id")
    inputs.add_argument("--snps", nargs="+", default=None,
                        help="SNP columns (default: every column of genotype calls)")
    inputs.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory")
    inputs.add_argument("--format", choices=["png", "pdf", "svg"], default="png",
                        help="Figure format (default: png)")
    inputs.add_argument("--annotate-snps", action="store_true",
                        help="Fetch SNP positions and consequences from Ensembl")

    model = parser.add_argument_group("association")
    model.add_argument("--outcome", default=defaults.outcome,
                       help="Binary outcome column")
    model.add_argument("--case", default=defaults.case,
                       help="Outcome level meaning case (default: 1 for 0/1, else the last level)")
    model.add_argument("--covariates", nargs="+", default=defaults.covariates,
                       help="Adjustment covariate columns")
    model.add_argument("--hwe-alpha", type=_probability, default=defaults.hwe_alpha,
                       help=f"Drop SNPs with control HWE p below this (default: {defaults.hwe_alpha})")
    model.add_argument("--permutations", type=_positive_int, default=defaults.permutations,
                       help=f"Permutations for max-statistic and window tests (default: {defaults.permutations})")
    model.add_argument("--seed", type=int, default=defaults.seed,
                       help="Random seed")

    haplo = parser.add_argument_group("haplotypes / polygenic score")
    haplo.add_argument("--haplotype-snps", nargs="+", default=defaults.haplotype_snps,
                       help="Ordered SNP block for haplotype GLM, sliding windows and LD")
    haplo.add_argument("--window-widths", type=_positive_int, nargs="+", default=defaults.window_widths,
                       help="Sliding-window widths (default: 2 3 4)")
    haplo.add_argument("--freq-min", type=float, default=defaults.freq_min,
                       help=f"Pool haplotypes rarer than this (default: {defaults.freq_min})")
    haplo.add_argument("--screen-threshold", type=_probability, default=defaults.screen_threshold,
                       help=f"Univariate p-value screen for the score (default: {defaults.screen_threshold})")
    haplo.add_argument("--no-polygenic", dest="polygenic", action="store_false",
                       help="Skip the polygenic score")

    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.set_defaults(func=run_genetics)


def _resolve_case(outcome: pd.Series, case):
    """Match a case level given on the command line against the column's values."""
    if case is None:
        return None
    for level in outcome.dropna().unique():
        if str(level) == str(case):
            return level
    return case


def run_genetics(args: argparse.Namespace) -> int:
    """Execute the genetics command."""
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    if args.config:
        from markerscan.cli.config import load_config, merge_config_with_args, validate_config

        print(f"Loading configuration from: {args.config}")
        try:
            config = load_config(args.config)
            validate_config(config)
            cli_args = sys.argv[2:]  # Skip 'markerscan genetics'
            args = merge_config_with_args(config, args, cli_args)
            print("  Configuration loaded successfully")
        except (FileNotFoundError, ValueError) as e:
            print(f"ERROR: Config file error: {e}")
            return 1

    if not args.input:
        print("ERROR: --input is required (via CLI or config file)")
        return 1
    if not args.output:
        print("ERROR: --output is required (via CLI or config file)")
        return 1
    if not args.outcome:
        print("ERROR: --outcome is required (via CLI or config file)")
        return 1

    from markerscan.genetics.genotypes import load_genotype_table
    from markerscan.io.loaders import load_phenotype_table
    from markerscan.io.writers import write_results_table
    from markerscan.pipeline import run_genetic_association
    from markerscan.viz import FigureCollection, GeneticsVisualizer

    args.output.mkdir(parents=True, exist_ok=True)
    try:
        genotypes, phenotypes = load_genotype_table(args.input, snp_columns=args.snps)
        if args.phenotypes:
            extra = load_phenotype_table(args.phenotypes)
            phenotypes = phenotypes.join(extra.drop(columns=phenotypes.columns, errors="ignore"), how="left")
        if args.outcome not in phenotypes.columns:
            raise ValueError(f"Outcome column {args.outcome!r} not found; have {list(phenotypes.columns)}")

        result = run_genetic_association(
            genotypes,
            phenotypes,
            args.outcome,
            case=_resolve_case(phenotypes[args.outcome], args.case),
            covariate_columns=list(args.covariates or []),
            hwe_alpha=args.hwe_alpha,
            n_permutations=args.permutations,
            random_state=args.seed,
            haplotype_snps=args.haplotype_snps,
            window_widths=tuple(args.window_widths),
            freq_min=args.freq_min,
            screen_threshold=args.screen_threshold,
            polygenic=args.polygenic,
        )
    except Exception:
        logger.exception("Genetic association analysis failed")
        raise

    write_results_table(result.hwe, args.output / "hwe.csv")
    write_results_table(result.scan, args.output / "association.csv")
    write_results_table(result.ld.r2, args.output / "ld_r2.csv")
    write_results_table(result.ld.d_prime, args.output / "ld_dprime.csv")
    if result.haplotype_glm is not None:
        write_results_table(result.haplotype_glm.table, args.output / "haplotype_glm.csv")
    if result.sliding_window is not None:
        write_results_table(result.sliding_window.windows, args.output / "sliding_window.csv")
    if result.polygenic is not None:
        write_results_table(result.polygenic.screen, args.output / "polygenic_screen.csv")
        write_results_table(result.polygenic.score.to_frame(), args.output / "polygenic_score.csv")
        test = result.polygenic.score_test
        logger.info(
            f"Polygenic score ({len(result.polygenic.selected)} SNPs): OR {test.odds_ratio:.2f} "
            f"[{test.ci_lower:.2f}, {test.ci_upper:.2f}], p = {test.p_value:.3g}, "
            f"AUC = {result.polygenic.roc.auc:.3f}"
        )

    if args.annotate_snps:
        from markerscan.io.geo import fetch_snp_annotations

        rs_ids = [s for s in result.genotypes.snps if str(s).lower().startswith('rs')]
        write_results_table(fetch_snp_annotations(rs_ids), args.output / "snp_annotations.csv")

    viz = GeneticsVisualizer()
    figures = FigureCollection()
    if result.ld.r2.shape[0] >= 2:
        figures.add("ld_r2", viz.plot_ld_heatmap(result.ld, measure="r2"))
        figures.add("ld_dprime", viz.plot_ld_heatmap(result.ld, measure="d_prime"))
    if result.sliding_window is not None:
        block = [s for s in args.haplotype_snps if s in result.genotypes.snps]
        figures.add("sliding_window", viz.plot_sliding_window(result.sliding_window, block))
    if result.polygenic is not None:
        figures.add("roc", viz.plot_roc(result.polygenic.roc))
    figures.save_all(args.output / "figures", format=args.format)
    figures.close_all()

    logger.info(f"Results written to {args.output}")
    return 0
