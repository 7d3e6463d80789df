"""
markerscan expression command - Differential expression and gene-set enrichment.

Usage:
    markerscan expression --input GSE5281_series_matrix.txt --phenotypes pheno.csv \\
        --term disease_state=control --term age:numeric \\
        --contrast AD_vs_control="AD - control" --n-sv 2 --output results/alzheimer
    markerscan expression --config alzheimer.yaml
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

from markerscan.cli._validators import (
    _nonnegative_float,
    _nonnegative_int,
    _positive_int,
    _probability,
)
from markerscan.cli.config import (
    VALID_ADJUST,
    VALID_MISSING,
    VALID_TARGET_TYPES,
    EnrichmentConfig,
    ExpressionConfig,
)
from markerscan.stats.design_matrix import CovariateTerm

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the expression subcommand."""
    expression = ExpressionConfig()
    enrichment = EnrichmentConfig()

    parser = subparsers.add_parser(
        "expression",
        help="Differential expression with surrogate variables and enrichment",
        description="Quantile normalization, surrogate variables, moderated t-tests "
                    "and hypergeometric gene-set enrichment for microarray data",
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")

    inputs = parser.add_argument_group("input / output")
    inputs.add_argument("--input", "-i", type=Path, default=None,
                        help="Expression matrix (features x samples, delimiter sniffed)")
    inputs.add_argument("--geo", default=None,
                        help="Download a GSE series instead of reading --input")
    inputs.add_argument("--phenotypes", "-p", type=Path, default=None,
                        help="Phenotype table indexed by sample id (GEO characteristics used otherwise)")
    inputs.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory")
    inputs.add_argument("--format", choices=["png", "pdf", "svg"], default="png",
                        help="Figure format (default: png)")

    model = parser.add_argument_group("model")
    model.add_argument("--term", dest="terms", action="append", default=None,
                       help="Design term, repeatable: NAME, NAME=REFERENCE or NAME:numeric. "
                            "The first term is the variable of interest.")
    model.add_argument("--contrast", dest="contrasts", action="append", default=None,
                       help='Contrast, repeatable: NAME="B - A" (levels or design columns)')
    model.add_argument("--n-sv", type=_nonnegative_int, default=expression.n_sv,
                       help=f"Number of surrogate variables (default: {expression.n_sv})")
    model.add_argument("--no-normalize", dest="normalize", action="store_false", default=expression.normalize,
                       help="Input is already normalized on the log2 scale")
    model.add_argument("--missing", choices=VALID_MISSING, default=expression.missing,
                       help=f"Missing-value policy for quantile normalization (default: {expression.missing})")
    model.add_argument("--pseudocount", type=_nonnegative_float, default=expression.pseudocount,
                       help="Added before log2 (default: 0)")
    model.add_argument("--trend", action="store_true", default=expression.trend,
                       help="Intensity-dependent variance prior")
    model.add_argument("--adjust", choices=VALID_ADJUST, default=expression.adjust,
                       help=f"Multiple-testing correction (default: {expression.adjust})")
    model.add_argument("--p-threshold", type=_probability, default=expression.p_threshold,
                       help=f"Adjusted p-value threshold (default: {expression.p_threshold})")
    model.add_argument("--lfc", type=_nonnegative_float, default=expression.lfc,
                       help="Minimum |log2 fold change| for a call (default: 0)")

    sets = parser.add_argument_group("enrichment")
    sets.add_argument("--gmt", type=Path, nargs="+", default=enrichment.gmt,
                      help="Gene set files (GMT); enrichment is skipped without them")
    sets.add_argument("--hierarchy", type=Path, default=enrichment.hierarchy,
                      help="Term relations (parent<TAB>child) for propagation and the conditional test")
    sets.add_argument("--conditional", action="store_true", default=enrichment.conditional,
                      help="Conditional hypergeometric test (requires --hierarchy)")
    sets.add_argument("--enrichment-p", type=_probability, default=enrichment.p_cutoff,
                      help=f"Significance cutoff of the conditional test (default: {enrichment.p_cutoff})")
    sets.add_argument("--min-size", type=_positive_int, default=enrichment.min_size,
                      help=f"Smallest gene set tested (default: {enrichment.min_size})")
    sets.add_argument("--max-size", type=_positive_int, default=enrichment.max_size,
                      help=f"Largest gene set tested (default: {enrichment.max_size})")
    sets.add_argument("--annotation", type=Path, default=enrichment.annotation,
                      help="Platform annotation table mapping feature ids to genes")
    sets.add_argument("--id-column", default=enrichment.id_column,
                      help=f"Feature id column of --annotation (default: {enrichment.id_column})")
    sets.add_argument("--gene-column", default=enrichment.gene_column,
                      help=f"Gene id column of --annotation (default: {enrichment.gene_column})")
    sets.add_argument("--mygene", action="store_true", default=enrichment.mygene,
                      help="Map feature ids through mygene.info")
    sets.add_argument("--target-type", choices=VALID_TARGET_TYPES, default=enrichment.target_type,
                      help=f"Gene id type of the GMT files (default: {enrichment.target_type})")

    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.set_defaults(func=run_expression)


def _parse_term(spec) -> CovariateTerm:
    """``"age:numeric"``, ``"disease=control"``, ``"batch"`` or a config mapping."""
    if isinstance(spec, dict):
        if 'name' not in spec:
            raise ValueError(f"Term {spec} has no 'name'")
        return CovariateTerm(**spec)
    spec = str(spec).strip()
    if spec.endswith(':numeric'):
        return CovariateTerm(spec[:-len(':numeric')], kind="numeric")
    if '=' in spec:
        name, reference = spec.split('=', 1)
        return CovariateTerm(name.strip(), reference=reference.strip())
    return CovariateTerm(spec)


def _parse_contrasts(specs) -> dict:
    if isinstance(specs, dict):
        return dict(specs)
    contrasts = {}
    for spec in specs:
        if '=' not in spec:
            raise ValueError(f"Contrast {spec!r} must be NAME=EXPRESSION")
        name, expression = spec.split('=', 1)
        contrasts[name.strip()] = expression.strip()
    return contrasts


def _load_matrix(args: argparse.Namespace):
    from markerscan.io.geo import fetch_geo_series
    from markerscan.io.loaders import align_phenotypes, load_expression_matrix, load_phenotype_table

    if args.geo:
        matrix = fetch_geo_series(args.geo, destdir=args.output / "geo")
    else:
        matrix = load_expression_matrix(args.input)
    if args.phenotypes:
        phenotypes = load_phenotype_table(args.phenotypes)
        matrix = align_phenotypes(matrix, phenotypes, drop_unmatched=True)
    return matrix


def _id_mapper(args: argparse.Namespace, feature_ids):
    from markerscan.annotation.id_mapping import MyGeneInfoMapper, TableIDMapper

    if args.mygene:
        return MyGeneInfoMapper()
    if args.annotation:
        table = pd.read_csv(args.annotation, sep=None, engine="python", comment="#", dtype=str)
        return TableIDMapper(table, {'probe': args.id_column, args.target_type: args.gene_column})
    # Feature ids are already gene ids
    ids = [str(f) for f in feature_ids]
    return TableIDMapper(pd.DataFrame({'probe': ids, 'gene': ids}), {'probe': 'probe', args.target_type: 'gene'})


def _run_enrichment(args, result, figures) -> None:
    from markerscan.annotation.gene_sets import load_gmt, load_term_hierarchy, propagate_annotations
    from markerscan.io.writers import write_results_table
    from markerscan.pipeline import run_gene_set_enrichment
    from markerscan.viz.report import write_enrichment_report

    hierarchy = load_term_hierarchy(args.hierarchy) if args.hierarchy else None
    mapper = _id_mapper(args, result.matrix.feature_ids)

    tables = {}
    for gmt in args.gmt:
        collection = load_gmt(gmt)
        if hierarchy is not None:
            collection = propagate_annotations(collection, hierarchy)
        for contrast in result.decisions.columns:
            analysis = run_gene_set_enrichment(
                result,
                contrast,
                mapper,
                collection,
                hierarchy=hierarchy,
                conditional=args.conditional,
                target_type=args.target_type,
                p_cutoff=args.enrichment_p,
                min_size=args.min_size,
                max_size=args.max_size,
                adjust=args.adjust,
            )
            write_results_table(analysis.table, args.output / f"enrichment_{collection.source}_{contrast}.csv")
            tables[f"{collection.source}: {contrast}"] = analysis.table

    write_enrichment_report(
        tables,
        args.output / "report.html",
        figures=figures,
        title="Differential expression and enrichment",
        description=f"Input: {args.geo or args.input}",
    )


def run_expression(args: argparse.Namespace) -> int:
    """Execute the expression command."""
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
            cli_args = sys.argv[2:]  # Skip 'markerscan expression'
            args = merge_config_with_args(config, args, cli_args)
            print("  Configuration loaded successfully")
        except (FileNotFoundError, ValueError) as e:
            print(f"ERROR: Config file error: {e}")
            return 1

    if not args.input and not args.geo:
        print("ERROR: --input or --geo is required (via CLI or config file)")
        return 1
    if not args.output:
        print("ERROR: --output is required (via CLI or config file)")
        return 1
    if not args.terms:
        print("ERROR: at least one --term is required (via CLI or config file)")
        return 1
    if not args.contrasts:
        print("ERROR: at least one --contrast is required (via CLI or config file)")
        return 1
    if args.conditional and not args.hierarchy:
        print("ERROR: --conditional requires --hierarchy")
        return 1

    from markerscan.io.writers import write_csv_matrix, write_results_table
    from markerscan.pipeline import run_differential_expression
    from markerscan.viz import ExpressionVisualizer, FigureCollection, decision_sets

    args.output.mkdir(parents=True, exist_ok=True)
    try:
        terms = [_parse_term(t) for t in args.terms]
        contrasts = _parse_contrasts(args.contrasts)
        raw = _load_matrix(args)
        result = run_differential_expression(
            raw,
            terms,
            contrasts,
            n_sv=args.n_sv,
            normalize=args.normalize,
            missing=args.missing,
            pseudocount=args.pseudocount,
            trend=args.trend,
            adjust=args.adjust,
            p_threshold=args.p_threshold,
            lfc=args.lfc,
        )
    except Exception:
        logger.exception("Differential expression failed")
        raise

    write_csv_matrix(result.matrix, args.output / "normalized", write_quality_flags=False)
    for name, table in result.tables.items():
        write_results_table(table, args.output / f"de_{name}.csv")
    write_results_table(result.decisions, args.output / "decisions.csv")
    if result.surrogates.n_sv:
        sv = pd.DataFrame(
            result.surrogates.sv,
            index=result.matrix.sample_ids,
            columns=[f"SV{k + 1}" for k in range(result.surrogates.n_sv)],
        )
        write_results_table(sv, args.output / "surrogate_variables.csv")

    viz = ExpressionVisualizer()
    figures = FigureCollection()
    if args.normalize:
        before = raw.select_samples(raw.sample_ids.isin(result.matrix.sample_ids))
        figures.add("density", viz.plot_density(before, result.matrix))
    for name, table in result.tables.items():
        figures.add(f"volcano_{name}", viz.plot_volcano(
            table, lfc_threshold=args.lfc, p_threshold=args.p_threshold, title=name,
        ))
    sets = decision_sets(result.decisions)
    if len(sets) in (2, 3):
        figures.add("venn", viz.plot_venn(sets))
    figures.save_all(args.output / "figures", format=args.format)

    if args.gmt:
        try:
            _run_enrichment(args, result, figures)
        except Exception:
            logger.exception("Enrichment failed")
            raise

    figures.close_all()
    logger.info(f"Results written to {args.output}")
    return 0
