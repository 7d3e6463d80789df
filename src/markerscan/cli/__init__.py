"""
markerscan CLI - Command-line interface for exploratory marker discovery.

Commands:
    markerscan expression  - Differential expression and gene-set enrichment
    markerscan genetics    - SNP association, haplotypes and polygenic score
"""

import argparse
import sys
from typing import Optional, List


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for markerscan."""
    from markerscan import __version__

    parser = argparse.ArgumentParser(
        prog="markerscan",
        description="Marker discovery for microarray expression and case-control SNP studies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  expression    Normalization, surrogate variables, moderated t-tests, enrichment
  genetics      HWE filter, inheritance models, haplotypes, LD, polygenic score

Examples:
  markerscan expression --geo GSE5281 --term disease_state=control \\
      --contrast AD_vs_control="AD - control" --n-sv 2 --output results/alzheimer
  markerscan genetics --input asthma.txt --outcome casecontrol --output results/asthma
  markerscan genetics --config asthma.yaml --permutations 10000
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from markerscan.cli import expression, genetics
    expression.register_parser(subparsers)
    genetics.register_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
