"""
Over-representation testing of gene sets (hypergeometric / GOstats style).

Biological Context:
    After differential expression, the question becomes "which biological
    processes are over-represented among the significant genes?" Each term
    is tested by drawing the selected genes from the universe of genes
    measured on the array and counting how many fall into the term.

Statistical Model:
    - Universe of N genes (every gene with a probe on the array)
    - M of them annotated to the term
    - n selected (significant) genes
    - k selected genes annotated to the term
    - p = P(X >= k), X ~ Hypergeometric(N, M, n)

Conditional test (Alexa et al. 2006, GOstats ``conditional=TRUE``):
    GO terms are nested, so a parent inherits the signal of a strongly
    enriched child and shows up as significant for no reason of its own.
    Terms are processed children-first; before testing a parent, the genes
    of its significant children (p < p_cutoff) are removed from the parent's
    gene set and from the universe (and thus from the selected set).

Examples:
    >>> table = run_enrichment(
    ...     selected=significant_entrez,
    ...     universe=array_entrez,
    ...     collection=go_bp,
    ...     hierarchy=go_dag,
    ...     conditional=True,
    ... )
    >>> table.head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Literal

import numpy as np
import pandas as pd
from scipy.stats import hypergeom

from markerscan.annotation.gene_sets import GeneSetCollection, TermHierarchy
from markerscan.stats.multiple_testing import adjust_pvalues

__all__ = [
    'EnrichmentResult',
    'hypergeometric_test',
    'run_enrichment',
    'ENRICHMENT_COLUMNS',
]

logger = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = [
    'term', 'description', 'size', 'expected', 'count',
    'odds_ratio', 'p_value', 'adj_p_value',
]


@dataclass(frozen=True)
class EnrichmentResult:
    """
    Result of one hypergeometric test.

    Attributes:
        p_value: P(X >= count)
        count: Selected genes in the term (k)
        size: Term genes within the universe (M)
        universe_size: N
        selected_size: n
        expected: n * M / N
        odds_ratio: Sample odds ratio of the 2x2 table (inf when a
            denominator cell is empty and count > 0)
    """

    p_value: float
    count: int
    size: int
    universe_size: int
    selected_size: int
    expected: float
    odds_ratio: float

    @property
    def enrichment_ratio(self) -> float:
        return self.count / self.expected if self.expected > 0 else 0.0


def _odds_ratio(k: int, M: int, n: int, N: int) -> float:
    a = k
    b = n - k
    c = M - k
    d = (N - M) - (n - k)
    if b * c > 0:
        return (a * d) / (b * c)
    return float('inf') if a > 0 else 0.0


def hypergeometric_test(
    selected: Iterable[str],
    term_genes: Iterable[str],
    universe: Iterable[str],
) -> EnrichmentResult:
    """
    One-sided hypergeometric test for over-representation.

    Args:
        selected: Selected genes; must all belong to the universe
        term_genes: Genes annotated to the term (intersected with universe)
        universe: All genes that could have been selected

    Returns:
        EnrichmentResult. Zero overlap gives p = 1.

    Raises:
        ValueError: If selected genes are not a subset of the universe
    """
    selected = frozenset(selected)
    universe = frozenset(universe)
    outside = selected - universe
    if outside:
        raise ValueError(
            f"{len(outside)} selected genes are not in the universe, "
            f"e.g. {sorted(outside)[:3]}"
        )
    term = frozenset(term_genes) & universe

    N = len(universe)
    M = len(term)
    n = len(selected)
    k = len(selected & term)
    expected = n * M / N if N > 0 else 0.0

    if k == 0:
        p_value = 1.0
    else:
        p_value = float(hypergeom.sf(k - 1, N, M, n))

    return EnrichmentResult(
        p_value=min(max(p_value, 0.0), 1.0),
        count=k,
        size=M,
        universe_size=N,
        selected_size=n,
        expected=float(expected),
        odds_ratio=float(_odds_ratio(k, M, n, N)),
    )


def run_enrichment(
    selected: Iterable[str],
    universe: Iterable[str],
    collection: GeneSetCollection,
    hierarchy: TermHierarchy | None = None,
    conditional: bool = False,
    p_cutoff: float = 0.01,
    min_size: int = 5,
    max_size: int | None = 500,
    adjust: Literal["BH", "BY", "bonferroni", "holm", "none"] = "BH",
) -> pd.DataFrame:
    """
    Test every term of a collection for over-representation.

    Args:
        selected: Selected genes (subset of universe)
        universe: Background genes
        collection: Term -> genes
        hierarchy: Term relations, required for the conditional test
        conditional: Remove genes of significant children before testing
            parents
        p_cutoff: Raw p-value defining "significant child"
        min_size: Skip terms with fewer universe genes
        max_size: Skip terms with more universe genes (None = no limit)
        adjust: Multiple-testing method across the tested terms

    Returns:
        DataFrame with ENRICHMENT_COLUMNS, sorted by p-value

    Raises:
        ValueError: If selected is not within universe, or conditional is
            requested without a hierarchy
    """
    selected = frozenset(selected)
    universe = frozenset(universe)
    outside = selected - universe
    if outside:
        raise ValueError(
            f"{len(outside)} selected genes are not in the universe, "
            f"e.g. {sorted(outside)[:3]}"
        )
    if conditional and hierarchy is None:
        raise ValueError("The conditional test needs a term hierarchy")

    testable = collection.restrict(universe).filter_size(min_size, max_size)
    logger.info(
        f"Enrichment: {len(selected)} selected / {len(universe)} universe genes, "
        f"{len(testable)} of {len(collection)} terms within size limits"
    )

    if conditional:
        order = hierarchy.children_first(testable)
    else:
        order = sorted(testable)

    results: dict[str, EnrichmentResult] = {}
    significant: set[str] = set()
    for term in order:
        term_genes = testable.genes(term)
        term_universe = universe
        term_selected = selected

        if conditional:
            removed: set[str] = set()
            for child in hierarchy.children_of(term):
                if child in significant:
                    removed |= testable.genes(child)
            if removed:
                term_genes = term_genes - removed
                term_universe = universe - removed
                term_selected = selected - removed
                logger.debug(f"{term}: conditioning removed {len(removed)} genes of significant children")

        result = hypergeometric_test(term_selected, term_genes, term_universe)
        results[term] = result
        if result.p_value < p_cutoff:
            significant.add(term)

    if not results:
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    table = pd.DataFrame([
        {
            'term': term,
            'description': collection.describe(term),
            'size': r.size,
            'expected': r.expected,
            'count': r.count,
            'odds_ratio': r.odds_ratio,
            'p_value': r.p_value,
        }
        for term, r in results.items()
    ])
    table['adj_p_value'] = adjust_pvalues(table['p_value'].to_numpy(), method=adjust)
    table = table.sort_values(['p_value', 'term'], kind='mergesort').reset_index(drop=True)

    n_sig = int(np.sum(table['adj_p_value'] < 0.05))
    logger.info(f"Enrichment: {n_sig} terms with adjusted p < 0.05 ({adjust})")
    return table[ENRICHMENT_COLUMNS]
