"""
Gene annotation: identifier translation, gene-set collections and
over-representation testing.
"""

from .gene_sets import (
    GeneSetCollection,
    TermHierarchy,
    load_gmt,
    load_term_hierarchy,
    propagate_annotations,
)
from .enrichment import EnrichmentResult, hypergeometric_test, run_enrichment
from .id_mapping import IDMapper, MyGeneInfoMapper, TableIDMapper, translate_ids

__all__ = [
    "GeneSetCollection",
    "TermHierarchy",
    "load_gmt",
    "load_term_hierarchy",
    "propagate_annotations",
    "EnrichmentResult",
    "hypergeometric_test",
    "run_enrichment",
    "IDMapper",
    "MyGeneInfoMapper",
    "TableIDMapper",
    "translate_ids",
]
