"""
I/O for expression matrices, phenotype and genotype tables, and remote sources.

Key Functions:
    - load_expression_matrix: Delimited probes x samples file -> BioMatrix
    - load_phenotype_table: One row per sample covariate table
    - align_phenotypes: Attach phenotypes in matrix sample order
    - write_csv_matrix / write_results_table: CSV outputs

Remote sources (GEOparse, Ensembl REST) live in ``markerscan.io.geo`` and are
imported on demand.
"""

from markerscan.io.loaders import (
    align_phenotypes,
    load_expression_matrix,
    load_genotype_frame,
    load_phenotype_table,
    sniff_delimiter,
)
from markerscan.io.writers import write_csv_matrix, write_results_table

__all__ = [
    'align_phenotypes',
    'load_expression_matrix',
    'load_genotype_frame',
    'load_phenotype_table',
    'sniff_delimiter',
    'write_csv_matrix',
    'write_results_table',
]
