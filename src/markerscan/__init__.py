"""
markerscan - Exploratory marker discovery for expression and genotype studies

Two analyses share this package: microarray differential expression with
surrogate variables, moderated statistics and gene-set enrichment, and SNP
association with Hardy-Weinberg filtering, inheritance models, haplotypes and
polygenic scores.
"""

__version__ = "0.1.0"

from markerscan.core.biomatrix import BioMatrix
from markerscan.core.transform import Transform
from markerscan.core.quality import QualityFlag

__all__ = [
    "BioMatrix",
    "Transform",
    "QualityFlag",
]
