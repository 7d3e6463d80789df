"""
Core data structures shared by the expression and genetics analyses.

1. BioMatrix: probes x samples matrix with aligned identifiers and metadata
2. QualityFlag: per-value provenance flags
3. Transform: base class for immutable matrix transformations
"""

from markerscan.core.biomatrix import BioMatrix
from markerscan.core.quality import QualityFlag
from markerscan.core.transform import Transform

__all__ = [
    'BioMatrix',
    'QualityFlag',
    'Transform',
]
