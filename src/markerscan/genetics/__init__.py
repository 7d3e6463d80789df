"""
SNP association for a binary outcome: genotype handling, Hardy-Weinberg
filtering, inheritance-model tests with max-statistic correction, haplotype
association and polygenic scoring.
"""

from .genotypes import GenotypeTable, load_genotype_table, parse_genotype
from .hwe import filter_hwe, hwe_chisq_test, hwe_exact_test, hwe_table
from .association import (
    InheritanceModel,
    MaxStatResult,
    ModelFit,
    association_scan,
    association_test,
    encode_outcome,
    fit_inheritance_model,
    max_statistic_test,
)
from .haplotype import (
    HaplotypeEstimate,
    HaplotypeGLMResult,
    HaplotypeScoreResult,
    SlidingWindowResult,
    estimate_haplotypes,
    haplotype_glm,
    haplotype_score,
    sliding_window_scan,
)
from .ld import LDResult, pairwise_ld
from .polygenic import (
    PolygenicModel,
    ROCResult,
    ScoreTest,
    build_polygenic_model,
    forward_stepwise,
    polygenic_score,
    risk_dosages,
    roc_analysis,
    screen_snps,
)

__all__ = [
    "GenotypeTable",
    "load_genotype_table",
    "parse_genotype",
    "filter_hwe",
    "hwe_chisq_test",
    "hwe_exact_test",
    "hwe_table",
    "InheritanceModel",
    "MaxStatResult",
    "ModelFit",
    "association_scan",
    "association_test",
    "encode_outcome",
    "fit_inheritance_model",
    "max_statistic_test",
    "HaplotypeEstimate",
    "HaplotypeGLMResult",
    "HaplotypeScoreResult",
    "SlidingWindowResult",
    "estimate_haplotypes",
    "haplotype_glm",
    "haplotype_score",
    "sliding_window_scan",
    "LDResult",
    "pairwise_ld",
    "PolygenicModel",
    "ROCResult",
    "ScoreTest",
    "build_polygenic_model",
    "forward_stepwise",
    "polygenic_score",
    "risk_dosages",
    "roc_analysis",
    "screen_snps",
]
