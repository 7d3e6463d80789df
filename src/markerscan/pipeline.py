"""
End-to-end analysis stages.

Each stage takes immutable inputs and returns a frozen result object, so
intermediate results can be inspected, saved or passed on without shared
session state:

    matrix --run_differential_expression--> ExpressionResult
    ExpressionResult --run_gene_set_enrichment--> EnrichmentAnalysis
    genotypes + phenotypes --run_genetic_association--> GeneticsResult

Examples:
    >>> matrix = align_phenotypes(load_expression_matrix("GSE5281.txt"), pheno)
    >>> result = run_differential_expression(
    ...     matrix,
    ...     terms=[CovariateTerm("disease", reference="control"), CovariateTerm("sex")],
    ...     contrasts={"AD_vs_control": "AD - control"},
    ...     n_sv=2,
    ... )
    >>> result.tables["AD_vs_control"].head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from markerscan.annotation.enrichment import run_enrichment
from markerscan.annotation.gene_sets import GeneSetCollection, TermHierarchy
from markerscan.annotation.id_mapping import IDMapper, translate_ids
from markerscan.core.biomatrix import BioMatrix
from markerscan.genetics.association import association_scan, encode_outcome
from markerscan.genetics.genotypes import GenotypeTable
from markerscan.genetics.haplotype import (
    HaplotypeGLMResult,
    SlidingWindowResult,
    haplotype_glm,
    sliding_window_scan,
)
from markerscan.genetics.hwe import filter_hwe
from markerscan.genetics.ld import LDResult, pairwise_ld
from markerscan.genetics.polygenic import PolygenicModel, build_polygenic_model
from markerscan.stats.design_matrix import (
    CovariateTerm,
    DesignMatrix,
    build_design_matrix,
    make_contrasts,
)
from markerscan.stats.ebayes import EBayesFit, decide_tests, ebayes, top_table
from markerscan.stats.linear_model import LinearModelFit, contrasts_fit, lm_fit
from markerscan.stats.normalization import MissingPolicy, normalize_expression
from markerscan.stats.surrogate import SurrogateResult, estimate_surrogate_variables

__all__ = [
    'ExpressionResult',
    'run_differential_expression',
    'EnrichmentAnalysis',
    'run_gene_set_enrichment',
    'GeneticsResult',
    'run_genetic_association',
]

logger = logging.getLogger(__name__)

AdjustMethod = Literal["BH", "BY", "bonferroni", "holm", "none"]


# =============================================================================
# Differential expression
# =============================================================================

@dataclass(frozen=True)
class ExpressionResult:
    """
    Output of the differential expression stage.

    Attributes:
        matrix: Normalized matrix restricted to the modelled samples
        design: Final design (covariates plus surrogate variables)
        surrogates: Surrogate variable estimate (no columns when n_sv = 0)
        fit: Contrast-level linear model fit
        ebayes: Moderated statistics
        tables: Contrast name -> ``top_table`` over all features
        decisions: Features x contrasts -1/0/1 calls
        p_threshold: Adjusted p-value threshold behind ``decisions``
    """

    matrix: BioMatrix
    design: DesignMatrix
    surrogates: SurrogateResult
    fit: LinearModelFit
    ebayes: EBayesFit
    tables: dict = field(repr=False)
    decisions: pd.DataFrame = field(repr=False)
    p_threshold: float = 0.05

    def significant(self, contrast: str) -> pd.Index:
        """Features called up or down for a contrast."""
        if contrast not in self.decisions.columns:
            raise ValueError(f"Unknown contrast {contrast!r}; have {list(self.decisions.columns)}")
        return self.decisions.index[self.decisions[contrast] != 0]


def run_differential_expression(
    matrix: BioMatrix,
    terms: Sequence[CovariateTerm],
    contrasts: Mapping[str, str | Mapping[str, float]],
    n_sv: int = 0,
    normalize: bool = True,
    missing: MissingPolicy | str = MissingPolicy.PROPAGATE,
    pseudocount: float = 0.0,
    log_transform: bool = True,
    intercept: bool = True,
    sva_iterations: int = 5,
    proportion: float = 0.01,
    trend: bool = False,
    adjust: AdjustMethod = "BH",
    p_threshold: float = 0.05,
    lfc: float = 0.0,
) -> ExpressionResult:
    """
    Normalize, model and test a microarray experiment.

    Args:
        matrix: Raw intensities with sample metadata attached
        terms: Design terms; the first is the variable of interest and is
            left out of the null model used for surrogate estimation
        contrasts: Contrast name -> ``"B - A"`` expression or column weights
        n_sv: Number of surrogate variables (fixed, not estimated)
        normalize: Quantile normalize (and log2 transform) first
        missing: Missing-value policy for quantile normalization
        pseudocount: Added before log2
        log_transform: Apply log2 after quantile normalization
        intercept: Include an intercept in the design
        sva_iterations: Re-weighting iterations for surrogate estimation
        proportion: Assumed share of differentially expressed features (B statistic)
        trend: Intensity-dependent variance prior
        adjust: Multiple-testing method
        p_threshold: Adjusted p-value threshold for ``decisions``
        lfc: Minimum |log2 fold change| for ``decisions``

    Returns:
        ExpressionResult
    """
    if matrix.sample_metadata.shape[1] == 0:
        raise ValueError("Matrix has no sample metadata; attach phenotypes with align_phenotypes")

    if normalize:
        matrix = normalize_expression(matrix, missing=missing, pseudocount=pseudocount, log_transform=log_transform)

    design = build_design_matrix(matrix.sample_metadata, terms, intercept=intercept)
    if not design.sample_mask.all():
        matrix = matrix.select_samples(design.sample_mask)
    data = matrix.data

    if n_sv > 0:
        null_design = design.drop_terms([terms[0].name])
        surrogates = estimate_surrogate_variables(data, design, null_design, n_sv, n_iterations=sva_iterations)
    else:
        surrogates = estimate_surrogate_variables(data, design, design, 0)
    design = design.with_surrogates(surrogates.sv)

    fit = lm_fit(data, design, feature_ids=matrix.feature_ids)
    contrast_matrix = make_contrasts(design, contrasts)
    fit = contrasts_fit(fit, contrast_matrix)
    moderated = ebayes(fit, proportion=proportion, trend=trend)

    tables = {
        name: top_table(moderated, name, adjust=adjust, sort_by="p")
        for name in contrast_matrix.names
    }
    decisions = decide_tests(moderated, p_value=p_threshold, lfc=lfc, adjust=adjust)
    for name in contrast_matrix.names:
        logger.info(
            f"{name}: {int((decisions[name] > 0).sum())} up, {int((decisions[name] < 0).sum())} down "
            f"(adjusted p < {p_threshold}, {adjust})"
        )

    return ExpressionResult(
        matrix=matrix,
        design=design,
        surrogates=surrogates,
        fit=fit,
        ebayes=moderated,
        tables=tables,
        decisions=decisions,
        p_threshold=p_threshold,
    )


# =============================================================================
# Enrichment
# =============================================================================

@dataclass(frozen=True)
class EnrichmentAnalysis:
    """
    Output of the enrichment stage for one contrast.

    Attributes:
        contrast: Contrast the selected genes come from
        mapping: Feature id -> gene id
        selected: Gene ids of significant features
        universe: Gene ids of all features on the array
        table: ``run_enrichment`` result
    """

    contrast: str
    mapping: dict = field(repr=False)
    selected: frozenset = field(repr=False)
    universe: frozenset = field(repr=False)
    table: pd.DataFrame = field(repr=False)


def run_gene_set_enrichment(
    result: ExpressionResult,
    contrast: str,
    mapper: IDMapper,
    collection: GeneSetCollection,
    hierarchy: Optional[TermHierarchy] = None,
    conditional: bool = False,
    source_type: str = 'probe',
    target_type: str = 'entrez',
    direction: Literal["any", "up", "down"] = "any",
    p_cutoff: float = 0.01,
    min_size: int = 5,
    max_size: Optional[int] = 500,
    adjust: AdjustMethod = "BH",
) -> EnrichmentAnalysis:
    """
    Test gene sets for over-representation among a contrast's significant
    features.

    The universe is every feature that maps to a gene; the selected set is
    the mapped significant features, so it is always within the universe.
    """
    if contrast not in result.decisions.columns:
        raise ValueError(f"Unknown contrast {contrast!r}; have {list(result.decisions.columns)}")

    calls = result.decisions[contrast]
    if direction == "up":
        significant = calls.index[calls > 0]
    elif direction == "down":
        significant = calls.index[calls < 0]
    else:
        significant = calls.index[calls != 0]

    mapping = translate_ids(result.matrix.feature_ids, mapper, source_type=source_type, target_type=target_type)
    universe = frozenset(mapping.values())
    selected = frozenset(mapping[f] for f in significant.astype(str) if f in mapping)
    logger.info(
        f"Enrichment for {contrast} ({direction}): {len(significant)} significant features -> "
        f"{len(selected)} genes; universe {len(universe)} genes"
    )

    table = run_enrichment(
        selected,
        universe,
        collection,
        hierarchy=hierarchy,
        conditional=conditional,
        p_cutoff=p_cutoff,
        min_size=min_size,
        max_size=max_size,
        adjust=adjust,
    )
    return EnrichmentAnalysis(
        contrast=contrast,
        mapping=mapping,
        selected=selected,
        universe=universe,
        table=table,
    )


# =============================================================================
# Genetic association
# =============================================================================

@dataclass(frozen=True)
class GeneticsResult:
    """
    Output of the SNP association stage.

    Attributes:
        hwe: HWE table in controls (with ``passed`` column)
        genotypes: Genotypes of SNPs passing HWE
        scan: Per-SNP inheritance-model results with max-statistic p-values
        ld: Pairwise LD over the haplotype block (or all kept SNPs)
        haplotype_glm: Haplotype GLM over the block (None without a block)
        sliding_window: Sliding-window scan over the block (None without a block)
        polygenic: Polygenic score model (None when disabled)
    """

    hwe: pd.DataFrame
    genotypes: GenotypeTable
    scan: pd.DataFrame
    ld: LDResult
    haplotype_glm: Optional[HaplotypeGLMResult] = None
    sliding_window: Optional[SlidingWindowResult] = None
    polygenic: Optional[PolygenicModel] = None


def run_genetic_association(
    genotypes: GenotypeTable,
    phenotypes: pd.DataFrame,
    outcome_column: str,
    case=None,
    covariate_columns: Sequence[str] = (),
    hwe_alpha: float = 0.001,
    n_permutations: int = 1000,
    random_state: Optional[int] = None,
    haplotype_snps: Optional[Sequence[str]] = None,
    window_widths: Sequence[int] = (2, 3, 4),
    freq_min: float = 0.01,
    screen_threshold: float = 0.1,
    polygenic: bool = True,
) -> GeneticsResult:
    """
    HWE filtering, single-SNP scan, haplotype analysis and polygenic score.

    Args:
        genotypes: Genotype table
        phenotypes: Phenotype table indexed by sample id
        outcome_column: Binary outcome column
        case: Outcome level meaning "case" (see ``encode_outcome``)
        covariate_columns: Adjustment covariates
        hwe_alpha: SNPs with control HWE p below this are dropped
        n_permutations: Permutations for max-statistic and sliding-window tests
        random_state: Seed shared by all permutation procedures
        haplotype_snps: Ordered SNP block for haplotype analyses
        window_widths: Sliding-window widths
        freq_min: Rare-haplotype pooling threshold
        screen_threshold: Univariate screen threshold for the polygenic score
        polygenic: Build the polygenic score

    Returns:
        GeneticsResult
    """
    if outcome_column not in phenotypes.columns:
        raise ValueError(f"Outcome column {outcome_column!r} not in phenotype table")
    missing_cov = [c for c in covariate_columns if c not in phenotypes.columns]
    if missing_cov:
        raise ValueError(f"Covariate columns {missing_cov} not in phenotype table")

    phenotypes = phenotypes.copy()
    phenotypes.index = phenotypes.index.astype(str)
    phenotypes = phenotypes.reindex(genotypes.sample_ids)
    outcome = encode_outcome(phenotypes[outcome_column], case=case)
    covariates = phenotypes[list(covariate_columns)] if covariate_columns else None

    controls = list(outcome.index[outcome == 0])
    logger.info(
        f"Genetic association: {int((outcome == 1).sum())} cases, {len(controls)} controls, "
        f"{len(genotypes.snps)} SNPs"
    )

    kept, hwe = filter_hwe(genotypes, controls=controls, alpha=hwe_alpha)
    rng = np.random.default_rng(random_state)

    scan = association_scan(
        kept, outcome, covariates=covariates, n_permutations=n_permutations, random_state=rng,
    )

    block = None
    if haplotype_snps is not None:
        block = [s for s in haplotype_snps if s in kept.snps]
        dropped = [s for s in haplotype_snps if s not in kept.snps]
        if dropped:
            logger.warning(f"Haplotype block SNPs removed by the HWE filter: {dropped}")

    ld = pairwise_ld(kept, block if block else None)

    glm_result = None
    window_result = None
    if block and len(block) >= 2:
        glm_result = haplotype_glm(kept, block, outcome, covariates=covariates, freq_min=freq_min)
        window_result = sliding_window_scan(
            kept, block, outcome,
            widths=window_widths,
            n_permutations=n_permutations,
            random_state=rng,
            freq_min=freq_min,
        )

    polygenic_model = None
    if polygenic:
        polygenic_model = build_polygenic_model(kept, outcome, covariates, threshold=screen_threshold)

    return GeneticsResult(
        hwe=hwe,
        genotypes=kept,
        scan=scan,
        ld=ld,
        haplotype_glm=glm_result,
        sliding_window=window_result,
        polygenic=polygenic_model,
    )
