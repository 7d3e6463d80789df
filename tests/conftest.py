"""
Pytest configuration and shared fixtures.

This module provides synthetic data generators for the expression and the
genotype test suites.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from markerscan.core.biomatrix import BioMatrix
from markerscan.genetics.genotypes import GenotypeTable


# =============================================================================
# Expression data
# =============================================================================

def generate_expression_matrix(
    n_features: int = 300,
    n_per_group: int = 6,
    n_de: int = 30,
    effect: float = 2.0,
    batch_effect: float = 0.0,
    seed: int = 0,
) -> BioMatrix:
    """
    Two-group microarray experiment on the linear intensity scale.

    Design:
        - log2 baseline per probe ~ U(4, 12), noise sd 0.3
        - The first ``n_de`` probes are up in group "AD" by ``effect`` (log2)
        - Optional hidden batch shifting every other probe, not in metadata
        - Metadata: disease (control/AD), age, sex
    """
    rng = np.random.default_rng(seed)
    n_samples = 2 * n_per_group
    baseline = rng.uniform(4, 12, size=n_features)
    log_data = baseline[:, None] + rng.normal(0, 0.3, size=(n_features, n_samples))

    group = np.array(["control"] * n_per_group + ["AD"] * n_per_group)
    log_data[:n_de, group == "AD"] += effect

    if batch_effect:
        batch = rng.integers(0, 2, size=n_samples)
        loading = np.where(np.arange(n_features) % 2 == 0, batch_effect, 0.0)
        log_data += loading[:, None] * batch[None, :]

    sample_ids = pd.Index([f"GSM{1000 + i}" for i in range(n_samples)])
    metadata = pd.DataFrame({
        "disease": group,
        "age": rng.normal(80, 6, size=n_samples).round(),
        "sex": np.tile(["F", "M"], n_per_group),
    }, index=sample_ids)

    return BioMatrix(
        data=2.0 ** log_data,
        feature_ids=pd.Index([f"{200000 + i}_at" for i in range(n_features)]),
        sample_ids=sample_ids,
        sample_metadata=metadata,
    )


@pytest.fixture
def expression_matrix():
    """300 probes x 12 arrays, 30 probes up in AD."""
    return generate_expression_matrix()


@pytest.fixture
def batched_expression():
    """Like ``expression_matrix`` with a hidden batch on every other probe."""
    return generate_expression_matrix(effect=1.5, batch_effect=3.0)


@pytest.fixture
def tiny_expression():
    """
    Three probes, two arrays per group, already on the log scale.

    f1 differs between the groups, f2 and f3 do not.
    """
    frame = pd.DataFrame(
        {
            "s1": [5.0, 7.0, 3.0],
            "s2": [5.02, 7.05, 2.96],
            "s3": [6.01, 6.98, 3.04],
            "s4": [5.99, 7.03, 2.99],
        },
        index=["f1", "f2", "f3"],
    )
    metadata = pd.DataFrame({"group": ["A", "A", "B", "B"]}, index=frame.columns)
    return BioMatrix.from_frame(frame, sample_metadata=metadata)


# =============================================================================
# Genotype data
# =============================================================================

# Major/minor alleles of the simulated SNPs
SNP_ALLELES = {
    "rs1": ("A", "G"),
    "rs2": ("C", "T"),
    "rs3": ("G", "A"),
    "rs4": ("T", "C"),
    "rs5": ("A", "C"),
    "rs6": ("G", "T"),
}

BLOCK = ["rs1", "rs2", "rs3", "rs4"]

# Haplotypes of the LD block as minor-allele indicators over BLOCK
BLOCK_HAPLOTYPES = {
    (0, 0, 0, 0): 0.45,
    (1, 1, 0, 0): 0.25,
    (0, 0, 1, 1): 0.20,
    (1, 1, 1, 1): 0.10,
}


def _call(alleles: tuple, n_minor: int, rng) -> str:
    major, minor = alleles
    pair = [major] * (2 - n_minor) + [minor] * n_minor
    rng.shuffle(pair)
    return "".join(pair)


def generate_case_control(
    n_samples: int = 400,
    effect: float = 1.2,
    n_missing: int = 5,
    include_hwe_failure: bool = True,
    seed: int = 1,
) -> pd.DataFrame:
    """
    Case-control genotype table with phenotype columns.

    Design:
        - rs1-rs4 form an LD block drawn from BLOCK_HAPLOTYPES
        - rs5 (MAF 0.4) and rs6 (MAF 0.2) are independent
        - logit P(case) = -0.6 + effect * (copies of the rs1 minor allele)
        - ``rs_het`` is heterozygous in every sample (fails HWE)
        - ``n_missing`` calls of rs5 are blanked

    Returns:
        DataFrame indexed by sample id with SNP columns (two-letter calls)
        and columns casecontrol (0/1), sex, age
    """
    rng = np.random.default_rng(seed)
    haps = list(BLOCK_HAPLOTYPES)
    probs = np.array(list(BLOCK_HAPLOTYPES.values()))

    first = rng.choice(len(haps), size=n_samples, p=probs)
    second = rng.choice(len(haps), size=n_samples, p=probs)
    block_minor = np.array([haps[i] for i in first]) + np.array([haps[i] for i in second])

    rs5 = rng.binomial(2, 0.4, size=n_samples)
    rs6 = rng.binomial(2, 0.2, size=n_samples)

    logit = -0.6 + effect * block_minor[:, 0]
    case = rng.random(n_samples) < 1.0 / (1.0 + np.exp(-logit))

    sample_ids = [f"S{i:04d}" for i in range(n_samples)]
    columns = {}
    for j, snp in enumerate(BLOCK):
        columns[snp] = [_call(SNP_ALLELES[snp], int(k), rng) for k in block_minor[:, j]]
    columns["rs5"] = [_call(SNP_ALLELES["rs5"], int(k), rng) for k in rs5]
    columns["rs6"] = [_call(SNP_ALLELES["rs6"], int(k), rng) for k in rs6]
    if include_hwe_failure:
        columns["rs_het"] = ["AG"] * n_samples

    frame = pd.DataFrame(columns, index=sample_ids)
    if n_missing:
        blank = rng.choice(n_samples, size=n_missing, replace=False)
        frame.iloc[blank, frame.columns.get_loc("rs5")] = np.nan

    frame["casecontrol"] = case.astype(int)
    frame["sex"] = rng.choice(["female", "male"], size=n_samples)
    frame["age"] = rng.normal(40, 10, size=n_samples).round(1)
    return frame


SNP_COLUMNS = BLOCK + ["rs5", "rs6", "rs_het"]


@pytest.fixture(scope="session")
def case_control_frame():
    """400 samples with the rs1 minor allele raising case odds."""
    return generate_case_control()


@pytest.fixture
def genotypes(case_control_frame):
    return GenotypeTable.from_frame(case_control_frame, SNP_COLUMNS)


@pytest.fixture
def outcome(case_control_frame):
    return case_control_frame["casecontrol"].astype(float)
