"""
Genotype tables for biallelic SNPs.

Genotype calls arrive in many spellings (``"AG"``, ``"A/G"``, ``"G/A"``,
``"A|G"``, ``"A G"``). ``GenotypeTable`` normalizes every call to an
unordered, alphabetically sorted ``"A/G"`` form and works out, per SNP, which
allele is the major (more frequent) and which the minor one. Downstream
models consume dosages: the number of copies (0, 1, 2) of a chosen allele,
by default the minor allele.

Missing calls (``NaN``, ``""``, ``"NA"``, ``"00"``, ``"0/0"``, ``"--"``,
``"N/N"``) become NaN and stay NaN in every dosage.

Examples:
    >>> table, phenotypes = load_genotype_table("asthma.tsv", snp_columns=snps)
    >>> table.alleles("rs4490198")
    ('G', 'A')
    >>> table.dosage("rs4490198").value_counts()
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from markerscan.io.loaders import load_genotype_frame

__all__ = [
    'MISSING_CALLS',
    'parse_genotype',
    'GenotypeTable',
    'load_genotype_table',
]

logger = logging.getLogger(__name__)

MISSING_CALLS = frozenset({'', 'NA', 'NAN', '00', '0/0', '0|0', '--', '-/-', 'N/N', 'NN', '.', './.'})
_SEPARATED = re.compile(r"^\s*([^/|\s]+)\s*[/|\s]\s*([^/|\s]+)\s*$")


def parse_genotype(call) -> Optional[tuple[str, str]]:
    """
    Parse one genotype call into a sorted allele pair.

    Returns:
        ``(allele1, allele2)`` sorted alphabetically, or None for a missing call

    Raises:
        ValueError: If the call cannot be read as two alleles
    """
    if call is None or call is pd.NA or (isinstance(call, float) and np.isnan(call)):
        return None
    text = str(call).strip()
    if text.upper() in MISSING_CALLS:
        return None

    match = _SEPARATED.match(text)
    if match:
        a, b = match.group(1), match.group(2)
    elif len(text) == 2:
        a, b = text[0], text[1]
    else:
        raise ValueError(f"Cannot parse genotype call {call!r}")
    a, b = a.upper(), b.upper()
    return (a, b) if a <= b else (b, a)


class GenotypeTable:
    """
    Samples x SNPs table of normalized genotype calls.

    Attributes:
        calls: DataFrame of ``"A/G"`` strings (NaN when missing)
        snps: SNP identifiers in column order
        sample_ids: Sample identifiers

    Invariants:
        - Every SNP has at most two distinct alleles
        - ``alleles(snp)`` is (major, minor); ties are broken alphabetically
    """

    def __init__(self, calls: pd.DataFrame):
        normalized = {}
        alleles = {}
        for snp in calls.columns:
            pairs = []
            for sample, call in calls[snp].items():
                try:
                    pairs.append(parse_genotype(call))
                except ValueError as e:
                    raise ValueError(f"SNP {snp}, sample {sample}: {e}") from e

            counts: dict[str, int] = {}
            for pair in pairs:
                if pair is None:
                    continue
                for allele in pair:
                    counts[allele] = counts.get(allele, 0) + 1
            if len(counts) > 2:
                raise ValueError(f"SNP {snp} is not biallelic: alleles {sorted(counts)}")

            ranked = sorted(counts, key=lambda a: (-counts[a], a))
            if len(ranked) == 0:
                logger.warning(f"SNP {snp} has no called genotypes")
                alleles[str(snp)] = (None, None)
            elif len(ranked) == 1:
                alleles[str(snp)] = (ranked[0], None)
            else:
                alleles[str(snp)] = (ranked[0], ranked[1])

            normalized[str(snp)] = [
                f"{p[0]}/{p[1]}" if p is not None else np.nan for p in pairs
            ]

        self._calls = pd.DataFrame(
            normalized, index=pd.Index(calls.index.astype(str)), dtype=object
        )
        self._alleles = alleles

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, snp_columns: Optional[Sequence[str]] = None) -> GenotypeTable:
        if snp_columns is not None:
            missing = [c for c in snp_columns if c not in frame.columns]
            if missing:
                raise ValueError(f"Unknown SNP columns {missing}")
            frame = frame[list(snp_columns)]
        return cls(frame)

    @property
    def calls(self) -> pd.DataFrame:
        return self._calls.copy()

    @property
    def snps(self) -> list[str]:
        return list(self._calls.columns)

    @property
    def sample_ids(self) -> pd.Index:
        return self._calls.index

    @property
    def n_samples(self) -> int:
        return self._calls.shape[0]

    def _check_snp(self, snp: str) -> None:
        if snp not in self._alleles:
            raise ValueError(f"Unknown SNP {snp!r}")

    def alleles(self, snp: str) -> tuple[Optional[str], Optional[str]]:
        """(major, minor) allele; minor is None for a monomorphic SNP."""
        self._check_snp(snp)
        return self._alleles[snp]

    def is_polymorphic(self, snp: str) -> bool:
        return self.alleles(snp)[1] is not None

    def dosage(self, snp: str, allele: Optional[str] = None) -> pd.Series:
        """
        Copies (0, 1, 2) of ``allele`` per sample, NaN when missing.

        Args:
            snp: SNP identifier
            allele: Counted allele; the minor allele by default (for a
                monomorphic SNP every called sample gets 0)
        """
        major, minor = self.alleles(snp)
        counted = allele if allele is not None else minor
        if allele is not None and allele not in (major, minor):
            raise ValueError(f"Allele {allele!r} not observed at {snp}; alleles are {major}/{minor}")

        values = []
        for call in self._calls[snp]:
            if not isinstance(call, str):
                values.append(np.nan)
            else:
                values.append(float(call.split('/').count(counted)) if counted else 0.0)
        return pd.Series(values, index=self.sample_ids, name=snp, dtype=np.float64)

    def dosage_matrix(
        self,
        snps: Optional[Sequence[str]] = None,
        alleles: Optional[dict[str, str]] = None,
    ) -> pd.DataFrame:
        """Samples x SNPs dosages; ``alleles`` overrides the counted allele per SNP."""
        snps = list(snps) if snps is not None else self.snps
        alleles = alleles or {}
        return pd.concat([self.dosage(s, alleles.get(s)) for s in snps], axis=1)

    def allele_codes(self, snps: Sequence[str]) -> np.ndarray:
        """
        Minor-allele counts as small integers, -1 for missing.

        Returns:
            int8 array (n_samples, len(snps)) with entries -1, 0, 1, 2
        """
        matrix = self.dosage_matrix(snps).to_numpy()
        codes = np.where(np.isnan(matrix), -1, matrix).astype(np.int8)
        return codes

    def genotype_counts(self, snp: str, samples: Optional[Iterable[str]] = None) -> tuple[int, int, int]:
        """(homozygous major, heterozygous, homozygous minor) counts."""
        d = self.dosage(snp)
        if samples is not None:
            d = d.loc[pd.Index(samples).astype(str)]
        d = d.dropna()
        return int((d == 0).sum()), int((d == 1).sum()), int((d == 2).sum())

    def minor_allele_frequency(self, snp: str) -> float:
        n_aa, n_ab, n_bb = self.genotype_counts(snp)
        n = n_aa + n_ab + n_bb
        return (n_ab + 2 * n_bb) / (2 * n) if n else np.nan

    def call_rate(self, snp: str) -> float:
        self._check_snp(snp)
        return float(self._calls[snp].notna().mean()) if self.n_samples else np.nan

    def subset(
        self,
        samples: Optional[Iterable[str] | np.ndarray] = None,
        snps: Optional[Sequence[str]] = None,
    ) -> GenotypeTable:
        """
        Table restricted to samples and/or SNPs.

        Major/minor alleles are recomputed on the subset.
        """
        calls = self._calls
        if samples is not None:
            samples = np.asarray(samples)
            if samples.dtype == bool:
                calls = calls.loc[samples]
            else:
                calls = calls.loc[pd.Index(samples).astype(str)]
        if snps is not None:
            for snp in snps:
                self._check_snp(snp)
            calls = calls[list(snps)]
        return GenotypeTable(calls)

    def __repr__(self) -> str:
        return f"GenotypeTable({self.n_samples} samples × {len(self.snps)} SNPs)"


def _looks_like_genotypes(series: pd.Series) -> bool:
    values = series.dropna()
    if values.empty:
        return False
    try:
        parsed = [parse_genotype(v) for v in values]
    except ValueError:
        return False
    return all(
        p is None or (len(p[0]) == 1 and len(p[1]) == 1 and p[0] in 'ACGT' and p[1] in 'ACGT')
        for p in parsed
    )


def load_genotype_table(
    path: Path | str,
    snp_columns: Optional[Sequence[str]] = None,
    sep: Optional[str] = None,
    index_col: Optional[str | int] = 0,
) -> tuple[GenotypeTable, pd.DataFrame]:
    """
    Load genotypes and phenotypes from one samples x columns table.

    Args:
        path: Delimited text (or pickled DataFrame)
        snp_columns: SNP columns. When None, every column whose calls are
            all nucleotide pairs is taken as a SNP.
        sep: Delimiter (sniffed when None)
        index_col: Sample identifier column

    Returns:
        (GenotypeTable, phenotype table of the remaining columns with
        numeric columns converted)
    """
    frame = load_genotype_frame(path, index_col=index_col, delimiter=sep)
    if snp_columns is None:
        snp_columns = [c for c in frame.columns if _looks_like_genotypes(frame[c])]
        if not snp_columns:
            raise ValueError(f"No genotype columns detected in {path}")
        logger.info(f"Detected {len(snp_columns)} SNP columns")

    genotypes = GenotypeTable.from_frame(frame, snp_columns)
    phenotypes = frame.drop(columns=list(snp_columns))
    for col in phenotypes.columns:
        converted = pd.to_numeric(phenotypes[col], errors='coerce')
        if converted.notna().sum() == phenotypes[col].notna().sum():
            phenotypes[col] = converted
    phenotypes.index = phenotypes.index.astype(str)
    return genotypes, phenotypes
