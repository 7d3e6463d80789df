"""
Loaders for expression matrices, phenotype tables and genotype tables.

Expected expression format:
    - First column: probe/feature identifiers (header may be empty)
    - Remaining columns: one per sample, numeric intensities
    - Delimiter: tab, comma, semicolon or runs of whitespace (sniffed)

Example:
```
ID_REF      GSM119615  GSM119616
1007_s_at   2304.1     1980.7
1053_at     311.5      402.9
```

Phenotype and genotype tables have one row per sample and a sample
identifier column (or index). Genotype calls are kept as strings here;
parsing into alleles happens in ``markerscan.genetics.genotypes``.

Examples:
    >>> from markerscan.io.loaders import load_expression_matrix, load_phenotype_table
    >>> matrix = load_expression_matrix("GSE5281_series_matrix.txt")
    >>> phenotypes = load_phenotype_table("phenotypes.tsv", index_col="geo_accession")
    >>> matrix = align_phenotypes(matrix, phenotypes)
"""

from __future__ import annotations

import csv
import logging
import warnings
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from markerscan.core.biomatrix import BioMatrix

__all__ = [
    'sniff_delimiter',
    'load_expression_matrix',
    'load_phenotype_table',
    'load_genotype_frame',
    'align_phenotypes',
]

logger = logging.getLogger(__name__)

WHITESPACE = r"\s+"

# Exact cell texts read as missing in genotype tables; "0" stays a value
GENOTYPE_NA_TOKENS = ('', 'NA', 'NaN', 'nan', '0/0', '00', '--', '.')


def sniff_delimiter(path: Path, sample_size: int = 8192) -> str:
    """
    Detect the delimiter of a delimited text file.

    Returns one of ``'\\t'``, ``','``, ``';'``, ``'|'`` or the regex ``r'\\s+'``
    for whitespace-aligned files.
    """
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        sample = f.read(sample_size)

    lines = [line for line in sample.splitlines() if line and not line.startswith('!')]
    if not lines:
        raise ValueError(f"Could not detect delimiter in {path}: file has no data lines")

    try:
        dialect = csv.Sniffer().sniff("\n".join(lines[:20]), delimiters='\t,;|')
        return dialect.delimiter
    except csv.Error:
        pass

    first_line = lines[0]
    counts = {d: first_line.count(d) for d in ('\t', ',', ';')}
    if max(counts.values()) > 0:
        return max(counts, key=counts.get)

    if len(first_line.split()) > 1:
        return WHITESPACE

    raise ValueError(
        f"Could not detect delimiter in {path}. Pass delimiter explicitly."
    )


def _read_delimited(path: Path, delimiter: Optional[str], **kwargs) -> pd.DataFrame:
    if delimiter is None:
        delimiter = sniff_delimiter(path)
    if delimiter == WHITESPACE:
        return pd.read_csv(path, sep=WHITESPACE, engine='python', comment='!', **kwargs)
    return pd.read_csv(path, sep=delimiter, comment='!', **kwargs)


def _check_path(path: Path | str) -> Path:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")
    return path


def load_expression_matrix(
    path: Path | str,
    delimiter: Optional[str] = None,
) -> BioMatrix:
    """
    Load a features x samples expression matrix into a BioMatrix.

    GEO series-matrix comment lines (starting with ``!``) are skipped, so a
    downloaded ``*_series_matrix.txt`` loads directly.

    Args:
        path: Delimited text file with a leading identifier column
        delimiter: Field delimiter. Sniffed when None.

    Returns:
        BioMatrix with empty sample metadata. NaN values are kept and
        flagged MISSING_ORIGINAL.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the file is empty, has duplicate sample ids, or
            contains non-numeric or infinite intensities
    """
    path = _check_path(path)

    try:
        df = _read_delimited(path, delimiter, index_col=0)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"Expression file is empty: {path}") from e

    if df.shape[0] == 0:
        raise ValueError(f"Expression file contains no features (rows): {path}")
    if df.shape[1] == 0:
        raise ValueError(f"Expression file contains no samples (columns): {path}")

    if df.columns.duplicated().any():
        dupes = list(df.columns[df.columns.duplicated()][:3])
        raise ValueError(f"Duplicate sample ids in {path}: {dupes}")

    if df.index.duplicated().any():
        n_duplicates = int(df.index.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate feature IDs. Using first occurrence of each.",
            UserWarning,
        )
        df = df[~df.index.duplicated(keep='first')]

    numeric = df.apply(pd.to_numeric, errors='coerce')
    bad = numeric.isna() & df.notna()
    if bad.any().any():
        rows, cols = np.where(bad.values)
        examples = [
            f"row '{df.index[i]}', col '{df.columns[j]}': {df.iat[i, j]!r}"
            for i, j in list(zip(rows, cols))[:5]
        ]
        raise ValueError(
            "Expression file contains non-numeric values:\n"
            + "\n".join(f"  - {x}" for x in examples)
        )

    data = numeric.to_numpy(dtype=np.float64)
    if np.isinf(data).any():
        raise ValueError(
            f"Expression file contains {int(np.isinf(data).sum())} infinite values: {path}"
        )

    n_nan = int(np.isnan(data).sum())
    if n_nan:
        logger.warning(
            f"{path.name}: {n_nan:,} missing intensities "
            f"({100 * n_nan / data.size:.2f}% of values)"
        )

    matrix = BioMatrix(
        data=data,
        feature_ids=pd.Index(df.index.astype(str)),
        sample_ids=pd.Index(df.columns.astype(str)),
    )
    logger.info(
        f"Loaded {matrix.n_features} features × {matrix.n_samples} samples from {path.name}"
    )
    return matrix


def load_phenotype_table(
    path: Path | str,
    index_col: Optional[str | int] = 0,
    delimiter: Optional[str] = None,
) -> pd.DataFrame:
    """
    Load a one-row-per-sample phenotype/covariate table.

    Pickled DataFrames (``.pkl``/``.pickle``) are read with pandas, anything
    else as delimited text.

    Raises:
        ValueError: If sample identifiers are duplicated
    """
    path = _check_path(path)
    if path.suffix.lower() in ('.pkl', '.pickle'):
        table = pd.read_pickle(path)
        if index_col is not None and not isinstance(index_col, int) and index_col in table.columns:
            table = table.set_index(index_col)
    else:
        table = _read_delimited(path, delimiter, index_col=index_col)

    table.index = table.index.astype(str)
    if table.index.duplicated().any():
        dupes = list(table.index[table.index.duplicated()][:3])
        raise ValueError(f"Duplicate sample ids in phenotype table {path}: {dupes}")

    logger.info(f"Loaded phenotype table: {len(table)} samples, columns {list(table.columns)}")
    return table


def load_genotype_frame(
    path: Path | str,
    index_col: Optional[str | int] = 0,
    delimiter: Optional[str] = None,
) -> pd.DataFrame:
    """
    Load a samples x columns table holding genotype calls and phenotypes.

    All columns are read as strings so that calls such as ``"AA"`` or
    ``"A/G"`` are not coerced. Missing calls become NaN.
    """
    path = _check_path(path)
    if path.suffix.lower() in ('.pkl', '.pickle'):
        table = pd.read_pickle(path)
        if index_col is not None and not isinstance(index_col, int) and index_col in table.columns:
            table = table.set_index(index_col)
    else:
        # pandas would also match numeric forms of the NA tokens ("00" hits "0")
        table = _read_delimited(
            path, delimiter, index_col=index_col, dtype=str,
            keep_default_na=False, na_filter=False,
        )
        table = table.mask(table.apply(lambda col: col.str.strip().isin(GENOTYPE_NA_TOKENS)))
    table.index = table.index.astype(str)
    logger.info(f"Loaded genotype table: {table.shape[0]} samples × {table.shape[1]} columns")
    return table


def align_phenotypes(
    matrix: BioMatrix,
    phenotypes: pd.DataFrame,
    drop_unmatched: bool = False,
) -> BioMatrix:
    """
    Attach a phenotype table to a matrix, ordered by the matrix's sample ids.

    Args:
        matrix: Expression matrix
        phenotypes: Table indexed by sample id
        drop_unmatched: Drop matrix samples without a phenotype row instead
            of raising

    Raises:
        ValueError: If samples lack phenotypes and drop_unmatched is False
    """
    phenotypes = phenotypes.copy()
    phenotypes.index = phenotypes.index.astype(str)
    matched = matrix.sample_ids.isin(phenotypes.index)

    if not matched.all():
        n_missing = int((~matched).sum())
        if not drop_unmatched:
            raise ValueError(
                f"{n_missing} samples have no phenotype row, "
                f"e.g. {list(matrix.sample_ids[~matched][:3])}"
            )
        logger.warning(f"Dropping {n_missing} samples without phenotype rows")
        matrix = matrix.select_samples(matched)

    extra = phenotypes.index.difference(matrix.sample_ids)
    if len(extra) > 0:
        logger.info(f"{len(extra)} phenotype rows have no matching sample and are ignored")

    return matrix.with_metadata(phenotypes)
