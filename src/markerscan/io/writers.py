"""
Writers for normalized matrices and result tables.

A normalized matrix is written as two files so that the provenance of every
value stays inspectable next to the numbers:

    {path}.data.csv   features x samples values
    {path}.flags.csv  integer QualityFlag combinations, same layout

Result tables (top tables, enrichment tables, association scans) are plain
CSV with the index written as the first column.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from markerscan.core.biomatrix import BioMatrix

__all__ = ['write_csv_matrix', 'write_results_table']

logger = logging.getLogger(__name__)


def write_csv_matrix(
    matrix: BioMatrix,
    path: Path | str,
    write_quality_flags: bool = True,
) -> list[Path]:
    """
    Write a BioMatrix to ``{path}.data.csv`` (and ``{path}.flags.csv``).

    Args:
        matrix: Matrix to write
        path: Base path without extension
        write_quality_flags: Also write the flag matrix

    Returns:
        Paths of the files written

    Raises:
        TypeError: If matrix is not a BioMatrix
        ValueError: If matrix is empty
    """
    if not isinstance(matrix, BioMatrix):
        raise TypeError(f"matrix must be BioMatrix, got {type(matrix)}")
    if matrix.data.size == 0:
        raise ValueError("Cannot write empty matrix")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data_path = Path(str(path) + ".data.csv")
    matrix.to_frame().to_csv(data_path)
    logger.info(f"Wrote data matrix to {data_path}")
    written = [data_path]

    if write_quality_flags:
        flags_path = Path(str(path) + ".flags.csv")
        pd.DataFrame(
            matrix.quality_flags,
            index=matrix.feature_ids,
            columns=matrix.sample_ids,
        ).to_csv(flags_path)
        logger.info(f"Wrote quality flags to {flags_path}")
        written.append(flags_path)

    return written


def write_results_table(table: pd.DataFrame, path: Path | str) -> Path:
    """Write a result DataFrame to CSV, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path)
    logger.info(f"Wrote {len(table)} rows to {path}")
    return path
