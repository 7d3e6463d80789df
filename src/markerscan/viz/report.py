"""
HTML summary reports.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

import pandas as pd

from markerscan.viz.core import FigureCollection

__all__ = ['write_enrichment_report']

logger = logging.getLogger(__name__)


def write_enrichment_report(
    results: Mapping[str, pd.DataFrame],
    output_path: Path | str,
    figures: Optional[FigureCollection] = None,
    title: str = "Enrichment report",
    description: str = "",
    max_rows: int = 50,
    p_threshold: Optional[float] = None,
) -> Path:
    """
    Write enrichment tables (and optional figures) to one HTML file.

    Args:
        results: Section name (e.g. "GO BP, AD - control") -> table from
            ``run_enrichment``
        output_path: HTML file to write
        figures: Figures placed before the tables
        title: Report title
        description: Free-text description under the title
        max_rows: Rows shown per table
        p_threshold: Keep only rows with adj_p_value below this value

    Returns:
        Path written
    """
    collection = FigureCollection()
    if figures is not None:
        for key, fig in figures:
            collection.add(key, fig)

    for i, (name, table) in enumerate(results.items()):
        shown = table
        if p_threshold is not None and 'adj_p_value' in shown.columns:
            shown = shown[shown['adj_p_value'] < p_threshold]
        n_total = len(shown)
        shown = shown.head(max_rows)
        note = f"{n_total} terms" + (f" with adjusted p < {p_threshold}" if p_threshold is not None else "")
        if n_total > max_rows:
            note += f", top {max_rows} shown"
        collection.add_table(f"enrichment_{i}", name, shown.reset_index(drop=True), description=note)

    path = collection.to_html_report(output_path, title=title, description=description)
    logger.info(f"Enrichment report: {len(results)} tables -> {path}")
    return path
