"""
Static figures (matplotlib/seaborn) and HTML reports.

Examples
--------
>>> from markerscan.viz import ExpressionVisualizer, FigureCollection
>>>
>>> viz = ExpressionVisualizer()
>>> collection = FigureCollection()
>>> collection.add("density", viz.plot_density(raw, normalized))
>>> collection.add("volcano", viz.plot_volcano(table))
>>> collection.save_all("figures/", format="pdf")
"""

from markerscan.viz.core import Figure, FigureCollection
from markerscan.viz.styles import PALETTES, Palette, configure_style
from markerscan.viz.expression import ExpressionVisualizer, decision_sets
from markerscan.viz.genetics import GeneticsVisualizer
from markerscan.viz.report import write_enrichment_report

__all__ = [
    "Figure",
    "FigureCollection",
    "Palette",
    "PALETTES",
    "configure_style",
    "ExpressionVisualizer",
    "decision_sets",
    "GeneticsVisualizer",
    "write_enrichment_report",
]
