"""
Consistent visual styles for expression and association figures.

Conventions
-----------
- Case = Blue (#2563eb), Control = Orange (#f97316)
- Up-regulated = Red (#dc2626), Down-regulated = Blue (#2563eb),
  not significant = Slate (#94a3b8)
- Raw data = Gray, normalized data = Emerald
- LD heatmaps use a sequential colormap from white to red
- Gene symbols italicized (``italicize_gene``)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import matplotlib.pyplot as plt
import seaborn as sns


@dataclass(frozen=True)
class Palette:
    """
    Color palette.

    Attributes
    ----------
    case, control : str
        Colors for the two outcome groups
    up, down, neutral : str
        Differential expression direction
    raw, normalized : str
        Before/after normalization
    highlight : str
        Emphasized elements (best window, selected threshold)
    sequential : str
        Colormap for LD and other magnitudes
    """
    case: str = "#2563eb"
    control: str = "#f97316"
    up: str = "#dc2626"
    down: str = "#2563eb"
    neutral: str = "#94a3b8"
    raw: str = "#6b7280"
    normalized: str = "#059669"
    highlight: str = "#7c3aed"
    sequential: str = "Reds"

    @property
    def direction(self) -> dict[str, str]:
        return {"up": self.up, "down": self.down, "ns": self.neutral}

    def categorical(self, n: int) -> list[str]:
        """n distinguishable colors (for Venn sets, sample densities)."""
        return sns.color_palette("Set2", max(n, 1)).as_hex()[:n]


PALETTES = {
    "default": Palette(),
    "colorblind": Palette(
        case="#0077bb",
        control="#ee7733",
        up="#cc3311",
        down="#0077bb",
        neutral="#bbbbbb",
        raw="#999999",
        normalized="#009988",
        highlight="#aa3377",
    ),
}


def configure_style(
    style: Literal["paper", "presentation", "notebook"] = "paper",
    palette: str | Palette = "default",
    font_scale: float = 1.0
) -> Palette:
    """
    Configure matplotlib and seaborn for a target medium.

    Returns
    -------
    Palette
        The palette to use with the configured style
    """
    if isinstance(palette, str):
        palette = PALETTES.get(palette, PALETTES["default"])

    base_size = {"paper": 10, "presentation": 14, "notebook": 11}[style]
    context = {"paper": "paper", "presentation": "talk", "notebook": "notebook"}[style]

    sns.set_theme(style="whitegrid", context=context, font_scale=font_scale)
    plt.rcParams.update({
        "figure.facecolor": "white",
        "axes.facecolor": "white",
        "axes.spines.top": False,
        "axes.spines.right": False,
        "legend.frameon": False,
        "font.size": base_size * font_scale,
        "axes.titlesize": (base_size + 1) * font_scale,
        "axes.labelsize": base_size * font_scale,
        "savefig.dpi": 300 if style == "paper" else 150,
    })
    return palette


def italicize_gene(gene: str) -> str:
    """
    Format a gene symbol for matplotlib in italics.

    >>> italicize_gene("APP")
    '$\\\\mathit{APP}$'
    """
    # Underscores in probe ids would read as subscripts
    gene = str(gene).replace("_", r"\_")
    return f"$\\mathit{{{gene}}}$"


def format_pvalue(p: float) -> str:
    """Format a p-value for annotation ("p < 0.001", "p = 0.034")."""
    if p < 0.001:
        return "p < 0.001"
    elif p < 0.01:
        return f"p = {p:.3f}"
    return f"p = {p:.2f}"
