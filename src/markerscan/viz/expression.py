"""
Figures for the differential expression analysis.

- Density: per-sample intensity distributions before and after
  normalization (after quantile normalization the curves coincide)
- Volcano: log2 fold change against -log10 p-value, top features labelled
  (adjustText keeps labels apart)
- Venn: overlap of significant features between contrasts
"""

from __future__ import annotations

import logging
from typing import Literal, Mapping, Optional

import matplotlib.patches as mpatches
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from adjustText import adjust_text

from markerscan.core.biomatrix import BioMatrix
from markerscan.viz.core import Figure
from markerscan.viz.styles import PALETTES, Palette, configure_style, italicize_gene

__all__ = ['ExpressionVisualizer', 'decision_sets']

logger = logging.getLogger(__name__)


def decision_sets(decisions: pd.DataFrame, direction: Literal["any", "up", "down"] = "any") -> dict[str, set]:
    """
    Significant features per contrast from a ``decide_tests`` table.

    Args:
        decisions: Features x contrasts table of -1/0/1
        direction: Which calls to keep
    """
    sets = {}
    for contrast in decisions.columns:
        calls = decisions[contrast]
        if direction == "up":
            mask = calls > 0
        elif direction == "down":
            mask = calls < 0
        else:
            mask = calls != 0
        sets[str(contrast)] = set(decisions.index[mask])
    return sets


class ExpressionVisualizer:
    """
    Figures for normalization and differential expression results.

    Usage:
        viz = ExpressionVisualizer()
        viz.plot_density(raw, normalized).save("density.png")
        viz.plot_volcano(top_table(ebfit, "AD - control")).save("volcano.png")
        viz.plot_venn(decision_sets(decide_tests(ebfit))).save("venn.png")
    """

    def __init__(
        self,
        palette: str | Palette = "default",
        style: Literal["paper", "presentation", "notebook"] = "paper",
    ):
        if isinstance(palette, str):
            self.palette = PALETTES.get(palette, PALETTES["default"])
        else:
            self.palette = palette
        self.style = style
        configure_style(style=style, palette=self.palette)

    def plot_density(
        self,
        before: BioMatrix | np.ndarray,
        after: BioMatrix | np.ndarray,
        log_before: bool = True,
        max_samples: int = 50,
        figsize: tuple[float, float] = (12, 5),
    ) -> Figure:
        """
        Per-sample densities before and after normalization.

        Args:
            before: Raw matrix (features x samples)
            after: Normalized matrix
            log_before: Show log2 of the raw values so both panels share a scale
            max_samples: Plot at most this many samples (evenly spaced)
        """
        raw = before.data if isinstance(before, BioMatrix) else np.asarray(before, dtype=float)
        norm = after.data if isinstance(after, BioMatrix) else np.asarray(after, dtype=float)
        if log_before:
            with np.errstate(divide="ignore", invalid="ignore"):
                raw = np.where(raw > 0, np.log2(raw), np.nan)

        n_samples = raw.shape[1]
        shown = np.unique(np.linspace(0, n_samples - 1, min(n_samples, max_samples)).astype(int))

        fig, axes = plt.subplots(1, 2, figsize=figsize, sharey=False)
        panels = [
            (axes[0], raw, self.palette.raw, "Before normalization" + (" (log2)" if log_before else "")),
            (axes[1], norm, self.palette.normalized, "After normalization"),
        ]
        for ax, values, color, panel_title in panels:
            for j in shown:
                column = values[:, j]
                column = column[np.isfinite(column)]
                if column.size > 1 and np.ptp(column) > 0:
                    sns.kdeplot(x=column, ax=ax, color=color, linewidth=0.8, alpha=0.5)
            ax.set_title(panel_title)
            ax.set_xlabel("Intensity")
            ax.set_ylabel("Density")

        plt.tight_layout()
        return Figure(
            fig=fig,
            title="Intensity distributions",
            description=f"Per-sample densities for {len(shown)} of {n_samples} samples",
            metadata={"n_samples": n_samples, "n_shown": len(shown)},
        )

    def plot_volcano(
        self,
        table: pd.DataFrame,
        p_column: str = "adj_p_value",
        lfc_threshold: float = 1.0,
        p_threshold: float = 0.05,
        n_labels: int = 10,
        label_column: Optional[str] = None,
        figsize: tuple[float, float] = (8, 7),
        title: str = "Differential expression",
    ) -> Figure:
        """
        Volcano plot of a ``top_table`` result.

        Args:
            table: Result table with log2fc, p_value and ``p_column``
            p_column: Column deciding significance
            lfc_threshold: |log2 fold change| for a called feature
            p_threshold: Significance threshold on ``p_column``
            n_labels: Label this many of the most significant called features
            label_column: Column with display labels (index by default)
        """
        df = table.copy()
        df["neglog10p"] = -np.log10(df["p_value"].clip(lower=1e-300))
        called = (df[p_column] < p_threshold) & (df["log2fc"].abs() >= lfc_threshold)
        df["direction"] = "ns"
        df.loc[called & (df["log2fc"] > 0), "direction"] = "up"
        df.loc[called & (df["log2fc"] < 0), "direction"] = "down"

        fig, ax = plt.subplots(figsize=figsize)
        for direction, color in self.palette.direction.items():
            subset = df[df["direction"] == direction]
            ax.scatter(
                subset["log2fc"], subset["neglog10p"],
                c=color, s=10 if direction == "ns" else 16,
                alpha=0.5 if direction == "ns" else 0.85,
                edgecolors="none",
            )

        for x in (-lfc_threshold, lfc_threshold):
            ax.axvline(x, color="#64748b", linestyle="--", linewidth=0.8)

        texts = []
        for feature, row in df[called].nsmallest(n_labels, "p_value").iterrows():
            label = str(row[label_column]) if label_column else str(feature)
            texts.append(ax.text(row["log2fc"], row["neglog10p"], italicize_gene(label), fontsize=8))
        if texts:
            adjust_text(texts, ax=ax, arrowprops=dict(arrowstyle="-", color="#94a3b8", lw=0.5))

        n_up = int((df["direction"] == "up").sum())
        n_down = int((df["direction"] == "down").sum())
        ax.legend(handles=[
            mpatches.Patch(color=self.palette.up, label=f"Up ({n_up})"),
            mpatches.Patch(color=self.palette.down, label=f"Down ({n_down})"),
            mpatches.Patch(color=self.palette.neutral, label="Not significant"),
        ], loc="upper left")
        ax.set_xlabel(r"log$_2$ fold change")
        ax.set_ylabel(r"-log$_{10}$(p-value)")
        ax.set_title(title)

        plt.tight_layout()
        return Figure(
            fig=fig,
            title=title,
            description=f"{n_up} up, {n_down} down ({p_column} < {p_threshold}, |log2FC| >= {lfc_threshold})",
            metadata={"n_up": n_up, "n_down": n_down, "n_features": len(df)},
        )

    def plot_venn(
        self,
        sets: Mapping[str, set],
        figsize: tuple[float, float] = (6, 6),
        title: str = "Significant features per contrast",
    ) -> Figure:
        """
        Venn diagram of two or three feature sets.

        Raises:
            ValueError: For fewer than two or more than three sets
        """
        from matplotlib_venn import venn2, venn3

        names = list(sets)
        if len(names) not in (2, 3):
            raise ValueError(f"Venn diagrams need 2 or 3 sets, got {len(names)}")

        fig, ax = plt.subplots(figsize=figsize)
        colors = self.palette.categorical(len(names))
        values = [set(sets[name]) for name in names]
        if len(names) == 2:
            venn2(values, set_labels=names, set_colors=colors, ax=ax)
        else:
            venn3(values, set_labels=names, set_colors=colors, ax=ax)
        ax.set_title(title)

        shared = set.intersection(*values) if values else set()
        return Figure(
            fig=fig,
            title=title,
            description=", ".join(f"{n}: {len(s)}" for n, s in zip(names, values)) + f"; shared: {len(shared)}",
            metadata={"sizes": {n: len(s) for n, s in zip(names, values)}, "shared": len(shared)},
        )
