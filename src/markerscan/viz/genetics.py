"""
Figures for the SNP association analysis: LD heatmap, ROC curve and
sliding-window haplotype profile.
"""

from __future__ import annotations

import logging
from typing import Literal

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from markerscan.genetics.haplotype import SlidingWindowResult
from markerscan.genetics.ld import LDResult
from markerscan.genetics.polygenic import ROCResult
from markerscan.viz.core import Figure
from markerscan.viz.styles import PALETTES, Palette, configure_style, format_pvalue

__all__ = ['GeneticsVisualizer']

logger = logging.getLogger(__name__)


class GeneticsVisualizer:
    """
    Usage:
        viz = GeneticsVisualizer()
        viz.plot_ld_heatmap(pairwise_ld(table)).save("ld.png")
        viz.plot_roc(model.roc).save("roc.png")
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
        configure_style(style=style, palette=self.palette)

    def plot_ld_heatmap(
        self,
        ld: LDResult,
        measure: Literal["r2", "d_prime"] = "r2",
        annotate: bool | None = None,
        figsize: tuple[float, float] = (8, 7),
    ) -> Figure:
        """
        Lower-triangle heatmap of pairwise LD.

        Args:
            ld: Result of ``pairwise_ld``
            measure: "r2" or "d_prime"
            annotate: Print values in cells (default: when <= 15 SNPs)
        """
        if measure not in ("r2", "d_prime"):
            raise ValueError(f"Unknown LD measure {measure!r}")
        matrix = ld.r2 if measure == "r2" else ld.d_prime
        n = matrix.shape[0]
        if annotate is None:
            annotate = n <= 15

        mask = np.triu(np.ones((n, n), dtype=bool), k=1)
        fig, ax = plt.subplots(figsize=figsize)
        sns.heatmap(
            matrix,
            mask=mask,
            vmin=0.0,
            vmax=1.0,
            cmap=self.palette.sequential,
            square=True,
            annot=annotate,
            fmt=".2f",
            annot_kws={"fontsize": 7},
            linewidths=0.5,
            cbar_kws={"label": "r²" if measure == "r2" else "|D'|"},
            ax=ax,
        )
        label = "r²" if measure == "r2" else "D'"
        ax.set_title(f"Pairwise LD ({label})")
        plt.tight_layout()
        return Figure(
            fig=fig,
            title=f"Linkage disequilibrium ({label})",
            description=f"{n} SNPs",
            metadata={"measure": measure, "n_snps": n},
        )

    def plot_roc(
        self,
        roc: ROCResult,
        figsize: tuple[float, float] = (6, 6),
        title: str = "Polygenic score ROC",
    ) -> Figure:
        fig, ax = plt.subplots(figsize=figsize)
        ax.plot(roc.fpr, roc.tpr, color=self.palette.case, linewidth=2, label=f"AUC = {roc.auc:.3f}")
        ax.plot([0, 1], [0, 1], color=self.palette.neutral, linestyle="--", linewidth=1)
        ax.set_xlim(0, 1)
        ax.set_ylim(0, 1.01)
        ax.set_xlabel("False positive rate (1 - specificity)")
        ax.set_ylabel("True positive rate (sensitivity)")
        ax.set_title(title)
        ax.legend(loc="lower right")
        plt.tight_layout()
        return Figure(
            fig=fig,
            title=title,
            description=f"AUC {roc.auc:.3f} over {roc.n} samples",
            metadata={"auc": roc.auc, "n": roc.n},
        )

    def plot_sliding_window(
        self,
        result: SlidingWindowResult,
        snps: list[str],
        figsize: tuple[float, float] = (10, 5),
    ) -> Figure:
        """
        Simulated -log10 p-value of every window, drawn as a segment over the
        SNPs it spans, one row per width.
        """
        windows = result.windows
        fig, ax = plt.subplots(figsize=figsize)
        widths = sorted(windows["width"].unique())
        colors = dict(zip(widths, self.palette.categorical(len(widths))))
        for idx, row in windows.iterrows():
            y = -np.log10(row["p_simulated"])
            is_best = idx == result.best_window
            ax.hlines(
                y, row["start"] - 0.4, row["start"] + row["width"] - 0.6,
                color=self.palette.highlight if is_best else colors[row["width"]],
                linewidth=3 if is_best else 2,
            )
        for width, color in colors.items():
            ax.plot([], [], color=color, linewidth=2, label=f"{width} SNPs")
        ax.axhline(-np.log10(0.05), color=self.palette.neutral, linestyle="--", linewidth=0.8)
        ax.set_xticks(range(len(snps)))
        ax.set_xticklabels(snps, rotation=60, ha="right", fontsize=8)
        ax.set_ylabel(r"-log$_{10}$(simulated p)")
        ax.set_title(f"Sliding-window haplotype scan (global {format_pvalue(result.global_p_value)})")
        ax.legend(title="Window", loc="upper right")
        plt.tight_layout()
        return Figure(
            fig=fig,
            title="Sliding-window haplotype scan",
            description=(
                f"Best window {windows.loc[result.best_window, 'snps']}, "
                f"global p = {result.global_p_value:.3g} ({result.n_permutations} permutations)"
            ),
            metadata={"global_p_value": result.global_p_value},
        )
