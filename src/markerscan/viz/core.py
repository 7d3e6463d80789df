"""
Core visualization primitives: Figure wrapper and FigureCollection.

A ``Figure`` pairs a matplotlib figure with a title and description so it
can be saved, embedded or collected without losing context. A
``FigureCollection`` gathers figures and result tables and renders them into
one self-contained HTML report (images inlined as base64, tables rendered
with ``DataFrame.to_html``).
"""

from __future__ import annotations

import base64
import html as html_lib
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional

import matplotlib.figure
import matplotlib.pyplot as plt
import pandas as pd

logger = logging.getLogger(__name__)

OutputFormat = Literal["png", "pdf", "svg", "html"]


@dataclass
class Figure:
    """
    Matplotlib figure with a title, description and metadata.

    Attributes
    ----------
    fig : matplotlib.figure.Figure
        The underlying figure
    title : str
        Human-readable title
    description : str
        What the figure shows
    metadata : dict
        Parameters used to build it (creation time added automatically)

    Examples
    --------
    >>> fig = viz.plot_volcano(table, title="AD vs control")
    >>> fig.save("volcano.pdf")
    """
    fig: matplotlib.figure.Figure
    title: str
    description: str = ""
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if "created_at" not in self.metadata:
            self.metadata["created_at"] = datetime.now().isoformat()

    def save(
        self,
        path: Path | str,
        format: Optional[OutputFormat] = None,
        dpi: int = 300,
        **kwargs
    ) -> Path:
        """
        Save figure to file.

        Parameters
        ----------
        path : Path or str
            Output file path. Format inferred from extension if not given
            (png when the extension is unknown).
        format : str, optional
            "png", "pdf", "svg" or "html" (PNG embedded in a minimal page)
        dpi : int, default 300
            DPI for raster formats

        Returns
        -------
        Path
            The path written
        """
        path = Path(path)
        if format is None:
            format = path.suffix.lstrip(".").lower()
            if format not in ("png", "pdf", "svg", "html"):
                format = "png"

        path.parent.mkdir(parents=True, exist_ok=True)
        save_kwargs = {"dpi": dpi, "bbox_inches": "tight", "facecolor": "white", **kwargs}

        if format == "html":
            img_b64 = self.to_base64(dpi=dpi)
            title = html_lib.escape(self.title)
            path.write_text(
                f"<!DOCTYPE html>\n<html><head><title>{title}</title></head>\n"
                f'<body><img src="data:image/png;base64,{img_b64}" alt="{title}"></body></html>'
            )
        else:
            self.fig.savefig(path, format=format, **save_kwargs)
        logger.debug(f"Saved figure '{self.title}' to {path}")
        return path

    def to_base64(self, format: str = "png", dpi: int = 150) -> str:
        """Encode the figure as a base64 image string."""
        buf = io.BytesIO()
        self.fig.savefig(buf, format=format, dpi=dpi, bbox_inches="tight")
        return base64.b64encode(buf.getvalue()).decode()

    def show(self):
        plt.show()

    def close(self):
        """Close the figure to free memory."""
        plt.close(self.fig)


@dataclass
class _TableSection:
    title: str
    table: pd.DataFrame
    description: str = ""
    float_format: str = "{:.3g}"


class FigureCollection:
    """
    Ordered collection of figures and tables for batch saving and reports.

    Examples
    --------
    >>> collection = FigureCollection()
    >>> collection.add("density", viz.plot_density(raw, normalized))
    >>> collection.add_table("go_bp", "GO BP enrichment", enrichment_table)
    >>> collection.save_all("figures/", format="pdf")
    >>> collection.to_html_report("report.html", title="AD microarray")
    """

    def __init__(self):
        self.figures: dict[str, Figure] = {}
        self.tables: dict[str, _TableSection] = {}
        self._order: list[str] = []

    def add(self, key: str, fig: Figure) -> FigureCollection:
        """Add a named figure; returns self for chaining."""
        if key in self.tables:
            raise ValueError(f"Key {key!r} already used by a table")
        self.figures[key] = fig
        if key not in self._order:
            self._order.append(key)
        return self

    def add_table(
        self,
        key: str,
        title: str,
        table: pd.DataFrame,
        description: str = "",
        float_format: str = "{:.3g}",
    ) -> FigureCollection:
        """Add a named result table; returns self for chaining."""
        if key in self.figures:
            raise ValueError(f"Key {key!r} already used by a figure")
        self.tables[key] = _TableSection(title, table, description, float_format)
        if key not in self._order:
            self._order.append(key)
        return self

    def get(self, key: str) -> Optional[Figure]:
        return self.figures.get(key)

    def __getitem__(self, key: str) -> Figure:
        return self.figures[key]

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self):
        """Iterate (key, Figure) pairs in insertion order."""
        for key in self._order:
            if key in self.figures:
                yield key, self.figures[key]

    def save_all(
        self,
        output_dir: Path | str,
        format: OutputFormat = "png",
        dpi: int = 300
    ) -> list[Path]:
        """Save every figure as ``<key>.<format>``; returns the paths."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        return [fig.save(output_dir / f"{key}.{format}", format=format, dpi=dpi) for key, fig in self]

    def to_html_report(
        self,
        output_path: Path | str,
        title: str = "Analysis Report",
        description: str = "",
    ) -> Path:
        """
        Render all figures and tables into one HTML file.

        Returns
        -------
        Path
            Path to the report
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        sections = []
        for key in self._order:
            if key in self.figures:
                fig = self.figures[key]
                heading, text = fig.title, fig.description
                content = f'<img src="data:image/png;base64,{fig.to_base64()}" alt="{html_lib.escape(heading)}">'
            else:
                section = self.tables[key]
                heading, text = section.title, section.description
                if section.table.empty:
                    content = '<p class="empty">No rows.</p>'
                else:
                    content = section.table.to_html(
                        classes="result-table",
                        float_format=section.float_format.format,
                        na_rep="",
                        border=0,
                    )
            sections.append(
                f'<section class="report-section" id="{html_lib.escape(key)}">\n'
                f"<h2>{html_lib.escape(heading)}</h2>\n"
                f'<p class="description">{html_lib.escape(text)}</p>\n'
                f'<div class="content">{content}</div>\n'
                "</section>"
            )

        page = _TEMPLATE
        page = page.replace("{{title}}", html_lib.escape(title))
        page = page.replace("{{description}}", html_lib.escape(description))
        page = page.replace("{{timestamp}}", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        page = page.replace("{{sections}}", "\n".join(sections))

        output_path.write_text(page)
        logger.info(f"Wrote report with {len(self.figures)} figures and {len(self.tables)} tables to {output_path}")
        return output_path

    def close_all(self):
        """Close all figures and empty the collection."""
        for _, fig in self:
            fig.close()
        self.figures.clear()
        self.tables.clear()
        self._order.clear()


_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{{title}}</title>
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
            line-height: 1.5;
            color: #1a1a1a;
            background: #fafafa;
            margin: 0;
            padding: 2rem;
        }
        .container { max-width: 1200px; margin: 0 auto; }
        header { margin-bottom: 2rem; border-bottom: 2px solid #e5e7eb; }
        .timestamp, .description { color: #6b7280; font-size: 0.875rem; }
        .report-section {
            background: #ffffff;
            border-radius: 8px;
            padding: 1.5rem;
            margin-bottom: 1.5rem;
            box-shadow: 0 1px 3px rgba(0,0,0,0.1);
        }
        .content { overflow-x: auto; }
        .content img { max-width: 100%; height: auto; }
        table.result-table { border-collapse: collapse; font-size: 0.8rem; }
        table.result-table th, table.result-table td { padding: 0.25rem 0.6rem; text-align: right; }
        table.result-table tr:nth-child(even) { background: #f3f4f6; }
    </style>
</head>
<body>
    <div class="container">
        <header>
            <h1>{{title}}</h1>
            <p class="timestamp">Generated: {{timestamp}}</p>
            <p>{{description}}</p>
        </header>
        <main>
{{sections}}
        </main>
    </div>
</body>
</html>"""
