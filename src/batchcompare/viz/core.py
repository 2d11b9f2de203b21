"""
Core visualization primitives: Figure wrapper and FigureCollection.

Figure wraps one matplotlib figure with a title and description so it can
be saved, embedded and closed uniformly. FigureCollection gathers the
figures of one comparison run, saves them together and renders a single
self-contained HTML report with the result tables.
"""

from __future__ import annotations

import base64
import html
import io
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator, Literal, Mapping, Optional

import matplotlib.figure
import matplotlib.pyplot as plt
import pandas as pd

from batchcompare.utils.fileio import atomic_write_text

OutputFormat = Literal["png", "pdf", "svg", "html"]

_FORMATS = ("png", "pdf", "svg", "html")


@dataclass
class Figure:
    """
    Wrapper for a matplotlib figure with report metadata.

    Attributes
    ----------
    fig : matplotlib.figure.Figure
        The underlying figure
    title : str
        Human-readable title
    description : str
        What the figure shows
    metadata : dict
        Creation time and plotting parameters

    Examples
    --------
    >>> fig = Figure(fig=plt.figure(), title="CAT curves",
    ...              description="Concordance with the study-adjusted ranking")
    >>> fig.save("cat.pdf")
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

        The format is inferred from the extension when not given (png for
        unknown extensions). html embeds a PNG in a minimal page.

        Returns
        -------
        Path
            The path where the figure was saved.
        """
        path = Path(path)

        if format is None:
            format = path.suffix.lstrip(".").lower()
            if format not in _FORMATS:
                format = "png"
        elif format not in _FORMATS:
            raise ValueError(f"Unsupported format '{format}'; choose from {_FORMATS}")

        path.parent.mkdir(parents=True, exist_ok=True)

        save_kwargs = {
            "dpi": dpi,
            "bbox_inches": "tight",
            "facecolor": "white",
            **kwargs
        }

        if format == "html":
            img_b64 = self.to_base64(dpi=dpi)
            title = html.escape(self.title)
            path.write_text(
                f"<!DOCTYPE html>\n<html><head><title>{title}</title></head>\n"
                f'<body style="margin:0;display:flex;justify-content:center;background:#f5f5f5;">\n'
                f'<img src="data:image/png;base64,{img_b64}" alt="{title}">\n'
                "</body></html>"
            )
        else:
            self.fig.savefig(path, format=format, **save_kwargs)

        return path

    def to_base64(self, format: str = "png", dpi: int = 150) -> str:
        """Base64-encoded image for embedding in HTML."""
        buf = io.BytesIO()
        self.fig.savefig(buf, format=format, dpi=dpi, bbox_inches="tight", facecolor="white")
        return base64.b64encode(buf.getvalue()).decode()

    def close(self):
        """Close the figure to free memory."""
        plt.close(self.fig)


class FigureCollection:
    """
    Named, ordered collection of figures for one comparison run.

    Examples
    --------
    >>> collection = FigureCollection()
    >>> collection.add("cat_curves", plot_cat_curves(cat))
    >>> collection.save_all(Path("figures/"), format="pdf")
    >>> collection.to_html_report(Path("report.html"), title="Batch comparison")
    """

    def __init__(self):
        self.figures: dict[str, Figure] = {}
        self._creation_order: list[str] = []

    def add(self, key: str, fig: Figure) -> "FigureCollection":
        """Add a named figure; returns self for chaining."""
        self.figures[key] = fig
        if key not in self._creation_order:
            self._creation_order.append(key)
        return self

    def get(self, key: str) -> Optional[Figure]:
        return self.figures.get(key)

    def __getitem__(self, key: str) -> Figure:
        return self.figures[key]

    def __len__(self) -> int:
        return len(self.figures)

    def __iter__(self) -> Iterator[tuple[str, Figure]]:
        """Iterate in creation order."""
        for key in self._creation_order:
            yield key, self.figures[key]

    def save_all(
        self,
        output_dir: Path | str,
        format: OutputFormat = "png",
        dpi: int = 300
    ) -> list[Path]:
        """Save every figure as `<key>.<format>` under output_dir."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        saved = []
        for key, fig in self:
            saved.append(fig.save(output_dir / f"{key}.{format}", format=format, dpi=dpi))
        return saved

    def to_html_report(
        self,
        output_path: Path | str,
        title: str = "Batch Effect Comparison",
        description: str = "",
        tables: Optional[Mapping[str, pd.DataFrame]] = None,
    ) -> Path:
        """
        Write a self-contained HTML report.

        Figures are embedded as base64 PNG; tables are rendered with
        DataFrame.to_html after the figures.

        Returns
        -------
        Path
            Path to the generated report.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        sections = []
        for key, fig in self:
            img_b64 = fig.to_base64(format="png", dpi=150)
            sections.append(
                f'<section class="figure-section" id="{html.escape(key)}">\n'
                f"  <h2>{html.escape(fig.title)}</h2>\n"
                f'  <p class="description">{html.escape(fig.description)}</p>\n'
                f'  <div class="figure-content"><img src="data:image/png;base64,{img_b64}" '
                f'alt="{html.escape(fig.title)}"></div>\n'
                "</section>"
            )

        for name, table in (tables or {}).items():
            sections.append(
                f'<section class="figure-section" id="table-{html.escape(name)}">\n'
                f"  <h2>{html.escape(name)}</h2>\n"
                f'  <div class="table-content">{table.to_html(float_format=lambda v: f"{v:.3f}", border=0)}</div>\n'
                "</section>"
            )

        page = self._default_template()
        page = page.replace("{{title}}", html.escape(title))
        page = page.replace("{{description}}", html.escape(description))
        page = page.replace("{{timestamp}}", datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        page = page.replace("{{figures}}", "\n".join(sections))

        atomic_write_text(output_path, page)
        return output_path

    def _default_template(self) -> str:
        return """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{{title}}</title>
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
            line-height: 1.6;
            color: #1a1a1a;
            background: #fafafa;
            margin: 0;
            padding: 2rem;
        }
        .container { max-width: 1200px; margin: 0 auto; }
        header { margin-bottom: 2rem; border-bottom: 2px solid #e5e7eb; }
        .timestamp { color: #6b7280; font-size: 0.875rem; }
        .figure-section {
            background: #ffffff;
            border-radius: 8px;
            padding: 1.5rem;
            margin-bottom: 1.5rem;
            box-shadow: 0 1px 3px rgba(0,0,0,0.1);
        }
        .description { color: #6b7280; font-size: 0.875rem; }
        .figure-content { display: flex; justify-content: center; overflow-x: auto; }
        .figure-content img { max-width: 100%; height: auto; }
        .table-content { overflow-x: auto; font-size: 0.8rem; }
        .table-content td, .table-content th { padding: 0.2rem 0.6rem; text-align: right; }
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
            {{figures}}
        </main>
    </div>
</body>
</html>"""

    def close_all(self):
        """Close all figures and empty the collection."""
        for _, fig in self:
            fig.close()
        self.figures.clear()
        self._creation_order.clear()
