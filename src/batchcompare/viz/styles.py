"""
Consistent visual styles for the batch comparison figures.

Domain Conventions
------------------
- Montgomery = Blue (#2563eb), Pickrell = Orange (#f97316)
- Male = Teal (#0d9488), Female = Violet (#7c3aed) [gender-neutral colors]
- One fixed colour per adjustment method, shared by every figure
- |r| heatmaps use a sequential colormap, signed correlations RdBu_r
- All colorblind-safe palettes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

import matplotlib.pyplot as plt
import seaborn as sns


def _default_methods() -> dict[str, str]:
    return {
        "none": "#6b7280",     # Gray-500
        "study": "#111827",    # Gray-900 (reference)
        "sva": "#2563eb",      # Blue-600
        "pca": "#059669",      # Emerald-600
        "ruvr": "#dc2626",     # Red-600
        "ruvg": "#d97706",     # Amber-600
    }


@dataclass(frozen=True)
class Palette:
    """
    Color palette for batch comparison figures.

    Attributes
    ----------
    study_a, study_b : str
        Colors for the first and second study (sorted order)
    male, female : str
        Colors for sex
    missing : str
        Color for unknown labels
    neutral : str
        Reference lines (chance CAT, diagonals)
    diverging : str
        Colormap for signed correlations
    sequential : str
        Colormap for absolute correlations
    methods : dict
        Adjustment method -> color
    """
    study_a: str = "#2563eb"     # Blue-600
    study_b: str = "#f97316"     # Orange-500
    male: str = "#0d9488"        # Teal-600
    female: str = "#7c3aed"      # Violet-600
    missing: str = "#9ca3af"     # Gray-400
    neutral: str = "#6b7280"     # Gray-500
    diverging: str = "RdBu_r"
    sequential: str = "viridis"
    methods: dict[str, str] = field(default_factory=_default_methods)

    @property
    def sex(self) -> dict[str, str]:
        """Color mapping for sex values."""
        return {"male": self.male, "female": self.female}

    def for_studies(self, studies: list[str]) -> dict[str, str]:
        """Map study labels to colors; the first two sorted studies get the fixed pair."""
        fixed = [self.study_a, self.study_b]
        extra = sns.color_palette("Set2", 8).as_hex()
        colors = {}
        for i, study in enumerate(sorted(studies)):
            colors[study] = fixed[i] if i < len(fixed) else extra[(i - len(fixed)) % len(extra)]
        return colors

    def for_method(self, method: str) -> str:
        """Color of an adjustment or estimator; '+' prefixes are ignored."""
        return self.methods.get(method.lstrip("+").lower(), self.neutral)


PALETTES = {
    "default": Palette(),
    "colorblind": Palette(
        study_a="#0077bb",
        study_b="#ee7733",
        male="#009988",
        female="#aa3377",
        missing="#bbbbbb",
        neutral="#999999",
        methods={
            "none": "#bbbbbb",
            "study": "#000000",
            "sva": "#0077bb",
            "pca": "#009988",
            "ruvr": "#cc3311",
            "ruvg": "#ee7733",
        },
    ),
}


def configure_style(
    style: Literal["paper", "notebook"] = "paper",
    palette: str | Palette = "default",
    font_scale: float = 1.0
) -> Palette:
    """
    Configure matplotlib and seaborn for consistent figures.

    Parameters
    ----------
    style : {"paper", "notebook"}
        paper: publication sizes and 300 dpi; notebook: larger fonts,
        screen dpi
    palette : str or Palette
        Palette name or instance
    font_scale : float
        Multiplier for all font sizes

    Returns
    -------
    Palette
        The configured palette.
    """
    if isinstance(palette, str):
        palette = PALETTES.get(palette, PALETTES["default"])

    base_params = {
        "figure.facecolor": "white",
        "axes.facecolor": "white",
        "axes.edgecolor": "#333333",
        "axes.labelcolor": "#333333",
        "text.color": "#333333",
        "xtick.color": "#333333",
        "ytick.color": "#333333",
        "axes.spines.top": False,
        "axes.spines.right": False,
        "legend.frameon": False,
    }

    if style == "paper":
        style_params = {
            "font.size": 10 * font_scale,
            "axes.titlesize": 11 * font_scale,
            "axes.labelsize": 10 * font_scale,
            "legend.fontsize": 9 * font_scale,
            "savefig.dpi": 300,
            "lines.linewidth": 1.2,
        }
        context = "paper"
    else:
        style_params = {
            "font.size": 11 * font_scale,
            "axes.titlesize": 12 * font_scale,
            "axes.labelsize": 11 * font_scale,
            "legend.fontsize": 10 * font_scale,
            "savefig.dpi": 150,
            "lines.linewidth": 1.5,
        }
        context = "notebook"

    sns.set_theme(style="whitegrid", context=context, font_scale=font_scale)
    plt.rcParams.update({**base_params, **style_params})

    return palette
