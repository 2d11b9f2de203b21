"""
Batch estimator comparison visualizations.

Each figure answers one question about the estimators:

plot_factor_vs_study:
    "Does each method's best factor separate the two studies?"
    Strip + box of the factor per study, points coloured by sex so leakage
    of the biology into a factor is visible.

plot_factor_scatter:
    "Do the methods find the same factor?"
    Pairwise scatter of the methods' best factors, coloured by study.

plot_correlation_heatmap:
    "Which factors agree across methods?"
    |r| between all factors of all methods.

plot_cat_curves:
    "Does adjusting for an estimated factor recover the study-adjusted
    ranking of sex effects?"
    CAT curves against the +study reference with the chance line i/n.
"""

from __future__ import annotations

from itertools import combinations
from typing import Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from batchcompare.batch.factors import BatchFactors
from batchcompare.viz.core import Figure
from batchcompare.viz.styles import PALETTES, Palette

__all__ = ['BatchVisualizer']


class BatchVisualizer:
    """
    Figures comparing batch estimators with each other and with study.

    Parameters
    ----------
    palette : Palette, optional
        Colors; the default palette when None

    Examples
    --------
    >>> viz = BatchVisualizer()
    >>> fig = viz.plot_cat_curves(cat, n_features=8000)
    >>> fig.save("figures/cat_curves.png")
    """

    def __init__(self, palette: Optional[Palette] = None):
        self.palette = palette or PALETTES["default"]
        self.font_sizes = {"title": 11, "label": 10, "tick": 9, "annotation": 8}

    def _best_factor(self, fs: BatchFactors, best: Optional[pd.DataFrame]) -> str:
        if best is not None and fs.method in best.index:
            return str(best.loc[fs.method, 'factor'])
        return fs.names[0]

    def plot_factor_vs_study(
        self,
        factor_sets: Sequence[BatchFactors],
        metadata: pd.DataFrame,
        best: Optional[pd.DataFrame] = None,
        batch_covariate: str = "study",
        hue_covariate: str = "sex",
    ) -> Figure:
        """
        One panel per method: its best study factor by study.

        Parameters
        ----------
        factor_sets : sequence of BatchFactors
            Estimator results (empty sets are skipped)
        metadata : DataFrame
            Sample metadata with the batch and hue covariates
        best : DataFrame, optional
            Output of best_study_match; first factor of each method when None
        """
        sets = [fs for fs in factor_sets if not fs.is_empty]
        n_panels = max(len(sets), 1)
        fig, axes = plt.subplots(1, n_panels, figsize=(3.2 * n_panels, 3.6), squeeze=False)

        if not sets:
            axes[0, 0].text(0.5, 0.5, "No factors estimated", ha="center", va="center",
                            transform=axes[0, 0].transAxes)
            axes[0, 0].set_axis_off()

        studies = sorted(metadata[batch_covariate].dropna().astype(str).unique().tolist())
        hue_colors = self.palette.sex if hue_covariate == "sex" else None

        for ax, fs in zip(axes[0], sets):
            name = self._best_factor(fs, best)
            frame = pd.DataFrame({
                'value': fs.factors[name],
                batch_covariate: metadata.reindex(fs.factors.index)[batch_covariate].astype(str),
                hue_covariate: metadata.reindex(fs.factors.index)[hue_covariate],
            })

            sns.boxplot(
                data=frame, x=batch_covariate, y='value', order=studies, ax=ax,
                color="#f3f4f6", fliersize=0, width=0.5,
            )
            sns.stripplot(
                data=frame, x=batch_covariate, y='value', order=studies, ax=ax,
                hue=hue_covariate, palette=hue_colors, size=3.5, jitter=0.2, alpha=0.8,
            )
            ax.set_title(f"{fs.method.upper()}: {name}", fontsize=self.font_sizes["title"], fontweight="bold")
            ax.set_xlabel("")
            ax.set_ylabel("Factor value", fontsize=self.font_sizes["label"])
            ax.tick_params(labelsize=self.font_sizes["tick"])
            if ax is not axes[0, -1] and ax.get_legend() is not None:
                ax.get_legend().remove()

        fig.tight_layout()
        return Figure(
            fig=fig,
            title="Estimated factors by study",
            description=f"Best {batch_covariate}-correlated factor of each method, points coloured by {hue_covariate}",
            metadata={"methods": [fs.method for fs in sets]},
        )

    def plot_factor_scatter(
        self,
        factor_sets: Sequence[BatchFactors],
        metadata: pd.DataFrame,
        best: Optional[pd.DataFrame] = None,
        batch_covariate: str = "study",
    ) -> Figure:
        """Scatter of every pair of methods' best factors, coloured by study."""
        sets = [fs for fs in factor_sets if not fs.is_empty]
        pairs = list(combinations(sets, 2))
        n_panels = max(len(pairs), 1)
        n_cols = min(n_panels, 3)
        n_rows = int(np.ceil(n_panels / n_cols))
        fig, axes = plt.subplots(n_rows, n_cols, figsize=(3.4 * n_cols, 3.2 * n_rows), squeeze=False)

        colors = self.palette.for_studies(
            metadata[batch_covariate].dropna().astype(str).unique().tolist()
        )

        for ax in axes.flat[len(pairs):]:
            ax.set_axis_off()
        if not pairs:
            axes[0, 0].text(0.5, 0.5, "Need two methods with factors", ha="center", va="center",
                            transform=axes[0, 0].transAxes)

        for ax, (fa, fb) in zip(axes.flat, pairs):
            name_a = self._best_factor(fa, best)
            name_b = self._best_factor(fb, best)
            joined = pd.concat([fa.factors[name_a], fb.factors[name_b]], axis=1, join='inner')
            study = metadata.reindex(joined.index)[batch_covariate].astype(str)

            for level, color in colors.items():
                mask = (study == level).to_numpy()
                ax.scatter(joined[name_a][mask], joined[name_b][mask], s=12, color=color,
                           label=level, alpha=0.8, edgecolors="none")

            ax.set_xlabel(name_a, fontsize=self.font_sizes["label"])
            ax.set_ylabel(name_b, fontsize=self.font_sizes["label"])
            ax.tick_params(labelsize=self.font_sizes["tick"])

        if pairs:
            axes.flat[0].legend(fontsize=self.font_sizes["annotation"], title=batch_covariate)

        fig.tight_layout()
        return Figure(
            fig=fig,
            title="Factor agreement between methods",
            description="Best factors of each pair of methods, coloured by study",
            metadata={"n_pairs": len(pairs)},
        )

    def plot_correlation_heatmap(
        self,
        corr_matrix: pd.DataFrame,
        title: str = "Absolute correlation between factors",
    ) -> Figure:
        """|r| heatmap of all factors; cells annotated when the matrix is small."""
        n = len(corr_matrix)
        size = max(3.5, 0.45 * n + 1.5)
        fig, ax = plt.subplots(figsize=(size + 1.0, size))

        if n == 0:
            ax.text(0.5, 0.5, "No factors estimated", ha="center", va="center", transform=ax.transAxes)
            ax.set_axis_off()
        else:
            sns.heatmap(
                corr_matrix, ax=ax, vmin=0.0, vmax=1.0, cmap=self.palette.sequential,
                square=True, annot=n <= 12, fmt=".2f",
                annot_kws={"fontsize": self.font_sizes["annotation"]},
                cbar_kws={"label": "|r|", "shrink": 0.8},
            )
            ax.tick_params(labelsize=self.font_sizes["tick"])

        ax.set_title(title, fontsize=self.font_sizes["title"], fontweight="bold")
        fig.tight_layout()
        return Figure(
            fig=fig,
            title=title,
            description="Pairwise |Pearson r| between the factors estimated by SVA, PCA, RUVr and RUVg",
            metadata={"n_factors": n},
        )

    def plot_cat_curves(
        self,
        cat: pd.DataFrame,
        n_features: Optional[int] = None,
        reference: str = "+study",
    ) -> Figure:
        """
        CAT curves per adjustment against the reference ranking.

        Parameters
        ----------
        cat : DataFrame
            Output of cat_table (`adjustment`, `rank`, `concordance`)
        n_features : int, optional
            Number of ranked genes; draws the chance line i/n when given
        reference : str
            Label of the reference analysis for the title
        """
        fig, ax = plt.subplots(figsize=(5.5, 4.0))

        for adjustment, group in cat.groupby('adjustment', sort=False):
            ax.plot(group['rank'], group['concordance'], label=adjustment,
                    color=self.palette.for_method(str(adjustment)), linewidth=1.5)

        if n_features and not cat.empty:
            ranks = np.arange(1, int(cat['rank'].max()) + 1)
            ax.plot(ranks, ranks / n_features, color=self.palette.neutral,
                    linestyle="--", linewidth=1.0, label="chance")

        ax.set_ylim(0, 1.02)
        ax.set_xlabel("Rank cutoff (top i genes)", fontsize=self.font_sizes["label"])
        ax.set_ylabel("Proportion in common", fontsize=self.font_sizes["label"])
        ax.set_title(f"Concordance with {reference} ranking", fontsize=self.font_sizes["title"], fontweight="bold")
        ax.tick_params(labelsize=self.font_sizes["tick"])
        ax.legend(fontsize=self.font_sizes["annotation"], loc="lower right")

        fig.tight_layout()
        return Figure(
            fig=fig,
            title="Concordance at the top",
            description=f"Overlap of top-ranked sex effects (|moderated t|) with the {reference} analysis",
            metadata={"n_features": n_features, "reference": reference},
        )
