"""
Visualization for the batch estimator comparison.

Static matplotlib/seaborn figures wrapped in Figure objects so they can be
saved in any format and bundled into one HTML report.

Examples
--------
>>> from batchcompare.viz import BatchVisualizer, FigureCollection
>>>
>>> viz = BatchVisualizer()
>>> collection = FigureCollection()
>>> collection.add("cat_curves", viz.plot_cat_curves(cat, n_features=8000))
>>> collection.save_all(Path("figures/"), format="pdf")
"""

from batchcompare.viz.core import Figure, FigureCollection
from batchcompare.viz.styles import Palette, PALETTES, configure_style
from batchcompare.viz.batch import BatchVisualizer

__all__ = [
    "Figure",
    "FigureCollection",
    "Palette",
    "PALETTES",
    "configure_style",
    "BatchVisualizer",
]
