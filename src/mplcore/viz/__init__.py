"""
Visualization utilities.

- Heatmaps of grid z-slices
- Side-by-side layer views
"""

from mplcore.viz.slices import plot_layer_slice, plot_layers, save_figure

__all__ = [
    "plot_layer_slice",
    "plot_layers",
    "save_figure",
]
