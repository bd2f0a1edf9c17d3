"""
Heatmaps of grid slices.

Debug aid for looking at a z-slice of a snapshot; not a renderer.
"""

from __future__ import annotations
from pathlib import Path
from typing import Sequence, Union

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.axes import Axes
from matplotlib.colors import LinearSegmentedColormap
from matplotlib.figure import Figure

from mplcore.core.snapshot import GridSnapshot, LayerSnapshot

# Dead cells near-black, live cells warm white
CMAP_VOXELS = LinearSegmentedColormap.from_list(
    "voxels", ["#0d0221", "#26408b", "#0f8b8d", "#f5f0e1"]
)

Slice = Union[GridSnapshot, LayerSnapshot, np.ndarray]


def slice_array(source: Slice, z: int = 0) -> np.ndarray:
    """(y, x) array of one z-slice."""
    volume = source if isinstance(source, np.ndarray) else source.as_array()
    if volume.ndim == 2:
        return volume
    if not 0 <= z < volume.shape[0]:
        raise IndexError(f"z={z} outside 0..{volume.shape[0] - 1}")
    return volume[z]


def plot_layer_slice(
    source: Slice,
    z: int = 0,
    title: str = "",
    cmap=None,
    ax: Axes | None = None,
    colorbar: bool = True,
    figsize: tuple[float, float] = (6, 6),
) -> tuple[Figure, Axes]:
    """
    Plot one z-slice of a snapshot as a heatmap.

    Args:
        source: GridSnapshot, LayerSnapshot or a (z, y, x) / (y, x) array
        z: Slice index
        title: Plot title (defaults to the step for grid snapshots)
        cmap: Colormap (defaults to CMAP_VOXELS)
        ax: Existing axes to plot on (creates new figure if None)
        colorbar: Whether to add a colorbar
        figsize: Figure size if creating new figure

    Returns:
        (fig, ax) tuple
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    if not title and isinstance(source, GridSnapshot):
        title = f"{source.layer_id}, step {source.step}, z={z}"

    im = ax.imshow(
        slice_array(source, z),
        origin="lower",
        cmap=cmap if cmap is not None else CMAP_VOXELS,
        vmin=0,
        vmax=255,
        aspect="equal",
        interpolation="nearest",
    )
    if colorbar:
        plt.colorbar(im, ax=ax, fraction=0.046, pad=0.04)

    ax.set_title(title)
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return fig, ax


def plot_layers(layers: Sequence[LayerSnapshot], z: int = 0, figsize_per: float = 4.0) -> Figure:
    """Side-by-side slices of several layers."""
    fig, axes = plt.subplots(1, len(layers), figsize=(figsize_per * len(layers), figsize_per), squeeze=False)
    for ax, layer in zip(axes[0], layers):
        plot_layer_slice(layer, z=z, title=layer.name, ax=ax, colorbar=False)
    fig.tight_layout()
    return fig


def save_figure(fig: Figure, path: str | Path, dpi: int = 150, **kwargs) -> None:
    """Save figure to file."""
    fig.savefig(path, dpi=dpi, bbox_inches="tight", **kwargs)
