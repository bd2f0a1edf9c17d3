"""
Read-only views of the grid for external consumers.

Snapshots hold byte copies taken under the grid lock, so they stay valid and
consistent while the VM keeps ticking. ``SnapshotPublisher`` caches them per
grid version and supports an external override provider.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
from typing import Callable, Optional, Sequence

import numpy as np

from mplcore.core.events import now_ms
from mplcore.core.grid import VoxelGrid, layer_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridSnapshot:
    """One layer's voxels at one step."""

    size: tuple[int, int, int]  # (x, y, z)
    channel: bytes  # flat, index = x + y*sx + z*sx*sy
    step: int
    layer_id: str = "layer-0"

    def index(self, x: int, y: int, z: int) -> Optional[int]:
        sx, sy, sz = self.size
        if 0 <= x < sx and 0 <= y < sy and 0 <= z < sz:
            return x + y * sx + z * sx * sy
        return None

    def get_state_at(self, x: int, y: int, z: int = 0) -> Optional[dict]:
        i = self.index(x, y, z)
        if i is None:
            return None
        return {
            "value": self.channel[i],
            "position": {"x": x, "y": y, "z": z},
            "step": self.step,
            "timestamp": now_ms(),
        }

    def as_array(self) -> np.ndarray:
        """Read-only (z, y, x) array over the channel bytes."""
        sx, sy, sz = self.size
        return np.frombuffer(self.channel, dtype=np.uint8).reshape(sz, sy, sx)


@dataclass(frozen=True)
class LayerSnapshot:
    id: str
    name: str
    size: tuple[int, int, int]
    channel: bytes
    visible: bool = True
    opacity: float = 1.0

    @property
    def index(self) -> int:
        return int(self.id.rpartition("-")[2])

    def as_array(self) -> np.ndarray:
        sx, sy, sz = self.size
        return np.frombuffer(self.channel, dtype=np.uint8).reshape(sz, sy, sx)


def common_size(layers: Sequence[LayerSnapshot]) -> Optional[tuple[int, int, int]]:
    """Shared size of all layers; falls back to the first layer's size on mismatch."""
    if not layers:
        return None
    first = layers[0].size
    mismatched = [layer.id for layer in layers[1:] if layer.size != first]
    if mismatched:
        logger.warning("Layer sizes differ from %s (%s); using %s", layers[0].id, ", ".join(mismatched), first)
    return first


def layer_stats(layers: Sequence[LayerSnapshot]) -> dict:
    total_voxels = sum(int(np.prod(layer.size)) for layer in layers)
    return {
        "total_layers": len(layers),
        "total_voxels": total_voxels,
        "memory_usage": sum(len(layer.channel) for layer in layers),
        "has_valid_dimensions": len({layer.size for layer in layers}) <= 1,
    }


SnapshotProvider = Callable[[], GridSnapshot]


class SnapshotPublisher:
    """
    Versioned snapshot access for one grid.

    The published version is the grid version plus the number of external
    override changes, so it moves whenever either source changes.
    """

    def __init__(self, grid: VoxelGrid):
        self.grid = grid
        self._override: Optional[SnapshotProvider] = None
        self._override_bumps = 0
        self._cached: Optional[tuple[int, int, list[LayerSnapshot]]] = None  # (grid version, step, layers)

    @property
    def version(self) -> int:
        return self.grid.version + self._override_bumps

    def set_external_snapshot(self, provider: Optional[SnapshotProvider]) -> None:
        """Replace the snapshot source (None restores the grid)."""
        self._override = provider
        self._override_bumps += 1

    def _layers(self) -> tuple[int, list[LayerSnapshot]]:
        cached = self._cached
        if cached is None or cached[0] != self.grid.version:
            grid_version, step, channels = self.grid.copy_channels()
            layers = [
                LayerSnapshot(id=layer_id(n), name=f"Layer {n}", size=self.grid.size, channel=data)
                for n, data in channels.items()
            ]
            cached = self._cached = (grid_version, step, layers)
        return cached[1], cached[2]

    def get_snapshot(self) -> tuple[int, GridSnapshot]:
        """Current version and the active layer's snapshot."""
        version = self.version
        if self._override is not None:
            return version, self._override()
        step, layers = self._layers()
        wanted = layer_id(self.grid.active_layer)
        layer = next((s for s in layers if s.id == wanted), layers[0])
        return version, GridSnapshot(size=layer.size, channel=layer.channel, step=step, layer_id=layer.id)

    def get_layers(self) -> tuple[int, list[LayerSnapshot]]:
        _, layers = self._layers()
        return self.version, list(layers)
