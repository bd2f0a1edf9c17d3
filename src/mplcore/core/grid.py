"""
VoxelGrid: the layered 3D byte buffer the engine simulates on.

Each layer is a dense uint8 array of shape (z, y, x), so the flattened C-order
index of a voxel is ``x + y*sx + z*sx*sy``. Dimensions are fixed when the grid
is created; layers are added on demand up to ``max_layers``.

The grid owns its buffers. Every mutation, the end-of-tick swap, and every
snapshot copy happen under one lock, so a reader on another thread sees the
grid either fully before or fully after a tick.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from functools import cached_property
import logging
import threading
from typing import Iterator, Optional

import numpy as np
from scipy import ndimage

logger = logging.getLogger(__name__)


@dataclass
class GridConfig:
    """Configuration for a voxel grid."""

    nx: int  # Grid width
    ny: int  # Grid height
    nz: int = 1  # Grid depth (1 for 2D programs)
    max_layers: int = 8  # Layers reachable through layer(n)
    full_intensity: int = 255  # Value written by set()

    def __post_init__(self):
        if self.nx < 1 or self.ny < 1 or self.nz < 1:
            raise ValueError(f"Grid dimensions must be positive, got {self.size}")
        if not 0 <= self.full_intensity <= 255:
            raise ValueError("full_intensity must fit in a byte")

    @property
    def size(self) -> tuple[int, int, int]:
        """(x, y, z) extent."""
        return self.nx, self.ny, self.nz


def layer_id(n: int) -> str:
    return f"layer-{n}"


def layer_index(layer_id_: str) -> int:
    """Inverse of ``layer_id``; raises ValueError for foreign ids."""
    prefix, _, number = layer_id_.rpartition("-")
    if prefix != "layer" or not number.isdigit():
        raise ValueError(f"Not a layer id: {layer_id_!r}")
    return int(number)


# 3D Moore footprint: the 26 cells around the centre
MOORE_FOOTPRINT = np.ones((3, 3, 3), dtype=bool)
MOORE_FOOTPRINT[1, 1, 1] = False
_MOORE_KERNEL = MOORE_FOOTPRINT.astype(np.int32)


class NeighborhoodField:
    """
    Whole-layer neighbourhood aggregates for one tick.

    Each aggregate is computed once with a zero-padded ndimage filter the
    first time a rule asks for it, so per-cell lookups are a single array
    read.
    """

    def __init__(self, buffer: np.ndarray):
        self.buffer = buffer

    @cached_property
    def alive(self) -> np.ndarray:
        return ndimage.convolve(
            (self.buffer > 0).astype(np.int32), _MOORE_KERNEL, mode="constant", cval=0
        )

    @cached_property
    def total(self) -> np.ndarray:
        return ndimage.convolve(
            self.buffer.astype(np.int32), _MOORE_KERNEL, mode="constant", cval=0
        )

    @cached_property
    def maximum(self) -> np.ndarray:
        return ndimage.maximum_filter(self.buffer, footprint=MOORE_FOOTPRINT, mode="constant", cval=0)

    @cached_property
    def minimum(self) -> np.ndarray:
        return ndimage.minimum_filter(self.buffer, footprint=MOORE_FOOTPRINT, mode="constant", cval=0)


class VoxelGrid:
    """
    Layered voxel storage plus the step counter and version stamp.

    ``version`` increases on every mutation; snapshot consumers use it to
    tell whether anything changed since their last poll.
    """

    def __init__(self, config: GridConfig):
        self.config = config
        self._lock = threading.RLock()
        self._layers: dict[int, np.ndarray] = {0: self._blank()}
        self.active_layer = 0
        self.step_count = 0
        self.version = 0

    def _blank(self) -> np.ndarray:
        return np.zeros(self.shape, dtype=np.uint8)

    @property
    def shape(self) -> tuple[int, int, int]:
        """Array shape (nz, ny, nx)."""
        return self.config.nz, self.config.ny, self.config.nx

    @property
    def size(self) -> tuple[int, int, int]:
        """Extent (x, y, z)."""
        return self.config.size

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def index(self, x: int, y: int, z: int = 0) -> int:
        """Flat buffer index of a voxel."""
        sx, sy, _ = self.size
        return x + y * sx + z * sx * sy

    def in_bounds(self, x: int, y: int, z: int = 0) -> bool:
        sx, sy, sz = self.size
        return 0 <= x < sx and 0 <= y < sy and 0 <= z < sz

    def iter_voxels(self) -> Iterator[tuple[int, int, int]]:
        """Iterate (x, y, z) in tick order: z, then y, then x ascending."""
        sx, sy, sz = self.size
        for z in range(sz):
            for y in range(sy):
                for x in range(sx):
                    yield x, y, z

    # ─────────────────────────────────────────────────────────────
    # Layers
    # ─────────────────────────────────────────────────────────────

    @property
    def layer_indices(self) -> list[int]:
        """Existing layers in tick order."""
        return sorted(self._layers)

    def has_layer(self, n: int) -> bool:
        return n in self._layers

    def ensure_layer(self, n: int) -> bool:
        """Create layer ``n`` if allowed; returns False when out of range."""
        if not 0 <= n < self.config.max_layers:
            return False
        with self._lock:
            if n not in self._layers:
                self._layers[n] = self._blank()
                self.version += 1
        return True

    def select_layer(self, n: int) -> bool:
        if not self.ensure_layer(n):
            logger.warning("Ignoring layer(%d): outside 0..%d", n, self.config.max_layers - 1)
            return False
        self.active_layer = n
        return True

    def layer(self, n: Optional[int] = None) -> np.ndarray:
        """Read-only view of a layer buffer (active layer by default)."""
        buffer = self._layers[self.active_layer if n is None else n].view()
        buffer.flags.writeable = False
        return buffer

    # ─────────────────────────────────────────────────────────────
    # Mutation
    # ─────────────────────────────────────────────────────────────

    def set(self, x: int, y: int, z: int = 0, value: Optional[int] = None, layer: Optional[int] = None) -> bool:
        """
        Write one voxel; out-of-range coordinates are a silent no-op.

        Returns True if the voxel was inside the grid.
        """
        if not self.in_bounds(x, y, z):
            return False
        value = self.config.full_intensity if value is None else value
        with self._lock:
            self._layers[self.active_layer if layer is None else layer][z, y, x] = value
            self.version += 1
        return True

    def get(self, x: int, y: int, z: int = 0, layer: Optional[int] = None) -> int:
        """Voxel value, 0 outside the grid."""
        if not self.in_bounds(x, y, z):
            return 0
        return int(self._layers[self.active_layer if layer is None else layer][z, y, x])

    def clear(self, layer: Optional[int] = None) -> None:
        """Zero one layer (the active one by default)."""
        with self._lock:
            self._layers[self.active_layer if layer is None else layer].fill(0)
            self.version += 1

    def reset(self) -> None:
        """Back to a single empty layer at step 0."""
        with self._lock:
            self._layers = {0: self._blank()}
            self.active_layer = 0
            self.step_count = 0
            self.version += 1

    @contextmanager
    def mutate(self, n: Optional[int] = None) -> Iterator[np.ndarray]:
        """Writable access to a whole layer buffer under the grid lock."""
        with self._lock:
            yield self._layers[self.active_layer if n is None else n]
            self.version += 1

    def commit_tick(self, buffers: Optional[dict[int, np.ndarray]]) -> int:
        """
        Publish the result of a tick: swap in the write buffers (if any) and
        advance the step counter in one locked operation.

        Returns the new step count.
        """
        with self._lock:
            if buffers is not None:
                for n, buffer in buffers.items():
                    if buffer.shape != self.shape or buffer.dtype != np.uint8:
                        raise ValueError(
                            f"Write buffer for layer {n} has shape {buffer.shape}, "
                            f"expected {self.shape}"
                        )
                self._layers.update(buffers)
            self.step_count += 1
            self.version += 1
            return self.step_count

    def layers_view(self) -> dict[int, np.ndarray]:
        """Current buffers by layer (no copy); valid until the next commit."""
        with self._lock:
            return dict(self._layers)

    def copy_channels(self) -> tuple[int, int, dict[int, bytes]]:
        """Consistent (version, step, {layer: bytes}) copy of every layer."""
        with self._lock:
            return (
                self.version,
                self.step_count,
                {n: buffer.tobytes() for n, buffer in sorted(self._layers.items())},
            )
