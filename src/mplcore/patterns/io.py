"""
Pattern interchange: grid contents as portable JSON documents.

Two schemas:
- ``mpl.pattern.v1``: one layer, ``{schema, size, channel, meta}``
- ``mpl.pattern.layers.v1``: several layers, ``{schema, layers: [...], meta}``
  with each layer ``{id, name, size, channel, meta}``

``size`` is ``{x, y, z}``; ``channel`` is the base64 of the layer bytes in
grid order (index = x + y*sx + z*sx*sy).
"""

from __future__ import annotations
import base64
import binascii
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Optional

import numpy as np

from mplcore.core.events import now_ms
from mplcore.core.grid import VoxelGrid, layer_id, layer_index
from mplcore.lang.errors import PatternError

logger = logging.getLogger(__name__)

SINGLE_SCHEMA = "mpl.pattern.v1"
LAYERS_SCHEMA = "mpl.pattern.layers.v1"
MERGE_MODES = ("replace", "add", "max")


@dataclass
class PatternLayer:
    id: str
    name: str
    size: tuple[int, int, int]  # (x, y, z)
    channel: bytes
    meta: dict[str, Any] = field(default_factory=dict)

    def as_array(self) -> np.ndarray:
        sx, sy, sz = self.size
        return np.frombuffer(self.channel, dtype=np.uint8).reshape(sz, sy, sx)


@dataclass
class Pattern:
    schema: str
    layers: list[PatternLayer]
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def is_multi_layer(self) -> bool:
        return self.schema == LAYERS_SCHEMA


@dataclass
class ApplyOptions:
    origin: tuple[int, int, int] = (0, 0, 0)
    target_layer: Optional[str] = None  # layer id, e.g. "layer-1"
    merge_mode: str = "replace"

    def __post_init__(self):
        if self.merge_mode not in MERGE_MODES:
            raise PatternError(f"Unknown merge mode {self.merge_mode!r}; expected one of {MERGE_MODES}")


def encode_channel(channel: bytes) -> str:
    return base64.b64encode(channel).decode("ascii")


def decode_channel(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as err:
        raise PatternError(f"Channel is not valid base64: {err}") from None


# ═══════════════════════════════════════════════════════════════
# Export
# ═══════════════════════════════════════════════════════════════


def export_pattern(
    grid: VoxelGrid,
    layer: Optional[int] = None,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Pattern:
    """Single-layer pattern of one grid layer (the active one by default)."""
    n = grid.active_layer if layer is None else layer
    _, _, channels = grid.copy_channels()
    if n not in channels:
        raise PatternError(f"Grid has no layer {n}")
    meta: dict[str, Any] = {"createdAt": now_ms()}
    if name is not None:
        meta["name"] = name
    if description is not None:
        meta["description"] = description
    data = PatternLayer(layer_id(n), f"Layer {n}", grid.size, channels[n])
    return Pattern(SINGLE_SCHEMA, [data], meta)


def export_layers(grid: VoxelGrid, description: Optional[str] = None) -> Pattern:
    """Multi-layer pattern of every grid layer."""
    _, _, channels = grid.copy_channels()
    layers = [PatternLayer(layer_id(n), f"Layer {n}", grid.size, data) for n, data in channels.items()]
    meta: dict[str, Any] = {"createdAt": now_ms()}
    if description is not None:
        meta["description"] = description
    return Pattern(LAYERS_SCHEMA, layers, meta)


def _size_dict(size: tuple[int, int, int]) -> dict[str, int]:
    return {"x": size[0], "y": size[1], "z": size[2]}


def to_dict(pattern: Pattern) -> dict[str, Any]:
    if pattern.is_multi_layer:
        return {
            "schema": LAYERS_SCHEMA,
            "layers": [
                {
                    "id": layer.id,
                    "name": layer.name,
                    "size": _size_dict(layer.size),
                    "channel": encode_channel(layer.channel),
                    "meta": dict(layer.meta),
                }
                for layer in pattern.layers
            ],
            "meta": dict(pattern.meta),
        }
    layer = pattern.layers[0]
    return {
        "schema": SINGLE_SCHEMA,
        "size": _size_dict(layer.size),
        "channel": encode_channel(layer.channel),
        "meta": dict(pattern.meta),
    }


def dumps(pattern: Pattern, indent: Optional[int] = None) -> str:
    return json.dumps(to_dict(pattern), indent=indent)


# ═══════════════════════════════════════════════════════════════
# Import
# ═══════════════════════════════════════════════════════════════


def _parse_size(raw: Any, where: str) -> tuple[int, int, int]:
    if not isinstance(raw, dict):
        raise PatternError(f"{where}: size must be an object with x, y, z")
    dims = []
    for axis in ("x", "y", "z"):
        value = raw.get(axis)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise PatternError(f"{where}: size.{axis} must be a positive integer, got {value!r}")
        dims.append(value)
    return dims[0], dims[1], dims[2]


def _parse_layer(raw: Any, where: str, default_id: str) -> PatternLayer:
    if not isinstance(raw, dict):
        raise PatternError(f"{where}: expected an object")
    size = _parse_size(raw.get("size"), where)
    encoded = raw.get("channel")
    if not isinstance(encoded, str):
        raise PatternError(f"{where}: channel must be a base64 string")
    channel = decode_channel(encoded)
    expected = size[0] * size[1] * size[2]
    if len(channel) != expected:
        raise PatternError(f"{where}: channel holds {len(channel)} bytes, size needs {expected}")
    meta = raw.get("meta") or {}
    if not isinstance(meta, dict):
        raise PatternError(f"{where}: meta must be an object")
    layer_id_ = raw.get("id", default_id)
    return PatternLayer(str(layer_id_), str(raw.get("name", layer_id_)), size, channel, meta)


def from_dict(data: Any) -> Pattern:
    """Validate a decoded JSON document; raises PatternError when malformed."""
    if not isinstance(data, dict):
        raise PatternError("Pattern must be a JSON object")
    schema = data.get("schema")
    meta = data.get("meta") or {}
    if not isinstance(meta, dict):
        raise PatternError("meta must be an object")

    if schema == SINGLE_SCHEMA:
        return Pattern(SINGLE_SCHEMA, [_parse_layer(data, "pattern", layer_id(0))], meta)
    if schema == LAYERS_SCHEMA:
        raw_layers = data.get("layers")
        if not isinstance(raw_layers, list) or not raw_layers:
            raise PatternError("layers must be a non-empty array")
        layers = [_parse_layer(raw, f"layers[{i}]", layer_id(i)) for i, raw in enumerate(raw_layers)]
        return Pattern(LAYERS_SCHEMA, layers, meta)
    raise PatternError(f"Unknown pattern schema {schema!r}")


def loads(text: str) -> Pattern:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as err:
        raise PatternError(f"Pattern is not valid JSON: {err.msg}", err.lineno, err.colno) from None
    return from_dict(data)


# ═══════════════════════════════════════════════════════════════
# Apply
# ═══════════════════════════════════════════════════════════════


def _merge(region: np.ndarray, piece: np.ndarray, mode: str) -> None:
    if mode == "replace":
        region[...] = piece
    elif mode == "add":
        region[...] = np.minimum(region.astype(np.uint16) + piece, 255).astype(np.uint8)
    else:
        np.maximum(region, piece, out=region)


def _destination(grid: VoxelGrid, layer: PatternLayer, pattern: Pattern, options: ApplyOptions) -> int:
    if not pattern.is_multi_layer:
        if options.target_layer is None:
            return grid.active_layer
        return _layer_number(options.target_layer)
    return _layer_number(layer.id)


def _layer_number(layer_id_: str) -> int:
    try:
        return layer_index(layer_id_)
    except ValueError:
        raise PatternError(f"Cannot map {layer_id_!r} onto a grid layer") from None


def apply_pattern(grid: VoxelGrid, pattern: Pattern, options: Optional[ApplyOptions] = None) -> int:
    """
    Merge a pattern into the grid at ``options.origin``.

    Single-layer patterns land on ``target_layer`` (the active layer by
    default). Multi-layer patterns land layer by layer on the grid layers
    with the same ids; with ``target_layer`` set only that layer is applied.
    Voxels falling outside the grid are clipped.

    Returns the number of grid voxels covered.
    """
    options = options or ApplyOptions()
    layers = pattern.layers
    if pattern.is_multi_layer and options.target_layer is not None:
        layers = [layer for layer in layers if layer.id == options.target_layer]
        if not layers:
            raise PatternError(f"Pattern has no layer {options.target_layer!r}")

    covered = 0
    for layer in layers:
        n = _destination(grid, layer, pattern, options)
        if not grid.ensure_layer(n):
            raise PatternError(f"Layer {n} is outside the grid's {grid.config.max_layers} layers")
        covered += _apply_layer(grid, n, layer, options)
    logger.debug("Applied %s pattern: %d voxel(s) at %s", options.merge_mode, covered, options.origin)
    return covered


def _apply_layer(grid: VoxelGrid, n: int, layer: PatternLayer, options: ApplyOptions) -> int:
    src = layer.as_array()
    origin = options.origin
    bounds = []
    # Axis order matches the (z, y, x) array layout
    for offset, extent, limit in zip(
        (origin[2], origin[1], origin[0]), src.shape, grid.shape
    ):
        lo, hi = max(offset, 0), min(offset + extent, limit)
        if lo >= hi:
            return 0
        bounds.append((lo, hi, lo - offset, hi - offset))

    (z0, z1, sz0, sz1), (y0, y1, sy0, sy1), (x0, x1, sx0, sx1) = bounds
    piece = src[sz0:sz1, sy0:sy1, sx0:sx1]
    with grid.mutate(n) as buffer:
        _merge(buffer[z0:z1, y0:y1, x0:x1], piece, options.merge_mode)
    return int(piece.size)
