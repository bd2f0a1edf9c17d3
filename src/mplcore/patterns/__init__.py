"""
Patterns: grid contents as portable JSON documents.

- mpl.pattern.v1: a single layer
- mpl.pattern.layers.v1: several layers
"""

from mplcore.patterns.io import (
    Pattern,
    PatternLayer,
    ApplyOptions,
    export_pattern,
    export_layers,
    dumps,
    loads,
    apply_pattern,
)

__all__ = [
    "Pattern",
    "PatternLayer",
    "ApplyOptions",
    "export_pattern",
    "export_layers",
    "dumps",
    "loads",
    "apply_pattern",
]
