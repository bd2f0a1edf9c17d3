"""
mplcore: MPL language engine and voxel cellular-automaton simulator

MPL is a small scripting language for setting cells on a layered 3D grid,
declaring parametrized rules, and stepping the grid through discrete ticks.

Core concepts:
- Programs run top to bottom against one VM's global scope and grid
- Rule sets are staged, validated and hot-swapped through a registry
- A tick evaluates every active rule for every cell against the pre-tick
  state and commits all writes at once
- Snapshots and events expose the grid to outside observers
"""

__version__ = "0.1.0"
