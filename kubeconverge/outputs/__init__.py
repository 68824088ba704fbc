"""Asynchronous output values.

Submodules:
    cell   -- OutputCell single-assignment container and the gather combinator.
    paths  -- Dotted field paths used by references and ``OutputCell.field``.
"""

from kubeconverge.outputs.cell import CellState, OutputCell, gather
from kubeconverge.outputs.paths import get_path, parse_path

__all__ = ["CellState", "OutputCell", "gather", "get_path", "parse_path"]
