"""Tiled layout of terminal panes.

The client arranges its sessions in a tree of panes and splits; splitting
or closing a pane yields a new tree whose added and removed panes map to
terminal sessions to create or close.
"""

from termbroker.layout.tree import (
    TOTAL_SIZE,
    Constraint,
    Direction,
    LayoutError,
    LayoutTree,
    Pane,
    PaneRegion,
    Split,
    diff_panes,
)

__all__ = [
    "TOTAL_SIZE",
    "Constraint",
    "Direction",
    "LayoutError",
    "LayoutTree",
    "Pane",
    "PaneRegion",
    "Split",
    "diff_panes",
]
