"""Tiled layout tree.

A layout is a tree of Panes (leaves, one per terminal session) and Splits
(internal nodes dividing their space among two or more children along one
axis). Nodes are immutable and live in a per-tree arena keyed by node id;
every mutation returns a new LayoutTree that shares the untouched nodes
with its predecessor, so the previous tree is never altered.
"""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass, replace
from typing import Any, Iterator, Mapping, Sequence, Union

TOTAL_SIZE = 100.0

_ID_PATTERN = re.compile(r"^(?:pane|split)-(\d+)$")


class LayoutError(ValueError):
    """Raised for invalid layout structures or resize requests."""


class Direction(str, enum.Enum):
    """Axis a Split divides. Horizontal splits lay children out in columns."""

    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


@dataclass(frozen=True)
class Pane:
    id: str


@dataclass(frozen=True)
class Split:
    id: str
    direction: Direction
    children: tuple[str, ...]
    sizes: tuple[float, ...]


Node = Union[Pane, Split]


@dataclass(frozen=True)
class Constraint:
    """One step on the path from the root to a pane."""

    split_id: str
    direction: Direction
    index: int
    fraction: float  # Share of the parent's extent along ``direction``


@dataclass(frozen=True)
class PaneRegion:
    """Where a pane sits, as fractions of the whole viewport."""

    pane_id: str
    path: tuple[Constraint, ...]
    x: float
    y: float
    width: float
    height: float


def _equal_sizes(count: int) -> tuple[float, ...]:
    share = TOTAL_SIZE / count
    return (share,) * (count - 1) + (TOTAL_SIZE - share * (count - 1),)


def _normalized(sizes: Sequence[float]) -> tuple[float, ...]:
    total = sum(sizes)
    scaled = [s * TOTAL_SIZE / total for s in sizes]
    return tuple(scaled[:-1]) + (TOTAL_SIZE - sum(scaled[:-1]),)


class LayoutTree:
    """An immutable layout tree.

    The tree owns its identifier counter: ids are ``pane-N`` and
    ``split-N`` with N taken from ``next_id``, which every derived tree
    inherits, so ids are never reused along a chain of edits.
    """

    __slots__ = ("_nodes", "_parents", "_root", "_next_id")

    def __init__(self, nodes: Mapping[str, Node], root: str, next_id: int) -> None:
        self._nodes: dict[str, Node] = dict(nodes)
        self._root = root
        self._next_id = next_id
        self._parents: dict[str, str] = {}
        for node in self._nodes.values():
            if isinstance(node, Split):
                for child in node.children:
                    self._parents[child] = node.id

    @classmethod
    def new(cls) -> LayoutTree:
        """A tree holding a single root pane."""
        return cls({"pane-1": Pane("pane-1")}, "pane-1", 2)

    @property
    def root_id(self) -> str:
        return self._root

    @property
    def root(self) -> Node:
        return self._nodes[self._root]

    @property
    def next_id(self) -> int:
        return self._next_id

    def node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def parent_of(self, node_id: str) -> str | None:
        return self._parents.get(node_id)

    def panes(self) -> list[str]:
        """Pane ids in layout order (left to right, top to bottom)."""
        return [pane_id for pane_id, _ in self._walk(self._root, ())]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    # -- mutations -----------------------------------------------------------

    def split(self, pane_id: str, direction: Direction | str) -> LayoutTree:
        """Replace a pane with a 50/50 split holding it and a fresh pane.

        Returns this same tree if ``pane_id`` is not a pane of the tree.
        """
        return self.split_with_id(pane_id, direction)[0]

    def split_with_id(
        self, pane_id: str, direction: Direction | str
    ) -> tuple[LayoutTree, str | None]:
        """Like split(), also returning the new pane's id (None if unchanged)."""
        if not isinstance(self._nodes.get(pane_id), Pane):
            return self, None
        direction = Direction(direction)

        new_pane_id = f"pane-{self._next_id}"
        split_id = f"split-{self._next_id + 1}"
        nodes = dict(self._nodes)
        nodes[new_pane_id] = Pane(new_pane_id)
        nodes[split_id] = Split(
            split_id, direction, (pane_id, new_pane_id), _equal_sizes(2)
        )

        root = self._root
        parent_id = self._parents.get(pane_id)
        if parent_id is None:
            root = split_id
        else:
            self._swap_child(nodes, parent_id, pane_id, split_id)

        return LayoutTree(nodes, root, self._next_id + 2), new_pane_id

    def close(self, pane_id: str) -> LayoutTree:
        """Remove a pane, collapsing splits left with a single child.

        A split reduced to one child is replaced by that child, which takes
        over the split's slot and size. Only the split that actually lost
        a child has its sizes reset, to an equal share for each survivor.
        Returns this same tree for an unknown id or the sole root pane.
        """
        if not isinstance(self._nodes.get(pane_id), Pane) or pane_id == self._root:
            return self

        nodes = dict(self._nodes)
        root = self._root
        removed = pane_id
        del nodes[removed]

        current = self._parents.get(removed)
        while current is not None:
            split = self._parent_split(nodes, current)
            index = split.children.index(removed)
            children = split.children[:index] + split.children[index + 1:]

            if not children:
                # Only reachable from a tree that was already malformed
                if current == root:
                    return self
                del nodes[current]
                removed = current
                current = self._parents.get(current)
                continue

            if len(children) == 1:
                survivor = children[0]
                del nodes[current]
                grandparent = self._parents.get(current)
                if grandparent is None:
                    root = survivor
                else:
                    self._swap_child(nodes, grandparent, current, survivor)
                break

            nodes[current] = replace(
                split, children=children, sizes=_equal_sizes(len(children))
            )
            break

        return LayoutTree(nodes, root, self._next_id)

    def resize(self, split_id: str, sizes: Sequence[float]) -> LayoutTree:
        """Set the proportions of one split's children.

        Sizes are scaled to sum to TOTAL_SIZE.

        Raises:
            LayoutError: Unknown split, wrong number of sizes, or a size
                that is not a positive finite number.
        """
        split = self._nodes.get(split_id)
        if not isinstance(split, Split):
            raise LayoutError(f"{split_id!r} is not a split in this layout")
        if len(sizes) != len(split.children):
            raise LayoutError(
                f"Split {split_id} has {len(split.children)} children, got {len(sizes)} sizes"
            )
        if any(not math.isfinite(s) or s <= 0 for s in sizes):
            raise LayoutError(f"Sizes must be positive numbers: {list(sizes)}")

        nodes = dict(self._nodes)
        nodes[split_id] = replace(split, sizes=_normalized(sizes))
        return LayoutTree(nodes, self._root, self._next_id)

    @staticmethod
    def _parent_split(nodes: Mapping[str, Node], split_id: str) -> Split:
        parent = nodes[split_id]
        if not isinstance(parent, Split):
            raise LayoutError(f"Parent node {split_id!r} is not a split")
        return parent

    @classmethod
    def _swap_child(cls, nodes: dict[str, Node], parent_id: str, old: str, new: str) -> None:
        parent = cls._parent_split(nodes, parent_id)
        nodes[parent_id] = replace(
            parent, children=tuple(new if c == old else c for c in parent.children)
        )

    # -- derived views -------------------------------------------------------

    def render(self) -> list[PaneRegion]:
        """Every pane with its constraint path and bounding box."""
        regions: list[PaneRegion] = []
        self._render(self._root, (), 0.0, 0.0, 1.0, 1.0, regions)
        return regions

    def _render(
        self,
        node_id: str,
        path: tuple[Constraint, ...],
        x: float,
        y: float,
        width: float,
        height: float,
        out: list[PaneRegion],
    ) -> None:
        node = self._nodes[node_id]
        if isinstance(node, Pane):
            out.append(PaneRegion(node.id, path, x, y, width, height))
            return

        offset = 0.0
        for index, (child, size) in enumerate(zip(node.children, node.sizes)):
            fraction = size / TOTAL_SIZE
            step = path + (Constraint(node.id, node.direction, index, fraction),)
            if node.direction is Direction.HORIZONTAL:
                self._render(child, step, x + offset * width, y, width * fraction, height, out)
            else:
                self._render(child, step, x, y + offset * height, width, height * fraction, out)
            offset += fraction

    def _walk(
        self, node_id: str, path: tuple[str, ...]
    ) -> Iterator[tuple[str, tuple[str, ...]]]:
        node = self._nodes[node_id]
        if isinstance(node, Pane):
            yield node.id, path
            return
        for child in node.children:
            yield from self._walk(child, path + (node.id,))

    def validate(self) -> None:
        """Check the structural invariants.

        Raises:
            LayoutError: describing the first violation found.
        """
        if self._root not in self._nodes:
            raise LayoutError(f"Root {self._root!r} is not in the layout")
        if self._root in self._parents:
            raise LayoutError(f"Root {self._root!r} has a parent")

        seen: set[str] = set()
        stack = [self._root]
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                raise LayoutError(f"Node {node_id!r} is reachable twice")
            seen.add(node_id)
            node = self._nodes.get(node_id)
            if node is None:
                raise LayoutError(f"Missing node {node_id!r}")
            if isinstance(node, Split):
                if len(node.children) < 2:
                    raise LayoutError(f"Split {node_id} has fewer than 2 children")
                if len(node.sizes) != len(node.children):
                    raise LayoutError(f"Split {node_id} sizes do not match its children")
                if any(not math.isfinite(s) or s <= 0 for s in node.sizes):
                    raise LayoutError(
                        f"Split {node_id} sizes must be positive numbers: {list(node.sizes)}"
                    )
                if not math.isclose(sum(node.sizes), TOTAL_SIZE, rel_tol=1e-9):
                    raise LayoutError(
                        f"Split {node_id} sizes sum to {sum(node.sizes)}, not {TOTAL_SIZE}"
                    )
                stack.extend(node.children)

        stray = set(self._nodes) - seen
        if stray:
            raise LayoutError(f"Unreachable nodes: {sorted(stray)}")

    # -- serialization -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Nested JSON-friendly form, the shape the client renders from."""
        return self._node_dict(self._root)

    def _node_dict(self, node_id: str) -> dict[str, Any]:
        node = self._nodes[node_id]
        if isinstance(node, Pane):
            return {"id": node.id, "type": "terminal"}
        return {
            "id": node.id,
            "direction": node.direction.value,
            "children": [self._node_dict(c) for c in node.children],
            "sizes": list(node.sizes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], next_id: int | None = None) -> LayoutTree:
        """Rebuild a tree from to_dict() output.

        ``next_id`` defaults to, and is never set below, one past the
        highest numeric id suffix in the tree.

        Raises:
            LayoutError: The structure is malformed or breaks an invariant.
        """
        nodes: dict[str, Node] = {}

        def build(item: Any) -> str:
            if not isinstance(item, Mapping) or not isinstance(item.get("id"), str):
                raise LayoutError(f"Invalid layout node: {item!r}")
            node_id = item["id"]
            if node_id in nodes:
                raise LayoutError(f"Duplicate node id {node_id!r}")
            if "children" not in item:
                nodes[node_id] = Pane(node_id)
                return node_id
            if not isinstance(item["children"], (list, tuple)):
                raise LayoutError(f"Split {node_id!r} children must be a list")
            try:
                direction = Direction(item.get("direction"))
                sizes = tuple(float(s) for s in item.get("sizes", ()))
            except (TypeError, ValueError) as e:
                raise LayoutError(f"Invalid split {node_id!r}: {e}") from e
            # Reserve the id before descending so a cycle-like repeat is caught
            nodes[node_id] = Pane(node_id)
            children = tuple(build(child) for child in item["children"])
            nodes[node_id] = Split(node_id, direction, children, sizes)
            return node_id

        root = build(data)
        suffixes = [int(m.group(1)) for m in map(_ID_PATTERN.match, nodes) if m]
        lowest = max(suffixes, default=0) + 1
        # A lower counter would hand out ids already in the tree
        if next_id is None or next_id < lowest:
            next_id = lowest

        tree = cls(nodes, root, next_id)
        tree.validate()
        return tree

    # -- comparison ----------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LayoutTree):
            return NotImplemented
        return self._same(self._root, other, other._root)

    def _same(self, node_id: str, other: LayoutTree, other_id: str) -> bool:
        mine = self._nodes[node_id]
        theirs = other._nodes[other_id]
        if isinstance(mine, Pane) or isinstance(theirs, Pane):
            return mine == theirs
        if (
            mine.id != theirs.id
            or mine.direction is not theirs.direction
            or len(mine.children) != len(theirs.children)
        ):
            return False
        if not all(
            math.isclose(a, b, rel_tol=1e-9) for a, b in zip(mine.sizes, theirs.sizes)
        ):
            return False
        return all(
            self._same(a, other, b) for a, b in zip(mine.children, theirs.children)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"LayoutTree(root={self._root!r}, panes={self.panes()!r})"


def diff_panes(old: LayoutTree, new: LayoutTree) -> tuple[list[str], list[str]]:
    """Pane ids added and removed going from ``old`` to ``new``.

    The client creates a terminal session for each added pane and closes
    the session of each removed one.
    """
    before = old.panes()
    after = new.panes()
    before_set = set(before)
    after_set = set(after)
    added = [p for p in after if p not in before_set]
    removed = [p for p in before if p not in after_set]
    return added, removed
