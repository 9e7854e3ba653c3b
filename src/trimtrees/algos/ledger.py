# src/trimtrees/algos/ledger.py
#
# Population bookkeeping for the watershed tree.
#
# Every watershed keeps a "branch population": the unassigned population in
# its subtree, ignoring subtrees already closed. Assigning a block to a
# district walks up the tree subtracting its population; unassigning walks up
# adding it back and reopens closed ancestors.
#
# Conservation: sum(district populations) + branch_population[root] == total.
#
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional

import numpy as np

from trimtrees.algos.edge_vector import EdgeVector
from trimtrees.data.region_pack import RegionPack

logger = logging.getLogger(__name__)

UNASSIGNED = 0


def blend_centroid(centroid: np.ndarray, area: float, point: np.ndarray, point_area: float, sign: int = 1):
    """Add (sign=1) or remove (sign=-1) an area-weighted point. Returns (centroid, area)."""
    total = area + sign * point_area
    if total > 0:
        centroid = (centroid * area + sign * point * point_area) / total
    elif sign < 0:
        centroid = np.zeros(2)
        total = 0.0
    return centroid, total


class WatershedTree:
    """Arena view of the watershed tree plus the mutable per-node state."""

    def __init__(self, pack: RegionPack):
        self.ids = pack.ws_ids
        self.parent = pack.ws_parent
        self.children = pack.ws_children
        self.boundary = pack.ws_boundary
        self.xy = pack.ws_coords
        self.blocks = pack.ws_blocks
        self.population = pack.ws_population

        m = len(self.ids)
        self.open_blocks = np.array([len(b) for b in self.blocks], dtype=np.int64)
        self.closed = np.zeros(m, dtype=bool)
        self.branch_population = np.zeros(m, dtype=np.int64)
        self.branch_root = np.full(m, -1, dtype=int)

        roots = np.flatnonzero(self.parent < 0)
        if len(roots) == 0:
            raise ValueError("watershed tree has no root")
        self.root = int(roots[0])
        if len(roots) > 1:
            logger.warning(
                "%d watershed roots found; carving only the tree under ws %s",
                len(roots), self.ids[self.root],
            )

    def __len__(self) -> int:
        return len(self.ids)

    def preorder(self, start: int, include: Callable[[int], bool]) -> List[int]:
        """Pre-order walk from start, pruning any node for which include() is false."""
        if not include(start):
            return []
        order = []
        stack = [start]
        while stack:
            ws = stack.pop()
            order.append(ws)
            for child in reversed(self.children[ws]):
                if include(child):
                    stack.append(child)
        return order

    def is_open(self, ws: int) -> bool:
        return not self.closed[ws]

    def ancestors(self, ws: int) -> Iterator[int]:
        ws = self.parent[ws]
        while ws >= 0:
            yield int(ws)
            ws = self.parent[ws]

    def populate_branches(self, start: Optional[int] = None) -> int:
        """Recompute branch populations of every open node under start (post-order)."""
        start = self.root if start is None else start
        if self.closed[start]:
            return 0
        for ws in reversed(self.preorder(start, self.is_open)):
            total = self.population[ws]
            for child in self.children[ws]:
                if not self.closed[child]:
                    total += self.branch_population[child]
            self.branch_population[ws] = total
        return int(self.branch_population[start])

    def populate_down(self, start: int, stop: Optional[int], delta: int) -> None:
        """Add delta to start and each ancestor up to stop (inclusive), or to the root."""
        ws = start
        while ws >= 0:
            self.branch_population[ws] += delta
            if ws == stop:
                break
            ws = self.parent[ws]

    def close_watersheds(self, start: int) -> bool:
        """A node is closed once it has no open blocks and every child is closed."""
        if self.closed[start]:
            return True
        for ws in reversed(self.preorder(start, self.is_open)):
            if self.open_blocks[ws] != 0:
                continue
            self.closed[ws] = all(self.closed[c] for c in self.children[ws])
        return bool(self.closed[start])

    def set_branch_root(self, start: int, label: int) -> None:
        for ws in self.preorder(start, self.is_open):
            self.branch_root[ws] = label

    def reopen(self, ws: int) -> None:
        while ws >= 0 and self.closed[ws]:
            self.closed[ws] = False
            ws = self.parent[ws]


@dataclass
class District:
    district_id: int
    branch_root: int
    population: int = 0
    centroid: np.ndarray = field(default_factory=lambda: np.zeros(2))
    area: float = 0.0
    blocks: Dict[int, None] = field(default_factory=dict)
    edge_blocks: Dict[int, float] = field(default_factory=dict)
    vector: Optional[EdgeVector] = None

    @property
    def block_count(self) -> int:
        return len(self.blocks)


class Ledger:
    """
    Owns every piece of mutable carving state for one region:
    block -> district labels, the watershed tree, and the districts.
    """

    def __init__(self, pack: RegionPack, check_invariants: bool = True):
        self.pack = pack
        self.tree = WatershedTree(pack)
        self.population = pack.population
        self.coords = pack.coords
        self.area = pack.area
        self.boundary = pack.boundary
        self.block_ws = pack.block_ws
        self.adj = pack.adj
        self.check_invariants = check_invariants

        self.block_district = np.zeros(pack.num_blocks, dtype=int)
        self.districts: Dict[int, District] = {}

        self.total_population = self.tree.populate_branches()
        outside = pack.total_population - self.total_population
        if outside:
            logger.warning("%s: population %d lies outside the carved tree", pack.name, outside)

    @property
    def remaining_population(self) -> int:
        return int(self.tree.branch_population[self.tree.root])

    def new_district(self, branch_root: int) -> District:
        district = District(district_id=len(self.districts) + 1, branch_root=branch_root)
        self.districts[district.district_id] = district
        return district

    def assign(self, block: int, district_id: int, stop: Optional[int] = None) -> bool:
        current = self.block_district[block]
        if current == district_id:
            return False
        assert current == UNASSIGNED, f"block {block} already belongs to district {current}"

        district = self.districts[district_id]
        pop = int(self.population[block])
        self.block_district[block] = district_id
        district.blocks[block] = None
        district.population += pop
        district.centroid, district.area = blend_centroid(
            district.centroid, district.area, self.coords[block], self.area[block]
        )

        ws = self.block_ws[block]
        self.tree.open_blocks[ws] -= 1
        self.tree.populate_down(ws, stop, -pop)
        return True

    def unassign(self, block: int) -> bool:
        district_id = self.block_district[block]
        if district_id == UNASSIGNED:
            return False

        district = self.districts[district_id]
        pop = int(self.population[block])
        self.block_district[block] = UNASSIGNED
        district.blocks.pop(block, None)
        district.edge_blocks.pop(block, None)
        district.population -= pop
        district.centroid, district.area = blend_centroid(
            district.centroid, district.area, self.coords[block], self.area[block], sign=-1
        )

        ws = self.block_ws[block]
        self.tree.open_blocks[ws] += 1
        self.tree.populate_down(ws, None, pop)
        self.tree.reopen(ws)
        return True

    def assign_batch(self, blocks: Iterable[int], district_id: int, branch_root: int) -> int:
        """Assign blocks that all lie under branch_root; one walk for the ancestors below it."""
        moved = 0
        for block in blocks:
            if self.assign(block, district_id, stop=branch_root):
                moved += int(self.population[block])
        parent = self.tree.parent[branch_root]
        if moved and parent >= 0:
            self.tree.populate_down(parent, None, -moved)
        return moved

    def labels(self) -> np.ndarray:
        return self.block_district.copy()

    def check_conservation(self) -> None:
        if not self.check_invariants:
            return
        assigned = sum(d.population for d in self.districts.values())
        assert assigned + self.remaining_population == self.total_population, (
            f"population not conserved: districts={assigned} "
            f"remaining={self.remaining_population} total={self.total_population}"
        )
