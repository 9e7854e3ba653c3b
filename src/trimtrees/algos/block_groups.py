# src/trimtrees/algos/block_groups.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from trimtrees.algos.edge_vector import distance
from trimtrees.algos.ledger import UNASSIGNED, Ledger, blend_centroid

logger = logging.getLogger(__name__)


@dataclass
class BlockGroup:
    population: int = 0
    centroid: np.ndarray = field(default_factory=lambda: np.zeros(2))
    area: float = 0.0
    blocks: Dict[int, None] = field(default_factory=dict)
    # district id (0 = unassigned) -> blocks of that district touching the group
    neighbor_district_blocks: Dict[int, Dict[int, None]] = field(default_factory=dict)
    stranded: bool = False

    @property
    def connected(self) -> bool:
        """True when the group touches unassigned territory outside itself."""
        return UNASSIGNED in self.neighbor_district_blocks

    def add(self, ledger: Ledger, block: int) -> None:
        self.blocks[block] = None
        self.population += int(ledger.population[block])
        self.centroid, self.area = blend_centroid(
            self.centroid, self.area, ledger.coords[block], ledger.area[block]
        )

    def touch(self, district_id: int, block: int) -> None:
        self.neighbor_district_blocks.setdefault(district_id, {})[block] = None


def _flood(ledger: Ledger, start: int, district_id: int, branch_root: Optional[int]) -> BlockGroup:
    """Depth-first flood fill in adjacency order."""
    labels = ledger.block_district
    block_ws = ledger.block_ws
    ws_label = ledger.tree.branch_root

    group = BlockGroup()
    stack = [iter((start,))]
    while stack:
        block = next(stack[-1], None)
        if block is None:
            stack.pop()
            continue
        member = labels[block] == district_id and (
            branch_root is None or ws_label[block_ws[block]] == branch_root
        )
        if not member:
            group.touch(int(labels[block]), block)
        elif block not in group.blocks:
            group.add(ledger, block)
            stack.append(iter(ledger.adj[block]))
    return group


def build_groups(ledger: Ledger, branch_root: int, district_id: int = UNASSIGNED) -> List[BlockGroup]:
    """Connected groups of `district_id` blocks inside the branch labelled branch_root."""
    tree = ledger.tree

    def in_branch(ws: int) -> bool:
        return not tree.closed[ws] and tree.branch_root[ws] == branch_root

    groups: List[BlockGroup] = []
    grouped: set[int] = set()
    for ws in tree.preorder(branch_root, in_branch):
        for block in tree.blocks[ws]:
            if block in grouped or ledger.block_district[block] != district_id:
                continue
            group = _flood(ledger, block, district_id, branch_root)
            grouped.update(group.blocks)
            groups.append(group)
    return groups


def district_components(ledger: Ledger, district_id: int) -> List[BlockGroup]:
    groups: List[BlockGroup] = []
    grouped: set[int] = set()
    for block in list(ledger.districts[district_id].blocks):
        if block in grouped or ledger.block_district[block] != district_id:
            continue
        group = _flood(ledger, block, district_id, None)
        grouped.update(group.blocks)
        groups.append(group)
    return groups


def largest_group(groups: List[BlockGroup]) -> Optional[BlockGroup]:
    best = None
    for group in groups:
        if best is None or group.population > best.population:
            best = group
    return best


def classify_groups(groups: List[BlockGroup]) -> int:
    """
    Mark groups that cannot reach unassigned territory as stranded.
    With no connected group at all, the largest is kept open.
    Returns the stranded count.
    """
    stranded = 0
    connected = 0
    for group in groups:
        group.stranded = not group.connected
        if group.stranded:
            stranded += 1
        else:
            connected += 1

    if groups and connected == 0:
        largest_group(groups).stranded = False
        stranded -= 1
    return stranded


def next_snap_district(groups: List[BlockGroup], current: Optional[int]) -> Optional[int]:
    """Lowest district id above `current` that borders a stranded group."""
    best = None
    for group in groups:
        if not group.stranded:
            continue
        for district_id in group.neighbor_district_blocks:
            if current is not None and district_id <= current:
                continue
            if best is None or district_id < best:
                best = district_id
    return best


def _preferred_district(
    ledger: Ledger,
    group: BlockGroup,
    source_ws: int,
    snap_id: int,
    border_by_ws: Dict[int, Dict[int, None]],
) -> Optional[int]:
    # follow the drainage downstream until it runs into territory of another group
    tree = ledger.tree
    border: Dict[int, None] = {}
    current = source_ws
    while tree.parent[current] >= 0:
        border.update(border_by_ws.get(current, {}))
        parent = tree.parent[current]
        owned = tree.blocks[parent]
        if owned and not any(b in group.blocks for b in owned):
            break
        current = parent

    if not border:
        for district_id, blocks in group.neighbor_district_blocks.items():
            if district_id >= snap_id:
                border.update(blocks)
    if not border:
        return None

    exit_xy = tree.xy[current]
    nearest = min(border, key=lambda b: distance(exit_xy, ledger.coords[b]))
    return int(ledger.block_district[nearest])


def snap_stranded(ledger: Ledger, groups: List[BlockGroup], snap_id: int) -> int:
    """
    Move stranded blocks whose preferred district is snap_id into it.
    Only blocks touching the district move; each move unlocks its neighbours.
    Returns the number of blocks moved.
    """
    district = ledger.districts[snap_id]
    labels = ledger.block_district
    preferences: Dict[int, int] = {}
    added = 0

    for group in groups:
        if not group.stranded or snap_id not in group.neighbor_district_blocks:
            continue

        # border blocks of later districts, bucketed by their watershed
        border_by_ws: Dict[int, Dict[int, None]] = {}
        for district_id, blocks in group.neighbor_district_blocks.items():
            if district_id < snap_id:
                continue
            for b in blocks:
                border_by_ws.setdefault(int(ledger.block_ws[b]), {})[b] = None

        targets: Dict[int, Optional[int]] = {}
        for block in group.blocks:
            ws = int(ledger.block_ws[block])
            if ws not in targets:
                targets[ws] = _preferred_district(ledger, group, ws, snap_id, border_by_ws)
            if targets[ws] != snap_id:
                continue
            preferences[block] = 0
            if any(labels[n] == snap_id for n in ledger.adj[block]):
                preferences[block] = 1

        while True:
            ready = [b for b, flag in preferences.items() if flag == 1]
            if not ready:
                break
            for block in ready:
                ledger.assign(block, snap_id)
                added += 1
                del preferences[block]
                for n in ledger.adj[block]:
                    if n in preferences:
                        preferences[n] = 1
                    if len(group.neighbor_district_blocks) > 1:
                        district.edge_blocks.pop(n, None)

    if added:
        logger.debug("snapped %d stranded blocks into district %d", added, snap_id)
    return added


def evict_fragments(ledger: Ledger, district_id: int) -> List[int]:
    """Unassign every component of the district except the most populous one."""
    components = district_components(ledger, district_id)
    if len(components) <= 1:
        return []
    keep = largest_group(components)
    evicted: List[int] = []
    for component in components:
        if component is keep:
            continue
        for block in component.blocks:
            ledger.unassign(block)
            evicted.append(block)
    logger.debug("district %d: evicted %d fragment blocks", district_id, len(evicted))
    return evicted


def is_contiguous(ledger: Ledger, district_id: int) -> bool:
    return len(district_components(ledger, district_id)) <= 1
