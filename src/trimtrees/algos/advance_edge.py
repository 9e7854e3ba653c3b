# src/trimtrees/algos/advance_edge.py
#
# Grow one district out of an unassigned block group by advancing an edge.
#
# The edge starts at the block farthest from the drainage target and sweeps
# toward it, taking the lowest-scoring prospect each step. When every
# prospect lies ahead of the edge the vector is re-derived:
#   - centered pass: re-center the ruler on the middle prospect and aim it at
#     the next watershed downstream,
#   - boundary pass: follow the outer boundary from a source watershed to a
#     target watershed.
# A pivot is introduced when a prospect falls behind the edge's leading
# block, turning the sweep into a rotation about that block.
#
# Branches touching the outer boundary produce two candidates; the one with
# the shorter edge wins.
#
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

import numpy as np

from trimtrees.algos.block_groups import BlockGroup, evict_fragments
from trimtrees.algos.edge_vector import (
    EdgeVector,
    angle_distance,
    distance,
    edge_length,
    edge_score,
    perpendicular_distance,
    perpendicular_distances,
)
from trimtrees.algos.ledger import District, Ledger, WatershedTree

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    vector: EdgeVector
    target_ws: int
    blocks: Dict[int, None] = field(default_factory=dict)
    edge_blocks: Dict[int, float] = field(default_factory=dict)
    edge_length: Optional[float] = None
    last_block: Optional[int] = None


def farthest_boundary_ws(tree: WatershedTree, start: int, group_ws: Dict[int, float]) -> Optional[int]:
    """Open boundary watershed under start holding group blocks, farthest from the reference."""

    def on_boundary(ws: int) -> bool:
        return not tree.closed[ws] and bool(tree.boundary[ws])

    best: Dict[int, Optional[int]] = {}
    for ws in reversed(tree.preorder(start, on_boundary)):
        far = ws if ws in group_ws else None
        for child in tree.children[ws]:
            c_far = best.get(child)
            if far is None or (c_far is not None and group_ws[c_far] > group_ws[far]):
                far = c_far
        best[ws] = far
    return best.get(start)


def _edge_len(candidate: Candidate) -> float:
    # a candidate that swallowed its whole group has no edge
    return 0.0 if candidate.edge_length is None else candidate.edge_length


def pick_candidate(backup: Optional[Candidate], latest: Candidate) -> Candidate:
    """The held-back candidate wins only with a strictly shorter edge."""
    if backup is not None and _edge_len(backup) < _edge_len(latest):
        return backup
    return latest


class DistrictBuilder:
    def __init__(
        self,
        ledger: Ledger,
        branch_root: int,
        group: BlockGroup,
        district_size: int,
        last: bool = False,
        max_stalled_advances: int = 8,
    ):
        self.ledger = ledger
        self.tree = ledger.tree
        self.branch_root = branch_root
        self.group = group
        self.size = int(district_size)
        self.last = last
        self.target_population = group.population if last else self.size
        self.max_stalled_advances = max_stalled_advances

        self.coords = ledger.coords
        self.population = ledger.population

        self.boundary_target: Optional[int] = None
        self.boundary_source: Optional[int] = None

        # state of the pass in progress
        self.current: Optional[Candidate] = None
        self.backup: Optional[Candidate] = None
        self.chosen: Optional[Candidate] = None
        self.prospects: Dict[int, float] = {}
        self.assigned = 0
        self.boundary_process = False
        self.source_ws: Optional[int] = None

    # ----------------------------
    # Tree helpers
    # ----------------------------
    def next_target_population(self, ws: int) -> int:
        t = self.target_population
        excess = int(self.tree.branch_population[ws]) - t + 1
        return -(-excess // self.size) * self.size + t

    def downstream(self, ws: int, population: int, boundary_only: bool = False) -> int:
        """Walk toward the root until the branch holds `population` (or the path leaves the boundary)."""
        tree = self.tree
        while tree.parent[ws] >= 0 and tree.branch_population[ws] < population:
            parent = tree.parent[ws]
            if boundary_only and not tree.boundary[parent]:
                break
            ws = parent
        return int(ws)

    # ----------------------------
    # Passes
    # ----------------------------
    def _start_centered(self, target_ws: int) -> None:
        tx, ty = self.tree.xy[target_ws]
        blocks = list(self.group.blocks)
        pts = self.coords[blocks]
        seed = blocks[int(np.argmax(np.hypot(pts[:, 0] - tx, pts[:, 1] - ty)))]
        v = EdgeVector.toward(self.coords[seed], self.tree.xy[target_ws])
        self.current = Candidate(vector=v, target_ws=target_ws)
        self.prospects = {seed: 0.0}
        self.assigned = 0
        self.boundary_process = False
        self.source_ws = None

    def _start_boundary(self) -> None:
        source, target = self.boundary_source, self.boundary_target
        v = EdgeVector.toward(self.tree.xy[source], self.tree.xy[target])
        blocks = list(self.group.blocks)
        seed = blocks[int(np.argmin(perpendicular_distances(self.coords[blocks], v)))]
        self.current = Candidate(vector=v, target_ws=target)
        self.prospects = {seed: 0.0}
        self.assigned = 0
        self.boundary_process = True
        self.source_ws = source

    def _rescore(self) -> None:
        v = self.current.vector
        for b in self.prospects:
            self.prospects[b] = edge_score(self.coords[b], v)

    def _take(self, block: int) -> None:
        cand = self.current
        cand.blocks[block] = None
        cand.last_block = block
        self.assigned += int(self.population[block])
        del self.prospects[block]

        v = cand.vector
        for n in self.ledger.adj[block]:
            if n in cand.blocks or n in self.prospects or n not in self.group.blocks:
                continue
            self.prospects[n] = edge_score(self.coords[n], v)

        if self.boundary_process or not self.ledger.boundary[block]:
            return
        # a boundary block whose boundary path drains to the branch root switches modes
        tree = self.tree
        ws = int(self.ledger.block_ws[block])
        cur = ws
        while cur >= 0 and cur != self.branch_root and tree.boundary[cur]:
            cur = tree.parent[cur]
        if cur == self.branch_root and self.boundary_target is not None:
            self.boundary_process = True
            self.source_ws = ws
            cand.target_ws = self.boundary_target

    def _close(self) -> None:
        cand = self.current
        v = cand.vector
        edge: Dict[int, float] = {}
        for b in self.prospects:
            for n in self.ledger.adj[b]:
                if n in cand.blocks and n not in edge:
                    edge[n] = edge_score(self.coords[n], v)
        cand.edge_blocks = edge
        cand.edge_length = edge_length(v, edge, self.coords)
        self.prospects = {}

    def _centered_vector(self, nextv: EdgeVector, next_target: int) -> EdgeVector:
        cand = self.current
        if perpendicular_distance(self.tree.xy[cand.target_ws], nextv) <= 0:
            cand.target_ws = next_target
        ruler = cand.vector.perpendicular()
        for b in self.prospects:
            self.prospects[b] = perpendicular_distance(self.coords[b], ruler)
        lo = min(self.prospects.values())
        hi = max(self.prospects.values())
        mid = (lo + hi) / 2
        centered = min(self.prospects, key=lambda b: abs(self.prospects[b] - mid))
        return EdgeVector.toward(self.coords[centered], self.tree.xy[cand.target_ws])

    def _boundary_vector(self, nextv: EdgeVector, next_target: int) -> EdgeVector:
        tree = self.tree
        cand = self.current
        if perpendicular_distance(tree.xy[cand.target_ws], nextv) <= 0 or self.source_ws == cand.target_ws:
            self.source_ws = cand.target_ws
            cand.target_ws = next_target

        if cand.target_ws == self.boundary_target:
            cur = self.source_ws
            while cur >= 0 and cur != cand.target_ws:
                if perpendicular_distance(tree.xy[cur], nextv) <= 0:
                    self.source_ws = cur
                cur = tree.parent[cur]

        if self.source_ws == cand.target_ws:
            # nothing left to follow; slide the origin to the farthest group block
            v = cand.vector
            blocks = list(self.group.blocks)
            far = blocks[int(np.argmax(perpendicular_distances(self.coords[blocks], v)))]
            return v.moved_to(self.coords[far])

        target_xy = tree.xy[cand.target_ws]
        source_xy = tree.xy[self.source_ws]
        v = EdgeVector(
            x=float(target_xy[0]),
            y=float(target_xy[1]),
            dx=float(target_xy[0] - source_xy[0]),
            dy=float(target_xy[1] - source_xy[1]),
        )
        for b in self.prospects:
            self.prospects[b] = perpendicular_distance(self.coords[b], v)
        lowest = min(self.prospects.values())

        ahead: Dict[int, float] = {}
        stop = tree.parent[cand.target_ws]
        cur = tree.parent[self.source_ws]
        while cur >= 0 and cur != stop:
            d = perpendicular_distance(tree.xy[cur], v)
            if d > lowest:
                ahead[int(cur)] = d
            cur = tree.parent[cur]
        if ahead:
            nearest = min(ahead, key=ahead.get)
            v = v.moved_to(tree.xy[nearest])
        return v

    def _edge_pivot(self, lastv: EdgeVector) -> None:
        cand = self.current
        v = cand.vector
        edge: Dict[int, float] = {}
        for b in self.prospects:
            for n in self.ledger.adj[b]:
                if n in cand.blocks and n not in edge:
                    edge[n] = perpendicular_distance(self.coords[n], v)
        cand.edge_blocks = edge
        if not edge:
            return

        lead = max(edge, key=edge.get)
        for b in self.prospects:
            if perpendicular_distance(self.coords[b], v) <= edge[lead]:
                pivot = v.moved_to(self.coords[lead])
                turn = angle_distance(lastv, pivot)
                cand.vector = replace(pivot, sign=-1 if turn < 0 else 1)
                break

    def _rederive(self) -> None:
        cand = self.current
        v = cand.vector
        if v.pivoted:
            cand.vector = v.without_pivot()
        else:
            nb = min(self.prospects, key=self.prospects.get)
            nextv = v.moved_to(self.coords[nb])
            next_target = self.downstream(cand.target_ws, self.next_target_population(cand.target_ws))
            if self.boundary_process:
                cand.vector = self._boundary_vector(nextv, next_target)
            else:
                cand.vector = self._centered_vector(nextv, next_target)
            self._edge_pivot(v)
        self._rescore()

    def _advance(self) -> Optional[Candidate]:
        """Run the current pass; returns the closed candidate held as backup, if any."""
        backup = None
        stalls = 0
        while self.prospects:
            nxt = min(self.prospects, key=self.prospects.get)
            stalled = stalls >= self.max_stalled_advances
            if self.prospects[nxt] > 0.0 and not stalled:
                stalls += 1
                self._rederive()
                continue

            if stalled:
                logger.warning(
                    "edge advance stalled after %d re-derivations; taking block %s",
                    stalls, self.ledger.pack.block_ids[nxt],
                )
            stalls = 0

            cand = self.current
            target = self.target_population
            if cand.blocks and abs(self.assigned - target) < abs(self.assigned + int(self.population[nxt]) - target):
                self._close()
                if backup is None and self.boundary_source is not None and self.boundary_target is not None:
                    backup = cand
                    self._start_boundary()
            else:
                self._take(nxt)
        return backup

    # ----------------------------
    # Build
    # ----------------------------
    def build(self) -> District:
        tree = self.tree
        wsid = self.branch_root
        reach = self.target_population + self.size

        centered_target = wsid
        if not tree.boundary[wsid]:
            centered_target = self.downstream(wsid, reach)
        else:
            self.boundary_target = self.downstream(wsid, reach, boundary_only=True)

        reference = self.boundary_target if self.boundary_target is not None else centered_target
        group_ws: Dict[int, float] = {}
        for b in self.group.blocks:
            ws = int(self.ledger.block_ws[b])
            if ws not in group_ws:
                group_ws[ws] = distance(tree.xy[reference], tree.xy[ws])
        self.boundary_source = farthest_boundary_ws(tree, wsid, group_ws)

        if self.boundary_source is not None and self.boundary_source == self.boundary_target:
            self.boundary_target = self.downstream(
                self.boundary_target,
                self.next_target_population(self.boundary_target),
                boundary_only=True,
            )
        if self.boundary_source == self.boundary_target:
            self.boundary_source = None
            self.boundary_target = None

        self._start_centered(centered_target)
        self.backup = self._advance()
        self.chosen = pick_candidate(self.backup, self.current)
        return self._commit(self.chosen)

    def _commit(self, cand: Candidate) -> District:
        tree = self.tree
        ledger = self.ledger
        wsid = self.branch_root
        v = cand.vector

        edge_target = wsid
        if cand.last_block is not None:
            if edge_score(self.coords[cand.last_block], v) > edge_score(tree.xy[wsid], v):
                edge_target = cand.target_ws

        if v.pivoted and cand.edge_blocks:
            far = max(cand.edge_blocks, key=lambda b: distance(self.coords[b], v.origin))
            v = replace(v.moved_to(self.coords[far]), sign=-v.sign)

        district = ledger.new_district(wsid)
        district.vector = v
        if cand.edge_blocks:
            target_xy = tree.xy[edge_target]
            seed = min(cand.edge_blocks, key=lambda b: distance(target_xy, self.coords[b]))
            district.edge_blocks = {seed: edge_score(self.coords[seed], v)}

        ledger.assign_batch(list(cand.blocks), district.district_id, wsid)
        for block in evict_fragments(ledger, district.district_id):
            district.edge_blocks.pop(block, None)
        ledger.check_conservation()
        return district


def build_district(
    ledger: Ledger,
    branch_root: int,
    group: BlockGroup,
    district_size: int,
    last: bool = False,
    max_stalled_advances: int = 8,
) -> District:
    builder = DistrictBuilder(
        ledger, branch_root, group, district_size,
        last=last, max_stalled_advances=max_stalled_advances,
    )
    return builder.build()
