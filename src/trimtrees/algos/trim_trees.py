# src/trimtrees/algos/trim_trees.py
#
# Watershed-tree district carving.
#
# Each pass walks the watershed tree from the root and picks "branch roots":
# the smallest subtrees still holding at least one district's worth of
# unassigned population. For each branch root:
#   1) unassigned pockets cut off by earlier districts (stranded groups) are
#      snapped into a neighbouring district, which is then trimmed back to
#      quota along its edge,
#   2) a new district is grown from the largest remaining group
#      (see advance_edge.py),
#   3) fully assigned watersheds are closed.
# Passes repeat until the root has no population left.
#
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd

from trimtrees.algos.advance_edge import build_district
from trimtrees.algos.block_groups import (
    BlockGroup,
    build_groups,
    classify_groups,
    evict_fragments,
    largest_group,
    next_snap_district,
    snap_stranded,
)
from trimtrees.algos.edge_vector import EdgeVector, edge_score, perpendicular_distance, perpendicular_distances
from trimtrees.algos.ledger import UNASSIGNED, District, Ledger
from trimtrees.data.region_pack import RegionPack

logger = logging.getLogger(__name__)


# ----------------------------
# Config
# ----------------------------
@dataclass
class TrimTreesParams:
    district_size: int = 0  # 0 -> use the region pack's quota
    last_district_slack: float = 1.5
    check_invariants: bool = True
    max_snap_sweeps: int = 50
    max_stalled_advances: int = 8
    max_passes: int = 0  # 0 -> one pass per block at most


def _params_from_cfg(cfg: Dict[str, Any]) -> TrimTreesParams:
    p = TrimTreesParams()
    run_cfg = cfg.get("run", {}) or {}
    algo_cfg = (cfg.get("algo", {}) or {}).get("trim_trees", {}) or {}

    p.district_size = int(algo_cfg.get("district_size", run_cfg.get("district_size", p.district_size)) or 0)
    p.last_district_slack = float(algo_cfg.get("last_district_slack", p.last_district_slack))
    p.check_invariants = bool(algo_cfg.get("check_invariants", run_cfg.get("check_invariants", p.check_invariants)))
    p.max_snap_sweeps = int(algo_cfg.get("max_snap_sweeps", p.max_snap_sweeps))
    p.max_stalled_advances = int(algo_cfg.get("max_stalled_advances", p.max_stalled_advances))
    p.max_passes = int(algo_cfg.get("max_passes", run_cfg.get("max_passes", p.max_passes)))

    if p.last_district_slack < 1.0:
        raise ValueError(f"last_district_slack must be >= 1.0, got {p.last_district_slack}")
    return p


# ----------------------------
# Results
# ----------------------------
@dataclass
class DistrictEvent:
    district_id: int
    branch_root: Any  # watershed id
    population: int
    remaining: int


@dataclass
class CarveResult:
    pack: RegionPack
    district_size: int
    labels: np.ndarray  # (N,) district id per block, 0 = unassigned
    districts: Dict[int, District]
    events: List[DistrictEvent] = field(default_factory=list)

    @property
    def unassigned_population(self) -> int:
        return int(self.pack.population[self.labels == UNASSIGNED].sum())

    def block_to_district(self) -> Dict[Any, int]:
        ids = self.pack.block_ids
        return {ids[i]: int(d) for i, d in enumerate(self.labels) if d != UNASSIGNED}

    def district_summaries(self) -> pd.DataFrame:
        rows = []
        for did, d in sorted(self.districts.items()):
            rows.append({
                "district_id": did,
                "population": int(d.population),
                "deviation": int(d.population) - self.district_size,
                "blocks": d.block_count,
                "area": float(d.area),
                "centroid_x": float(d.centroid[0]),
                "centroid_y": float(d.centroid[1]),
                "branch_root": self.pack.ws_ids[d.branch_root],
            })
        return pd.DataFrame(rows, columns=[
            "district_id", "population", "deviation", "blocks", "area",
            "centroid_x", "centroid_y", "branch_root",
        ])

    def events_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [e.__dict__ for e in self.events],
            columns=["district_id", "branch_root", "population", "remaining"],
        )


# ----------------------------
# Carving
# ----------------------------
class TrimTrees:
    def __init__(
        self,
        pack: RegionPack,
        params: Optional[TrimTreesParams] = None,
        on_district: Optional[Callable[[DistrictEvent, Ledger], None]] = None,
    ):
        self.pack = pack
        self.params = params or TrimTreesParams()
        self.size = int(self.params.district_size or pack.district_size)
        if self.size <= 0:
            raise ValueError(f"district size must be positive, got {self.size}")
        self.ledger = Ledger(pack, check_invariants=self.params.check_invariants)
        self.tree = self.ledger.tree
        self.events: List[DistrictEvent] = []
        self.on_district = on_district

    # ---- branch selection ----
    def is_last_district(self, ws: int) -> bool:
        tree = self.tree
        return tree.parent[ws] < 0 and tree.branch_population[ws] < self.params.last_district_slack * self.size

    def _qualifies(self, ws: int, last: bool) -> bool:
        tree = self.tree
        return (tree.branch_population[ws] >= self.size or last) and not tree.closed[ws]

    def select_branches(self, start: int) -> Iterator[Tuple[int, bool]]:
        """
        Yield (branch_root, last) post-order. A node is a branch root when every
        child it inspected was below quota; children are re-read after each
        descent since carving inside them changes their population.
        """
        tree = self.tree
        last = self.is_last_district(start)
        if not self._qualifies(start, last):
            return

        # frame: [ws, child iterator, last, all children under quota]
        stack = [[start, iter(tree.children[start]), last, True]]
        while stack:
            frame = stack[-1]
            ws, children, last = frame[0], frame[1], frame[2]
            child = next(children, None)
            if child is not None:
                if not last and not tree.closed[child] and tree.branch_population[child] >= self.size:
                    frame[3] = False
                    stack.append([child, iter(tree.children[child]), False, True])
                continue

            stack.pop()
            if frame[3] and self._qualifies(ws, last):
                yield ws, last

    def trim_trees(self, start: Optional[int] = None) -> int:
        """One carving pass from start (default the root). Returns districts created."""
        created = 0
        start = self.tree.root if start is None else start
        for branch_root, last in self.select_branches(start):
            if self.carve_branch(branch_root, last) is not None:
                created += 1
        return created

    # ---- one branch ----
    def carve_branch(self, wsid: int, last: bool) -> Optional[District]:
        tree = self.tree
        wsid, target = self.resolve_stranded(wsid, last)
        tree.close_watersheds(wsid)
        if target is None:
            logger.warning("No unassigned group left under ws %s; skipping", tree.ids[wsid])
            return None

        logger.info(
            "District: %d. Branch root ws: %s. Branch root population: %d",
            len(self.ledger.districts) + 1, tree.ids[wsid], int(tree.branch_population[wsid]),
        )
        district = build_district(
            self.ledger, wsid, target, self.size,
            last=last, max_stalled_advances=self.params.max_stalled_advances,
        )
        tree.close_watersheds(wsid)

        event = DistrictEvent(
            district_id=district.district_id,
            branch_root=tree.ids[wsid],
            population=int(district.population),
            remaining=self.ledger.remaining_population,
        )
        self.events.append(event)
        self.ledger.check_conservation()
        if self.on_district is not None:
            self.on_district(event, self.ledger)
        return district

    def resolve_stranded(self, wsid: int, last: bool) -> Tuple[int, Optional[BlockGroup]]:
        """
        Snap stranded groups under wsid into neighbouring districts (trimming
        each one after it grows) until none remain, ascending to the parent
        when the largest open group cannot fill a district.
        Returns the final branch root and the group to build from.
        """
        tree = self.tree
        ledger = self.ledger
        groups: List[BlockGroup] = []

        stranded: Optional[int] = None
        snap_id: Optional[int] = None
        added: Optional[int] = None
        sweeps = 0
        moved = 0

        while stranded != 0:
            tree.set_branch_root(wsid, wsid)
            while added != 0:
                groups = build_groups(ledger, wsid)
                stranded = classify_groups(groups)
                if added is None:
                    snap_id = next_snap_district(groups, snap_id)
                added = 0
                if snap_id is not None:
                    added = snap_stranded(ledger, groups, snap_id)
                    moved += added

            if snap_id is not None:
                self.trim_district(snap_id)
                added = None
                stranded = None
                continue

            if stranded != 0:
                # every bordering district was visited this sweep
                sweeps += 1
                if moved == 0 or sweeps >= self.params.max_snap_sweeps:
                    logger.warning(
                        "%d stranded group(s) under ws %s could not be resolved after %d sweep(s)",
                        stranded, tree.ids[wsid], sweeps,
                    )
                    stranded = 0
                else:
                    moved = 0
                    added = None
                    continue

            target = largest_group(groups)
            if (
                not last
                and target is not None
                and target.population < self.size
                and tree.parent[wsid] >= 0
            ):
                wsid = int(tree.parent[wsid])
                stranded = None
                snap_id = None
                added = None
                sweeps = 0
                moved = 0

        if not groups:
            logger.warning("No block groups found under ws %s", tree.ids[wsid])
        return wsid, largest_group(groups)

    # ---- trimming ----
    def _borders_open_territory(self, block: int, district_id: int) -> bool:
        labels = self.ledger.block_district
        return any(labels[n] == UNASSIGNED or labels[n] > district_id for n in self.ledger.adj[block])

    def _trim_vector(self, district: District, seed: int) -> EdgeVector:
        """Point at the first ancestor of the branch root that every member lies behind."""
        tree = self.tree
        coords = self.ledger.coords
        root_xy = tree.xy[district.branch_root]
        members = coords[list(district.blocks)]
        for ancestor in tree.ancestors(district.branch_root):
            v = EdgeVector.toward(root_xy, tree.xy[ancestor]).moved_to(tree.xy[ancestor])
            if (perpendicular_distances(members, v) <= 0).all():
                return v
        return EdgeVector.toward(coords[seed], root_xy).moved_to(root_xy)

    def trim_district(self, district_id: int) -> int:
        """
        Shed blocks from the district's edge while it stays above quota.
        Returns the number of blocks removed.
        """
        ledger = self.ledger
        coords = ledger.coords
        district = ledger.districts[district_id]
        labels = ledger.block_district

        v = district.vector
        prospects: Dict[int, float] = {}
        if v is not None:
            for b in district.edge_blocks:
                if labels[b] == district_id and self._borders_open_territory(b, district_id):
                    prospects[b] = edge_score(coords[b], v)

        if not prospects:
            root_xy = self.tree.xy[district.branch_root]
            seed = None
            best = None
            for b in district.blocks:
                if not self._borders_open_territory(b, district_id):
                    continue
                d = float(np.hypot(coords[b][0] - root_xy[0], coords[b][1] - root_xy[1]))
                if best is None or d < best:
                    seed, best = b, d
            if seed is None:
                logger.warning("No removal prospects found for district %d", district_id)
                return 0
            v = self._trim_vector(district, seed)
            district.vector = v
            prospects[seed] = edge_score(coords[seed], v)

        removed = 0
        while prospects:
            nxt = max(prospects, key=prospects.get)
            if v.pivoted and perpendicular_distance(coords[nxt], v) < 0:
                v = v.without_pivot()
                district.vector = v
                for b in prospects:
                    prospects[b] = edge_score(coords[b], v)
                nxt = max(prospects, key=prospects.get)

            if district.population - int(ledger.population[nxt]) <= self.size:
                break

            ledger.unassign(nxt)
            removed += 1
            del prospects[nxt]
            for n in ledger.adj[nxt]:
                if labels[n] == district_id:
                    prospects[n] = edge_score(coords[n], v)

        for b in evict_fragments(ledger, district_id):
            prospects.pop(b, None)
        district.edge_blocks = prospects
        ledger.check_conservation()
        if removed:
            logger.debug("district %d: trimmed %d blocks", district_id, removed)
        return removed

    # ---- driver ----
    def carve(self) -> CarveResult:
        tree = self.tree
        ledger = self.ledger
        max_passes = self.params.max_passes or (self.pack.num_blocks + 1)

        passes = 0
        while tree.branch_population[tree.root] > 0:
            passes += 1
            logger.info("Pass %d. Population remaining: %d", passes, ledger.remaining_population)
            if self.trim_trees() == 0:
                logger.warning("Pass %d created no district; stopping with %d unassigned",
                               passes, ledger.remaining_population)
                break
            if passes >= max_passes and tree.branch_population[tree.root] > 0:
                logger.warning("Stopping after %d passes with %d unassigned",
                               passes, ledger.remaining_population)
                break

        return CarveResult(
            pack=self.pack,
            district_size=self.size,
            labels=ledger.labels(),
            districts=ledger.districts,
            events=list(self.events),
        )


def run(pack: RegionPack, cfg: Optional[Dict[str, Any]] = None,
        on_district: Optional[Callable[[DistrictEvent, Ledger], None]] = None) -> CarveResult:
    params = _params_from_cfg(cfg or {})
    return TrimTrees(pack, params, on_district=on_district).carve()
