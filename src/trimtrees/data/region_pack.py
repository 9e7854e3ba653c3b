from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional
import json
import logging

import numpy as np
import pandas as pd
import geopandas as gpd

logger = logging.getLogger(__name__)

WATERSHED_COLUMNS = ["ws_id", "parent_id", "boundary", "exit_x", "exit_y"]
BLOCK_COLUMNS = ["block_id", "ws_id", "population", "boundary", "centroid_x", "centroid_y", "area"]


@dataclass
class RegionPack:
    name: str
    district_size: int
    seats: Optional[int]

    # census blocks, index space ordered by ascending block id
    block_ids: list
    block_id_to_idx: dict[str, int]
    population: np.ndarray  # (N,) int64
    boundary: np.ndarray  # (N,) bool
    coords: np.ndarray  # (N,2) centroids
    area: np.ndarray  # (N,)
    block_ws: np.ndarray  # (N,) owning watershed index
    adj: list[list[int]]  # neighbors as indices, ascending

    # watershed tree arena, index space ordered by ascending ws id
    ws_ids: list
    ws_id_to_idx: dict[str, int]
    ws_parent: np.ndarray  # (M,) -1 for a root
    ws_children: list[list[int]]
    ws_boundary: np.ndarray  # (M,) bool
    ws_coords: np.ndarray  # (M,2) exit points
    ws_population: np.ndarray  # (M,) intrinsic population
    ws_component: np.ndarray  # (M,) drainage component id, -1 when unknown
    ws_blocks: list[list[int]]

    pack_dir: Optional[Path] = None
    shapes: Optional[gpd.GeoDataFrame] = None  # block_id + geometry

    @property
    def num_blocks(self) -> int:
        return len(self.block_ids)

    @property
    def total_population(self) -> int:
        return int(self.population.sum())


def _key(value: Any) -> str:
    # ids coming out of csv columns with blanks are floats
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        value = int(value)
    return str(value)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _as_bool(series: pd.Series) -> np.ndarray:
    if series.dtype == bool:
        return series.to_numpy()
    text = series.astype(str).str.strip().str.lower()
    return text.isin(["1", "true", "t", "yes", "y", "1.0"]).to_numpy()


def _require(df: pd.DataFrame, columns: list[str], what: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise KeyError(f"{what} is missing columns {missing}. Available: {list(df.columns)}")


def district_size_for(total_population: int, seats: int) -> int:
    """Quota = population / seats, rounded half up."""
    if seats <= 0:
        raise ValueError(f"seats must be positive, got {seats}")
    return int((2 * int(total_population) + int(seats)) // (2 * int(seats)))


def build_region_pack(
    watersheds: pd.DataFrame,
    blocks: pd.DataFrame,
    adjacency: Mapping[Any, Iterable[Any]],
    *,
    name: str = "region",
    seats: Optional[int] = None,
    district_size: Optional[int] = None,
    island_connections: Optional[Iterable[Iterable[Any]]] = None,
    pack_dir: Optional[Path] = None,
    shapes: Optional[gpd.GeoDataFrame] = None,
) -> RegionPack:
    _require(watersheds, WATERSHED_COLUMNS, "watersheds")
    _require(blocks, BLOCK_COLUMNS, "blocks")

    # ----------------------------
    # Watersheds
    # ----------------------------
    ws = watersheds.reset_index(drop=True).copy()
    ws["_key"] = [_key(v) for v in ws["ws_id"]]
    if ws["_key"].duplicated().any():
        dupes = ws.loc[ws["_key"].duplicated(), "_key"].tolist()
        raise ValueError(f"Duplicate ws_id values: {dupes[:10]}")

    by_id = ws.sort_values("ws_id", kind="mergesort").reset_index(drop=True)
    ws_ids = by_id["ws_id"].tolist()
    ws_id_to_idx = {k: i for i, k in enumerate(by_id["_key"])}
    m = len(ws_ids)

    ws_parent = np.full(m, -1, dtype=int)
    for key, parent in zip(by_id["_key"], by_id["parent_id"]):
        if _is_missing(parent):
            continue
        pkey = _key(parent)
        if pkey not in ws_id_to_idx:
            raise ValueError(f"Watershed {key} has unknown parent_id {pkey}")
        ws_parent[ws_id_to_idx[key]] = ws_id_to_idx[pkey]

    # children keep file order unless child_order says otherwise
    ordered = ws
    if "child_order" in ws.columns:
        ordered = ws.sort_values("child_order", kind="mergesort")
    ws_children: list[list[int]] = [[] for _ in range(m)]
    for key in ordered["_key"]:
        i = ws_id_to_idx[key]
        p = ws_parent[i]
        if p >= 0:
            ws_children[p].append(i)

    ws_boundary = _as_bool(by_id["boundary"])
    ws_coords = by_id[["exit_x", "exit_y"]].to_numpy(dtype=float)
    if "component_id" in by_id.columns:
        ws_component = by_id["component_id"].fillna(-1).to_numpy(dtype=int)
    else:
        ws_component = np.full(m, -1, dtype=int)

    # ----------------------------
    # Blocks
    # ----------------------------
    bl = blocks.sort_values("block_id", kind="mergesort").reset_index(drop=True)
    block_keys = [_key(v) for v in bl["block_id"]]
    block_id_to_idx = {k: i for i, k in enumerate(block_keys)}
    if len(block_id_to_idx) != len(block_keys):
        raise ValueError("Duplicate block_id values in blocks")
    n = len(block_keys)

    block_ws = np.empty(n, dtype=int)
    for i, w in enumerate(bl["ws_id"]):
        wkey = _key(w)
        if wkey not in ws_id_to_idx:
            raise ValueError(f"Block {block_keys[i]} references unknown ws_id {wkey}")
        block_ws[i] = ws_id_to_idx[wkey]

    population = bl["population"].fillna(0).to_numpy(dtype=np.int64)
    if (population < 0).any():
        raise ValueError("Block populations must be >= 0")
    boundary = _as_bool(bl["boundary"])
    coords = bl[["centroid_x", "centroid_y"]].to_numpy(dtype=float)
    area = bl["area"].fillna(0.0).to_numpy(dtype=float)

    ws_blocks: list[list[int]] = [[] for _ in range(m)]
    for i in range(n):
        ws_blocks[block_ws[i]].append(i)

    ws_population = np.bincount(block_ws, weights=population, minlength=m).astype(np.int64)
    if "population" in by_id.columns:
        supplied = by_id["population"].fillna(0).to_numpy(dtype=np.int64)
        mismatched = int((supplied != ws_population).sum())
        if mismatched:
            logger.warning(
                "%s: %d watershed population(s) disagree with their blocks; using block sums",
                name, mismatched,
            )

    # ----------------------------
    # Adjacency (undirected, ascending)
    # ----------------------------
    nbrs: list[set[int]] = [set() for _ in range(n)]
    unknown = 0
    for bid, others in adjacency.items():
        i = block_id_to_idx.get(_key(bid))
        if i is None:
            unknown += 1
            continue
        for other in others:
            j = block_id_to_idx.get(_key(other))
            if j is None:
                unknown += 1
                continue
            if j != i:
                nbrs[i].add(j)
                nbrs[j].add(i)

    for pair in island_connections or []:
        a, b = list(pair)[:2]
        i = block_id_to_idx.get(_key(a))
        j = block_id_to_idx.get(_key(b))
        if i is None or j is None or i == j:
            unknown += 1
            continue
        nbrs[i].add(j)
        nbrs[j].add(i)

    if unknown:
        logger.warning("%s: ignored %d adjacency entries naming unknown blocks", name, unknown)
    adj = [sorted(s) for s in nbrs]

    total = int(population.sum())
    if district_size is None:
        if seats is None:
            raise ValueError(f"{name}: provide seats or district_size")
        district_size = district_size_for(total, int(seats))
    district_size = int(district_size)
    if district_size <= 0:
        raise ValueError(f"{name}: district size must be positive, got {district_size}")

    if shapes is not None:
        shapes = shapes.copy()
        shapes["block_id"] = [_key(v) for v in shapes["block_id"]]

    return RegionPack(
        name=name,
        district_size=district_size,
        seats=None if seats is None else int(seats),
        block_ids=bl["block_id"].tolist(),
        block_id_to_idx=block_id_to_idx,
        population=population,
        boundary=boundary,
        coords=coords,
        area=area,
        block_ws=block_ws,
        adj=adj,
        ws_ids=ws_ids,
        ws_id_to_idx=ws_id_to_idx,
        ws_parent=ws_parent,
        ws_children=ws_children,
        ws_boundary=ws_boundary,
        ws_coords=ws_coords,
        ws_population=ws_population,
        ws_component=ws_component,
        ws_blocks=ws_blocks,
        pack_dir=pack_dir,
        shapes=shapes,
    )


def load_region_pack(pack_dir: str | Path) -> RegionPack:
    pack_dir = Path(pack_dir)
    if not pack_dir.is_dir():
        raise FileNotFoundError(f"Region pack not found: {pack_dir}")

    region = json.loads((pack_dir / "region.json").read_text())
    watersheds = pd.read_csv(pack_dir / "watersheds.csv")
    blocks = pd.read_csv(pack_dir / "blocks.csv")
    adjacency = json.loads((pack_dir / "adjacency.json").read_text())

    islands = None
    islands_path = pack_dir / "island_connections.json"
    if islands_path.exists():
        islands = json.loads(islands_path.read_text())

    shapes = None
    shapes_path = pack_dir / "shapes.geojson"
    if shapes_path.exists():
        shapes = gpd.read_file(shapes_path)

    return build_region_pack(
        watersheds,
        blocks,
        adjacency,
        name=str(region.get("name", pack_dir.name)),
        seats=region.get("seats"),
        district_size=region.get("district_size"),
        island_connections=islands,
        pack_dir=pack_dir,
        shapes=shapes,
    )
