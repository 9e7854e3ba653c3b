import sys
from pathlib import Path

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
for sub in ("src", "scripts"):
    p = str(ROOT / sub)
    if p not in sys.path:
        sys.path.insert(0, p)

from trimtrees.data.region_pack import build_region_pack  # noqa: E402


def _frames(watersheds, blocks):
    ws_df = pd.DataFrame(watersheds, columns=["ws_id", "parent_id", "boundary", "exit_x", "exit_y"])
    bl_df = pd.DataFrame(
        blocks,
        columns=["block_id", "ws_id", "population", "boundary", "centroid_x", "centroid_y", "area"],
    )
    return ws_df, bl_df


@pytest.fixture
def make_pack():
    """Build a RegionPack from plain tuples."""

    def _make(watersheds, blocks, adjacency, district_size, **kwargs):
        ws_df, bl_df = _frames(watersheds, blocks)
        return build_region_pack(ws_df, bl_df, adjacency, district_size=district_size, **kwargs)

    return _make


@pytest.fixture
def line_pack(make_pack):
    """n blocks in a row draining to an exit at the origin, one watershed."""

    def _make(n, population=10, district_size=20):
        watersheds = [(1, None, False, 0.0, 0.0)]
        blocks = [(i, 1, population, False, float(i), 0.0, 1.0) for i in range(1, n + 1)]
        adjacency = {i: [j for j in (i - 1, i + 1) if 1 <= j <= n] for i in range(1, n + 1)}
        return make_pack(watersheds, blocks, adjacency, district_size)

    return _make


@pytest.fixture
def grid_pack(make_pack):
    """
    width x height grid of blocks; one watershed per row chained toward row 0,
    which drains out at the origin.
    """

    def _make(width=6, height=6, population=10, district_size=60, boundary=False):
        watersheds = []
        for r in range(height):
            parent = None if r == 0 else r
            watersheds.append((r + 1, parent, boundary, 0.0, float(r)))

        blocks = []
        adjacency = {}
        for r in range(height):
            for c in range(width):
                bid = r * width + c + 1
                on_edge = boundary and (r in (0, height - 1) or c in (0, width - 1))
                blocks.append((bid, r + 1, population, on_edge, float(c), float(r), 1.0))
                nbrs = []
                if c > 0:
                    nbrs.append(bid - 1)
                if c < width - 1:
                    nbrs.append(bid + 1)
                if r > 0:
                    nbrs.append(bid - width)
                if r < height - 1:
                    nbrs.append(bid + width)
                adjacency[bid] = nbrs
        return make_pack(watersheds, blocks, adjacency, district_size)

    return _make
