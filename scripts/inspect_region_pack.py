import sys
from pathlib import Path

import numpy as np

from trimtrees.data.region_pack import load_region_pack

"""
Quick sanity report for a region pack.

python3 scripts/inspect_region_pack.py packs/il
"""

pack_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("packs/example")
pack = load_region_pack(pack_dir)

print("Region:", pack.name)
print("Blocks:", pack.num_blocks)
print("Watersheds:", len(pack.ws_ids))
print("Population:", f"{pack.total_population:,}")
print("District size:", f"{pack.district_size:,}", "| seats:", pack.seats)

roots = np.flatnonzero(pack.ws_parent < 0)
print("Roots:", [pack.ws_ids[r] for r in roots])
print("Boundary watersheds:", int(pack.ws_boundary.sum()), "| boundary blocks:", int(pack.boundary.sum()))

degrees = np.array([len(n) for n in pack.adj])
print("\nDisconnected blocks (0 neighbors):", int((degrees == 0).sum()))
print("Mean neighbors:", round(float(degrees.mean()) if len(degrees) else 0.0, 2))

empty = sum(1 for b in pack.ws_blocks if not b)
print("Watersheds without blocks:", empty)
components = sorted(set(pack.ws_component.tolist()) - {-1})
print("Drainage components:", len(components) if components else "unknown")
print("Shapes:", "yes" if pack.shapes is not None else "no")
