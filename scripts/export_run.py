from pathlib import Path
import json
import shutil

import pandas as pd
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt


def _write_district_files(result, out_dir: Path, title: str, simplify_tol_districts: float):
    pack = result.pack

    # ---- Block -> district mapping ----
    mapping = pd.DataFrame({
        "block_id": pack.block_ids,
        "district": result.labels.astype(int),
    })
    mapping.to_csv(out_dir / "block_to_district.csv", index=False)

    # ---- District stats ----
    district_stats = result.district_summaries()
    (out_dir / "district_stats.json").write_text(
        json.dumps(district_stats.to_dict(orient="records"), indent=2, default=str)
    )
    district_stats.to_csv(out_dir / "district_stats.csv", index=False)

    # ---- Creation log ----
    result.events_frame().to_csv(out_dir / "events.csv", index=False)

    summary = {
        "region": pack.name,
        "district_size": result.district_size,
        "districts": len(result.districts),
        "total_population": pack.total_population,
        "unassigned_population": result.unassigned_population,
    }
    (out_dir / "summary.json").write_text(json.dumps(summary, indent=2))

    if pack.shapes is None:
        return

    # ---- District polygons + preview ----
    gdf = pack.shapes.merge(
        mapping.assign(block_id=list(pack.block_id_to_idx)),  # keys in index order
        on="block_id",
        how="left",
    )
    gdf["district"] = gdf["district"].fillna(0).astype(int)

    districts = gdf.dissolve(by="district", as_index=False)
    districts = districts.merge(district_stats, left_on="district", right_on="district_id", how="left")
    if simplify_tol_districts and simplify_tol_districts > 0:
        districts["geometry"] = districts["geometry"].simplify(
            simplify_tol_districts, preserve_topology=True
        )
    districts.to_file(out_dir / "districts.geojson", driver="GeoJSON")

    fig, ax = plt.subplots(figsize=(10, 10))
    gdf.plot(column="district", cmap="tab20", linewidth=0.1, edgecolor="white", ax=ax)
    ax.set_title(title)
    ax.axis("off")
    plt.tight_layout()
    fig.savefig(out_dir / "map.png", dpi=200)
    plt.close(fig)


def export_run(result, run_dir: Path, title: str, simplify_tol_districts: float = 0.0):
    """
    Write one region's results. Files are staged next to run_dir and moved
    into place only once everything has been written.
    """
    run_dir = Path(run_dir)
    staging = run_dir.parent / f".{run_dir.name}.partial"
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)

    try:
        _write_district_files(result, staging, title, simplify_tol_districts)
    except Exception:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    if run_dir.exists():
        shutil.rmtree(run_dir)
    staging.rename(run_dir)

    print(f"✅ Exported run to: {run_dir}")
    print("   - block_to_district.csv")
    print("   - district_stats.json / district_stats.csv")
    if result.pack.shapes is not None:
        print("   - districts.geojson, map.png")
    return run_dir
