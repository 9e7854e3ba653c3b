import argparse
import json
import logging
from datetime import datetime
from pathlib import Path

import yaml

from trimtrees.algos.trim_trees import run as run_trim_trees
from trimtrees.data.region_pack import load_region_pack
from export_run import export_run

"""
Carve districts for one region, several regions, or all configured regions.

example usage from repo root:
python3 scripts/run_trim_trees.py --config config.yaml --region il
python3 scripts/run_trim_trees.py --config config.yaml --region all
"""


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _resolve_path(raw: str) -> Path:
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = (_repo_root() / p).resolve()
    return p


def _resolve_regions(cfg: dict, region_args: list[str]) -> dict[str, Path]:
    regions_cfg = cfg.get("regions", {}) or {}
    paths = cfg.get("paths", {}) or {}

    known: dict[str, Path] = {}
    for name, rcfg in regions_cfg.items():
        if not rcfg or "pack_dir" not in rcfg:
            raise KeyError(f"Region '{name}' needs a pack_dir under cfg['regions'].")
        known[name] = _resolve_path(rcfg["pack_dir"])

    # every sub directory of paths.packs_dir holding a region.json is a region too
    packs_root_raw = paths.get("packs_dir")
    if packs_root_raw:
        packs_root = _resolve_path(packs_root_raw)
        if packs_root.is_dir():
            for d in sorted(packs_root.iterdir()):
                if (d / "region.json").exists():
                    known.setdefault(d.name, d)

    if not region_args or region_args == ["all"]:
        if not known:
            raise KeyError("No regions configured. Add cfg['regions'] or paths.packs_dir.")
        return known

    selected = {}
    for name in region_args:
        if name in known:
            selected[name] = known[name]
        elif Path(name).expanduser().is_dir():
            p = Path(name).expanduser().resolve()
            selected[p.name] = p
        else:
            raise KeyError(f"Region '{name}' not found under cfg['regions'] or paths.packs_dir.")
    return selected


def _resolve_outputs_root(cfg: dict) -> Path:
    paths = cfg.get("paths", {}) or {}
    return _resolve_path(paths.get("outputs_dir", "outputs"))


def _update_latest_manifest(outputs_root: Path, key: str, run_folder_name: str):
    manifest_path = outputs_root / "latest.json"
    latest = {}
    if manifest_path.exists():
        try:
            latest = json.loads(manifest_path.read_text())
        except json.JSONDecodeError:
            latest = {}
        if not isinstance(latest, dict):
            latest = {}

    latest[key] = run_folder_name
    manifest_path.write_text(json.dumps(latest, indent=2))
    print("✅ Updated manifest:", manifest_path)


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="config.yaml")
    ap.add_argument("--region", nargs="*", default=["all"],
                    help="Region names from the config (or pack directories); 'all' for every region")
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args()

    cfg_path = _resolve_path(args.config)
    cfg = yaml.safe_load(cfg_path.read_text()) or {}
    run_cfg = cfg.get("run", {}) or {}

    logging.basicConfig(
        level=(args.log_level or run_cfg.get("log_level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    regions = _resolve_regions(cfg, args.region)
    outputs_root = _resolve_outputs_root(cfg)
    outputs_root.mkdir(parents=True, exist_ok=True)

    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    for name, pack_dir in regions.items():
        print(f"Region {name}: loading {pack_dir}")
        pack = load_region_pack(pack_dir)
        print(f"  blocks={pack.num_blocks:,} watersheds={len(pack.ws_ids):,} "
              f"population={pack.total_population:,} district_size={pack.district_size:,}")

        result = run_trim_trees(pack=pack, cfg=cfg)

        stats = result.district_summaries()
        print(f"  districts={len(result.districts)} unassigned={result.unassigned_population:,}")
        if len(stats):
            print(f"  largest deviation={int(stats['deviation'].abs().max()):,}")

        run_folder = f"trim_trees_{name}_{run_id}"
        export_run(result, outputs_root / run_folder, title=f"Trim trees ({pack.name})")
        _update_latest_manifest(outputs_root, f"trim_trees_{name}", run_folder)


if __name__ == "__main__":
    main()
