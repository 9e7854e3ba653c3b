import json

import pandas as pd

from export_run import export_run
from trimtrees.algos.trim_trees import run


def test_export_writes_region_files(line_pack, tmp_path):
    result = run(line_pack(5))
    run_dir = export_run(result, tmp_path / "trim_trees_line", title="line")

    assert run_dir == tmp_path / "trim_trees_line"
    assert not (tmp_path / ".trim_trees_line.partial").exists()

    mapping = pd.read_csv(run_dir / "block_to_district.csv")
    assert mapping["block_id"].tolist() == [1, 2, 3, 4, 5]
    assert mapping["district"].tolist() == result.labels.tolist()

    stats = json.loads((run_dir / "district_stats.json").read_text())
    assert [s["population"] for s in stats] == [20, 20, 10]

    summary = json.loads((run_dir / "summary.json").read_text())
    assert summary["districts"] == 3
    assert summary["unassigned_population"] == 0

    events = pd.read_csv(run_dir / "events.csv")
    assert events["remaining"].tolist() == [30, 10, 0]
    assert not (run_dir / "map.png").exists()


def test_export_replaces_previous_run(line_pack, tmp_path):
    result = run(line_pack(5))
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    (run_dir / "stale.txt").write_text("old")

    export_run(result, run_dir, title="line")
    assert not (run_dir / "stale.txt").exists()
    assert (run_dir / "district_stats.csv").exists()
