import pytest

from trimtrees.algos.advance_edge import Candidate, DistrictBuilder, pick_candidate
from trimtrees.algos.block_groups import build_groups, classify_groups, is_contiguous
from trimtrees.algos.edge_vector import EdgeVector
from trimtrees.algos.ledger import Ledger


def _candidate(edge_length):
    return Candidate(vector=EdgeVector(0.0, 0.0, 1.0, 0.0), target_ws=0, edge_length=edge_length)


@pytest.mark.parametrize(
    "backup_len, latest_len, expect_backup",
    [
        (3.0, 1.0, False),
        (1.0, 2.5, True),
        (2.0, 2.0, False),
        # a candidate that swallowed its group has no edge at all
        (2.0, None, False),
        (None, 1.5, True),
    ],
)
def test_shorter_edge_wins(backup_len, latest_len, expect_backup):
    backup = _candidate(backup_len)
    latest = _candidate(latest_len)
    chosen = pick_candidate(backup, latest)
    assert chosen is (backup if expect_backup else latest)


def test_without_backup_latest_wins():
    latest = _candidate(4.0)
    assert pick_candidate(None, latest) is latest


@pytest.fixture
def boundary_branch(make_pack):
    """
    Child watershed 2 holds blocks 2-4 in a row and drains at x=3 into the
    root, whose exit is the origin. Both watersheds lie on the outer boundary.

        1 . 2 3 4      (block 1 at x=1, blocks 2-4 at x=4..6)
    """
    watersheds = [
        (1, None, True, 0.0, 0.0),
        (2, 1, True, 3.0, 0.0),
    ]
    blocks = [
        (1, 1, 10, False, 1.0, 0.0, 1.0),
        (2, 2, 10, False, 4.0, 0.0, 1.0),
        (3, 2, 10, False, 5.0, 0.0, 1.0),
        (4, 2, 10, False, 6.0, 0.0, 1.0),
    ]
    adjacency = {1: [2], 2: [3], 3: [4]}
    return make_pack(watersheds, blocks, adjacency, district_size=20)


def _group(ledger, wsid):
    ledger.tree.set_branch_root(wsid, wsid)
    groups = build_groups(ledger, wsid)
    classify_groups(groups)
    return groups[0]


def test_boundary_branch_runs_both_passes(boundary_branch):
    ledger = Ledger(boundary_branch)
    wsid = ledger.tree.ids.index(2)
    group = _group(ledger, wsid)
    assert sorted(group.blocks) == [1, 2, 3]

    builder = DistrictBuilder(ledger, wsid, group, 20)
    district = builder.build()

    assert builder.boundary_source == wsid
    assert builder.boundary_target == ledger.tree.root

    # the centered pass closed first and was held back
    assert builder.backup is not None
    assert builder.backup is not builder.current
    assert builder.backup.target_ws == wsid
    assert sorted(builder.backup.blocks) == [2, 3]

    # the boundary pass followed the drainage from the child exit to the root
    assert builder.current.target_ws == ledger.tree.root
    assert sorted(builder.current.blocks) == [2, 3]

    # equal edges keep the boundary candidate
    assert builder.chosen is builder.current
    assert sorted(district.blocks) == [2, 3]
    assert district.population == 20
    assert is_contiguous(ledger, district.district_id)
    ledger.check_conservation()


def test_non_boundary_branch_has_no_backup(line_pack):
    ledger = Ledger(line_pack(4))
    root = ledger.tree.root
    group = _group(ledger, root)

    builder = DistrictBuilder(ledger, root, group, 20)
    district = builder.build()

    assert builder.boundary_target is None
    assert builder.backup is None
    assert builder.chosen is builder.current
    assert district.population == 20
    ledger.check_conservation()
