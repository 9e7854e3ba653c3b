import numpy as np
import pytest

from trimtrees.algos.ledger import Ledger


@pytest.fixture
def chain_pack(make_pack):
    # ws 1 (root) <- ws 2 <- ws 3, one block each
    watersheds = [
        (1, None, False, 0.0, 0.0),
        (2, 1, False, 1.0, 0.0),
        (3, 2, False, 2.0, 0.0),
    ]
    blocks = [
        (10, 1, 5, False, 0.0, 0.0, 2.0),
        (20, 2, 7, False, 1.0, 0.0, 1.0),
        (30, 3, 11, False, 2.0, 0.0, 1.0),
    ]
    adjacency = {10: [20], 20: [30]}
    return make_pack(watersheds, blocks, adjacency, district_size=10)


def test_initial_branch_populations(chain_pack):
    ledger = Ledger(chain_pack)
    assert ledger.tree.branch_population.tolist() == [23, 18, 11]
    assert ledger.total_population == 23
    assert ledger.remaining_population == 23


def test_assign_and_unassign_walk_the_ancestors(chain_pack):
    ledger = Ledger(chain_pack)
    d = ledger.new_district(ledger.tree.root)

    assert ledger.assign(2, d.district_id)
    assert ledger.tree.branch_population.tolist() == [12, 7, 0]
    assert d.population == 11
    assert ledger.tree.open_blocks.tolist() == [1, 1, 0]
    ledger.check_conservation()

    # assigning twice is a no-op
    assert not ledger.assign(2, d.district_id)
    assert d.population == 11

    assert ledger.unassign(2)
    assert ledger.tree.branch_population.tolist() == [23, 18, 11]
    assert d.population == 0
    assert ledger.block_district.tolist() == [0, 0, 0]
    ledger.check_conservation()


def test_assign_stops_at_given_ancestor(chain_pack):
    ledger = Ledger(chain_pack)
    d = ledger.new_district(1)
    ledger.assign(2, d.district_id, stop=1)
    assert ledger.tree.branch_population.tolist() == [23, 7, 0]


def test_assign_batch_settles_all_ancestors(chain_pack):
    ledger = Ledger(chain_pack)
    d = ledger.new_district(1)
    ledger.assign_batch([1, 2], d.district_id, branch_root=1)
    assert ledger.tree.branch_population.tolist() == [5, 0, 0]
    assert d.population == 18
    ledger.check_conservation()


def test_district_centroid_is_area_weighted(chain_pack):
    ledger = Ledger(chain_pack)
    d = ledger.new_district(0)
    ledger.assign(0, d.district_id)
    ledger.assign(1, d.district_id)
    # (0,0) weight 2, (1,0) weight 1
    assert d.centroid == pytest.approx([1.0 / 3.0, 0.0])
    assert d.area == pytest.approx(3.0)
    ledger.unassign(0)
    assert d.centroid == pytest.approx([1.0, 0.0])


def test_close_watersheds_is_idempotent(chain_pack):
    ledger = Ledger(chain_pack)
    tree = ledger.tree
    d = ledger.new_district(0)
    ledger.assign(2, d.district_id)

    assert not tree.close_watersheds(tree.root)
    first = tree.closed.copy()
    assert first.tolist() == [False, False, True]

    tree.close_watersheds(tree.root)
    assert np.array_equal(first, tree.closed)


def test_unassign_reopens_closed_chain(chain_pack):
    ledger = Ledger(chain_pack)
    tree = ledger.tree
    d = ledger.new_district(0)
    for b in range(3):
        ledger.assign(b, d.district_id)
    assert tree.close_watersheds(tree.root)
    assert tree.closed.all()

    ledger.unassign(2)
    assert not tree.closed.any()
    assert ledger.remaining_population == 11


def test_populate_branches_skips_closed_children(chain_pack):
    ledger = Ledger(chain_pack)
    tree = ledger.tree
    tree.closed[2] = True
    assert tree.populate_branches() == 12
    assert tree.branch_population[1] == 7


def test_set_branch_root_labels_open_subtree(chain_pack):
    ledger = Ledger(chain_pack)
    tree = ledger.tree
    tree.closed[2] = True
    tree.set_branch_root(1, 1)
    assert tree.branch_root.tolist() == [-1, 1, -1]


def test_conservation_violation_is_an_assertion(chain_pack):
    ledger = Ledger(chain_pack)
    ledger.tree.branch_population[ledger.tree.root] += 1
    with pytest.raises(AssertionError):
        ledger.check_conservation()


def test_multiple_roots_warns(make_pack, caplog):
    pack = make_pack(
        [(1, None, False, 0.0, 0.0), (2, None, False, 5.0, 0.0)],
        [(1, 1, 4, False, 0.0, 0.0, 1.0), (2, 2, 6, False, 5.0, 0.0, 1.0)],
        {},
        district_size=5,
    )
    with caplog.at_level("WARNING"):
        ledger = Ledger(pack)
    assert ledger.tree.root == 0
    assert ledger.total_population == 4
    assert "roots" in caplog.text
