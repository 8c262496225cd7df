"""Tests for the diff planner."""

import itertools

import alpacka  # noqa: E402
from conftest import lockfile, spec

OpKind = alpacka.OpKind

C1 = "1" * 40
C2 = "2" * 40
C3 = "3" * 40


def _summary(install_plan):
    return [(op.kind, op.name) for op in install_plan]


def test_plan_same_generation_is_all_noop():
    gen = lockfile(spec("foo", "repoA", C1), spec("bar", "repoB", C2))
    install_plan = alpacka.plan(gen, gen)
    assert install_plan.is_noop
    assert _summary(install_plan) == [(OpKind.NOOP, "bar"), (OpKind.NOOP, "foo")]


def test_plan_scenario_v1_to_v2_and_back():
    v1 = lockfile(spec("foo", "repoA", C1))
    v2 = lockfile(spec("foo", "repoA", C2), spec("bar", "repoB", C3))

    forward = alpacka.plan(v1, v2)
    assert _summary(forward) == [(OpKind.UPDATE, "foo"), (OpKind.ADD, "bar")]
    update = forward.operations[0]
    assert (update.old.pinned_commit, update.new.pinned_commit) == (C1, C2)

    back = alpacka.plan(v2, v1)
    assert _summary(back) == [(OpKind.UPDATE, "foo"), (OpKind.REMOVE, "bar")]
    assert back.operations[1].old.pinned_commit == C3


def test_source_change_forces_update():
    current = lockfile(spec("foo", "repoA", C1))
    target = lockfile(spec("foo", "mirrorA", C1))
    assert _summary(alpacka.plan(current, target)) == [(OpKind.UPDATE, "foo")]


def test_reference_change_alone_is_noop():
    current = lockfile(spec("foo", "repoA", C1, reference="main"))
    target = lockfile(spec("foo", "repoA", C1, reference="v2"))
    assert alpacka.plan(current, target).is_noop


def test_rename_is_remove_plus_add():
    current = lockfile(spec("telescope", "repoT", C1))
    target = lockfile(spec("telescope.nvim", "repoT", C1))
    assert _summary(alpacka.plan(current, target)) == [
        (OpKind.ADD, "telescope.nvim"),
        (OpKind.REMOVE, "telescope"),
    ]


def test_plan_is_grouped_by_kind_then_sorted():
    current = lockfile(
        spec("zeta", "r", C1), spec("alpha", "r", C1), spec("gone", "r", C1), spec("same", "r", C1)
    )
    target = lockfile(
        spec("zeta", "r", C2), spec("alpha", "r", C2), spec("new", "r", C1), spec("same", "r", C1)
    )
    assert _summary(alpacka.plan(current, target)) == [
        (OpKind.UPDATE, "alpha"),
        (OpKind.UPDATE, "zeta"),
        (OpKind.ADD, "new"),
        (OpKind.REMOVE, "gone"),
        (OpKind.NOOP, "same"),
    ]


def test_plan_from_empty_store():
    target = lockfile(spec("foo", "repoA", C1))
    assert _summary(alpacka.plan(alpacka.Lockfile.empty(), target)) == [(OpKind.ADD, "foo")]
    assert len(alpacka.plan(alpacka.Lockfile.empty(), alpacka.Lockfile.empty())) == 0


def test_plan_classification_over_all_small_generations():
    """Every name lands in exactly one operation of the right kind."""
    states = [None, ("repoA", C1), ("repoA", C2), ("repoB", C1)]
    names = ["a", "b"]

    def generation(choice):
        return lockfile(
            *[spec(n, s[0], s[1]) for n, s in zip(names, choice) if s is not None]
        )

    for cur, tgt in itertools.product(itertools.product(states, repeat=2), repeat=2):
        current, target = generation(cur), generation(tgt)
        install_plan = alpacka.plan(current, target)
        by_name = {op.name: op.kind for op in install_plan}
        assert len(by_name) == len(install_plan)
        assert set(by_name) == set(current.packages) | set(target.packages)
        for name, kind in by_name.items():
            old, new = current.packages.get(name), target.packages.get(name)
            if old is None:
                assert kind is OpKind.ADD
            elif new is None:
                assert kind is OpKind.REMOVE
            elif (old.source, old.pinned_commit) != (new.source, new.pinned_commit):
                assert kind is OpKind.UPDATE
            else:
                assert kind is OpKind.NOOP
