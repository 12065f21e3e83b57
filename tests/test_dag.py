import pytest

from sandci.dag import build_dag, flatten, plan_pipeline, topo_levels
from sandci.errors import DependencyError, SchemaError
from sandci.schema import parse_pipeline_text, validate_pipeline


def _plan(steps):
    return plan_pipeline(validate_pipeline({"steps": steps}))


def _level_of(plan):
    return {nid: i for i, level in enumerate(plan.levels) for nid in level}


def test_dependencies_always_come_first(sample_yaml):
    plan = plan_pipeline(parse_pipeline_text(sample_yaml))
    level = _level_of(plan)
    for nid, node in plan.nodes.items():
        for e in node.edges:
            assert level[e.source] < level[nid]


def test_unrelated_steps_share_a_level():
    plan = _plan([{"command": "a", "key": "a"}, {"command": "b", "key": "b"}])
    assert plan.levels == [["a", "b"]]


def test_missing_reference_names_the_key():
    with pytest.raises(DependencyError) as exc:
        _plan([{"command": "a", "key": "a", "depends_on": "nope"}])
    assert exc.value.key == "nope"
    assert exc.value.details["referrer"] == "a"


def test_cycle_is_detected_without_looping():
    with pytest.raises(DependencyError) as exc:
        _plan(
            [
                {"command": "a", "key": "a", "depends_on": "b"},
                {"command": "b", "key": "b", "depends_on": "a"},
            ]
        )
    assert exc.value.details["stuck"] == ["a", "b"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(DependencyError):
        _plan([{"command": "a", "key": "a", "depends_on": "a"}])


def test_wait_is_a_barrier():
    plan = _plan(
        [
            {"command": "a", "key": "a"},
            {"command": "b", "key": "b"},
            {"wait": None, "key": "w"},
            {"command": "c", "key": "c"},
        ]
    )
    assert sorted(plan.dependencies("w")) == ["a", "b"]
    assert plan.dependencies("c") == ["w"]
    assert plan.levels == [["a", "b"], ["w"], ["c"]]


def test_continue_on_failure_relaxes_barrier_edges():
    plan = _plan(
        [
            {"command": "a", "key": "a"},
            {"wait": None, "key": "w", "continue_on_failure": True},
            {"command": "c", "key": "c"},
        ]
    )
    assert all(e.allow_failure for e in plan.nodes["w"].edges)
    assert not any(e.allow_failure for e in plan.nodes["c"].edges)


def test_group_is_transparent():
    plan = _plan(
        [
            {"command": "setup", "key": "setup"},
            {
                "group": "g",
                "key": "g",
                "depends_on": "setup",
                "allow_dependency_failure": True,
                "if": 'build.branch == "main"',
                "steps": [{"command": "x", "key": "x"}, {"command": "y", "key": "y"}],
            },
            {"command": "after", "key": "after", "depends_on": "g"},
        ]
    )
    assert plan.dependencies("x") == ["setup"]
    assert plan.nodes["y"].allow_dependency_failure is True
    assert plan.nodes["y"].if_exprs == ['build.branch == "main"']
    assert plan.nodes["x"].group == "g"
    assert sorted(plan.dependencies("after")) == ["x", "y"]


def test_unkeyed_steps_get_positional_ids():
    nodes, _ = flatten(validate_pipeline({"steps": [{"command": "a"}, "wait", {"command": "b"}]}))
    assert [n.id for n in nodes] == ["step-1", "step-2", "step-3"]


def test_allow_failure_is_kept_on_the_edge():
    plan = _plan(
        [
            {"command": "a", "key": "a"},
            {"command": "b", "key": "b", "depends_on": [{"step": "a", "allow_failure": True}]},
        ]
    )
    (edge,) = plan.nodes["b"].edges
    assert edge.source == "a" and edge.allow_failure is True


def test_topo_levels_on_raw_graph():
    adj = {"a": {"b", "c"}, "b": {"d"}, "c": {"d"}, "d": set()}
    indeg = {"a": 0, "b": 1, "c": 1, "d": 2}
    assert topo_levels(adj, indeg) == [["a"], ["b", "c"], ["d"]]


def test_build_dag_counts_unique_edges():
    nodes, aliases = flatten(
        validate_pipeline(
            {"steps": [{"command": "a", "key": "a"}, "wait", {"command": "b", "key": "b", "depends_on": ["a"]}]}
        )
    )
    adj, indeg = build_dag(nodes, aliases)
    assert indeg["b"] == 2  # the wait and a
    assert adj["a"] == {"step-2", "b"}


def test_bad_if_expression_fails_at_plan_time():
    with pytest.raises(SchemaError) as exc:
        _plan([{"command": "a", "key": "a", "if": "build.branch =="}])
    assert exc.value.subject == "a"
