import pytest

from targetkit.config import EngineConfig
from targetkit.dag import NodeKind, build
from targetkit.dsl import map_over, rep, target
from targetkit.errors import (
    BatchFormatError,
    CyclicDependencyError,
    DuplicateNameError,
    UnresolvedReferenceError,
)
from targetkit.expr import call, ref
from targetkit.model import Deployment


def ident(x):
    return x


def add(a, b):
    return a + b


def explode(*_args):
    raise AssertionError("commands must not run while building")


def chain():
    return [
        target("raw", 1),
        target("data", call(ident, ref("raw"))),
        target("model", call(add, ref("data"), ref("raw"))),
    ]


def test_one_node_per_spec_in_dependency_order():
    graph = build(chain())
    assert len(graph) == 3
    assert list(graph.order) == ["raw", "data", "model"]
    assert graph["model"].deps == ("data", "raw")
    assert graph.dependents("raw") == {"data", "model"}
    assert all(graph[n].kind is NodeKind.CONCRETE for n in graph)


def test_declaration_order_breaks_ties():
    specs = [target("b", 1), target("a", 2), target("c", call(add, ref("a"), ref("b")))]
    assert list(build(specs).order) == ["b", "a", "c"]


def test_nested_lists_are_flattened():
    graph = build([[target("a", 1)], (target("b", call(ident, ref("a"))),)])
    assert list(graph.order) == ["a", "b"]


def test_self_reference_is_a_cycle():
    with pytest.raises(CyclicDependencyError) as exc:
        build([target("a", call(ident, ref("a")))])
    assert exc.value.nodes == ["a"]


def test_indirect_cycle():
    specs = [
        target("a", call(ident, ref("c"))),
        target("b", call(ident, ref("a"))),
        target("c", call(ident, ref("b"))),
        target("free", 1),
    ]
    with pytest.raises(CyclicDependencyError) as exc:
        build(specs)
    assert exc.value.nodes == ["a", "b", "c"]


def test_duplicate_names():
    with pytest.raises(DuplicateNameError) as exc:
        build([target("a", 1), target("b", 2), target("a", 3)])
    assert exc.value.names == ["a"]


def test_unresolved_reference():
    with pytest.raises(UnresolvedReferenceError) as exc:
        build([target("a", call(ident, ref("nope")))])
    assert exc.value.target == "a"
    assert exc.value.name == "nope"


def test_constants_resolve_references():
    graph = build([target("a", call(add, ref("n"), 1))], constants={"n": 2, "unused": 3})
    assert graph["a"].deps == ()
    assert graph["a"].constants == ("n",)


def test_pattern_over_a_constant_is_unresolved():
    spec = target("ys", call(ident, ref("xs")), pattern=map_over("xs"))
    with pytest.raises(UnresolvedReferenceError):
        build([spec], constants={"xs": [1, 2]})


def test_dynamic_targets_become_placeholders():
    graph = build([
        target("xs", [1, 2, 3]),
        target("ys", call(ident, ref("xs")), pattern=map_over("xs")),
    ])
    assert graph["ys"].kind is NodeKind.DYNAMIC_PLACEHOLDER
    assert graph["ys"].deps == ("xs",)


def test_config_defaults_are_applied():
    config = EngineConfig(default_format="json", default_deployment="local")
    graph = build([target("a", 1), target("b", 2, format="object", deployment="any")], config=config)
    assert graph["a"].format == "json"
    assert graph["a"].deployment is Deployment.LOCAL
    assert graph["b"].format == "object"
    assert graph["b"].deployment is Deployment.ANY


def test_two_configs_do_not_interfere():
    specs = [target("a", 1)]
    assert build(specs, config=EngineConfig(default_format="json"))["a"].format == "json"
    assert build(specs)["a"].format == "object"


def test_graph_is_read_only():
    graph = build(chain())
    with pytest.raises(TypeError):
        graph.nodes["x"] = graph["raw"]


def test_upstream_downstream_and_levels():
    graph = build(chain() + [target("other", 5)])
    assert graph.upstream("model") == {"data", "raw"}
    assert graph.downstream("raw") == {"data", "model"}
    assert graph.levels() == [["other", "raw"], ["data"], ["model"]]


def test_subgraph_keeps_upstream_only():
    graph = build(chain() + [target("other", 5)])
    sub = graph.subgraph(["data"])
    assert list(sub.order) == ["raw", "data"]
    assert sub.dependents("raw") == {"data"}
    with pytest.raises(ValueError):
        graph.subgraph(["missing"])


def test_manifest_runs_nothing():
    graph = build([
        target("a", call(explode)),
        target("b", call(explode, ref("a")), pattern=map_over("a"), reps=4, priority=2.0),
    ])
    rows = graph.manifest()
    assert [r["name"] for r in rows] == ["a", "b"]
    assert rows[1]["pattern"] == "map(a)"
    assert rows[1]["reps"] == 4
    assert rows[1]["kind"] == "dynamic_placeholder"
    assert rows[1]["deps"] == ["a"]
    assert rows[0]["deployment"] == "any"


def test_dynamic_targets_need_a_list_capable_format():
    xs = target("xs", [1, 2, 3])
    with pytest.raises(BatchFormatError) as exc:
        build([xs, target("frames", call(ident, ref("xs")), pattern=map_over("xs"), format="csv")])
    assert exc.value.target == "frames"
    assert "csv" in str(exc.value)

    with pytest.raises(BatchFormatError):
        build(rep("sim", call(ident, ref("sim_rep")), batches=2, format="csv"))

    with pytest.raises(BatchFormatError):
        build(
            [xs, target("ys", call(ident, ref("xs")), pattern=map_over("xs"))],
            config=EngineConfig(default_format="csv"),
        )


def test_list_capable_formats_are_fine_for_dynamic_targets():
    for fmt in ("object", "json"):
        graph = build([
            target("xs", [1, 2, 3]),
            target("ys", call(ident, ref("xs")), pattern=map_over("xs"), format=fmt),
        ])
        assert graph["ys"].format == fmt
    assert build([target("table", 1, format="csv")])["table"].format == "csv"
