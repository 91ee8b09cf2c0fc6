import pytest

from stacksmith.engine.entities import ResourceKind, ResourceNode
from stacksmith.engine.exceptions import CyclicDependencyError, UnresolvableReferenceError
from stacksmith.engine.graph import build, find_cycle, topological_order
from stacksmith.engine.intrinsics import get_att, ref


def _node(logical_id, kind=ResourceKind.NETWORK, properties=None, depends_on=()):
    return ResourceNode(
        logical_id=logical_id,
        kind=kind,
        properties=properties or {},
        depends_on=set(depends_on),
    )


def test_build_orders_producers_first(three_tier_stack):
    graph = three_tier_stack.build()

    assert graph.order == ["N1", "D1", "S1"]
    assert graph.dependencies("D1") == ["N1"]
    assert graph.dependencies("S1") == ["D1"]
    assert graph.dependents("N1") == ["D1"]
    assert [node.logical_id for node in graph] == ["N1", "D1", "S1"]


def test_build_accepts_iterable_of_nodes():
    graph = build([_node("B", depends_on=["A"]), _node("A")])
    assert graph.order == ["A", "B"]
    assert len(graph) == 2


def test_ties_are_broken_lexicographically():
    nodes = [_node(logical_id) for logical_id in ["c", "a", "B", "b"]]
    nodes.append(_node("z", depends_on=["a"]))

    order = build(nodes).order

    assert order == ["B", "a", "b", "c", "z"]


def test_order_is_stable_across_builds():
    def nodes():
        return {
            "Service": _node("Service", ResourceKind.SERVICE, {"Cluster": ref("Cluster")}),
            "Cluster": _node("Cluster", ResourceKind.CLUSTER),
            "Role": _node("Role", ResourceKind.ROLE),
            "Task": _node("Task", ResourceKind.TASK_DEFINITION, {"TaskRoleArn": get_att("Role", "Arn")}),
        }

    orders = {tuple(build(nodes()).order) for _ in range(10)}
    assert orders == {("Cluster", "Role", "Service", "Task")}


def test_two_node_cycle_names_both_nodes():
    nodes = [
        _node("A", properties={"Peer": ref("B")}),
        _node("B", properties={"Peer": ref("A")}),
    ]

    with pytest.raises(CyclicDependencyError) as e:
        build(nodes)

    assert e.value.cycle == ["A", "B"]
    assert "A -> B -> A" in str(e.value)
    assert e.value.exit_code == 5


def test_cycle_through_depends_on():
    nodes = [
        _node("A", depends_on=["C"]),
        _node("B", depends_on=["A"]),
        _node("C", depends_on=["B"]),
        _node("D", depends_on=["A"]),
    ]

    with pytest.raises(CyclicDependencyError) as e:
        build(nodes)

    assert e.value.cycle == ["A", "C", "B"]


def test_self_reference_is_a_cycle():
    with pytest.raises(CyclicDependencyError) as e:
        build([_node("A", properties={"Self": get_att("A", "Arn")})])

    assert e.value.cycle == ["A"]


def test_reference_to_undeclared_node():
    with pytest.raises(UnresolvableReferenceError) as e:
        build([_node("Service", ResourceKind.SERVICE, {"Host": get_att("Db", "Endpoint.Address")})])

    assert e.value.source_node_id == "Db"
    assert e.value.chain == ["Service", "Db.Endpoint.Address"]
    assert e.value.exit_code == 4


def test_depends_on_undeclared_node():
    with pytest.raises(UnresolvableReferenceError) as e:
        build([_node("Service", depends_on=["Listener"])])

    assert e.value.source_node_id == "Listener"
    assert e.value.chain == ["Service.DependsOn", "Listener"]


def test_find_cycle_without_cycle():
    assert find_cycle({"a": {"b"}, "b": {"c"}, "c": set()}) is None


def test_topological_order_includes_targets_without_entries():
    assert topological_order({"b": {"a"}}) == ["a", "b"]


def test_topological_order_raises_on_cycle():
    with pytest.raises(CyclicDependencyError):
        topological_order({"a": {"b"}, "b": {"a"}})
