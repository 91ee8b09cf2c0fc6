import logging
from typing import Any, Iterable, Iterator, Optional, Union

from stacksmith.engine import graph as dependency_graph
from stacksmith.engine import planner
from stacksmith.engine.entities import (
    ResourceKind,
    ResourceNode,
    StackConfig,
    StackOutput,
    validate_logical_id,
)
from stacksmith.engine.exceptions import DuplicateIdError
from stacksmith.engine.graph import DependencyGraph
from stacksmith.engine.planner import Plan
from stacksmith.engine.state import StackState
from stacksmith.engine.synthesizer import Document, synthesize

LOG = logging.getLogger(__name__)


class Stack:
    """
    A set of declared resource nodes and outputs, together with the configuration used to name and tag them.
    The passes (build, synthesize, plan) are plain functions over the stack contents; the stack keeps no state
    between them.
    """

    def __init__(self, config: StackConfig):
        self.config = config
        self.nodes: dict[str, ResourceNode] = {}
        self.outputs: dict[str, StackOutput] = {}

    @property
    def stack_name(self) -> str:
        return self.config.stack_name

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self.nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self):
        return len(self.nodes)

    def declare(
        self,
        kind: Union[ResourceKind, str],
        logical_id: str,
        properties: Optional[dict] = None,
        depends_on: Optional[Iterable[Union[str, ResourceNode]]] = None,
    ) -> ResourceNode:
        """
        Declares a new resource node.

        :raises DuplicateIdError: if a node with the same logical id is already declared
        :raises ValueError: if the kind is unknown or the logical id is invalid
        """
        validate_logical_id(logical_id)
        if logical_id in self.nodes:
            raise DuplicateIdError(logical_id, self.stack_name)
        dependencies = {
            dependency.logical_id if isinstance(dependency, ResourceNode) else dependency
            for dependency in depends_on or ()
        }
        node = ResourceNode(
            logical_id=logical_id,
            kind=ResourceKind.parse(kind),
            properties=dict(properties or {}),
            depends_on=dependencies,
        )
        self.nodes[logical_id] = node
        return node

    def add_output(self, key: str, value: Any, description: Optional[str] = None) -> StackOutput:
        if key in self.outputs:
            raise DuplicateIdError(f"Outputs.{key}", self.stack_name)
        output = StackOutput(key=key, value=value, description=description)
        self.outputs[key] = output
        return output

    def get(self, logical_id: str) -> ResourceNode:
        return self.nodes[logical_id]

    def build(self) -> DependencyGraph:
        return dependency_graph.build(self.nodes)

    def synthesize(self) -> Document:
        return synthesize(self.build(), self.config, self.outputs.values())

    def plan(self, previous: Optional[StackState] = None) -> Plan:
        return planner.plan(self.synthesize(), previous)
