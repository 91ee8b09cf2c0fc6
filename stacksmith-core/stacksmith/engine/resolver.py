"""
Static resolution of references between resource nodes.

A reference is resolved statically when the referenced attribute is a property the producer declares (for a
plain ``Ref``: the property holding the producer's physical id, e.g. ``RoleName``), and that property value is
itself known before apply. Everything else, e.g. an endpoint address assigned by the provider, becomes a
``DeferredToken`` which is resolved by the executor once the producer has been applied.
"""

import logging
from typing import Any, Mapping, Optional, Sequence

from stacksmith.engine.entities import ResourceNode, StackConfig
from stacksmith.engine.exceptions import CyclicDependencyError, UnresolvableReferenceError
from stacksmith.engine.intrinsics import (
    PHYSICAL_RESOURCE_ID,
    DeferredToken,
    Join,
    Reference,
    Resolution,
    ResolvedValue,
    StackValue,
    contains_deferred,
    join_part,
)
from stacksmith.engine.schemas import get_resource_schema, primary_identifier_property

LOG = logging.getLogger(__name__)


class ReferenceResolver:
    """
    Resolves references against a set of declared nodes. Results are memoized, so resolving the same reference
    repeatedly returns the identical ``ResolvedValue`` / ``DeferredToken`` object.
    """

    def __init__(self, nodes: Mapping[str, ResourceNode], config: StackConfig):
        self.nodes = nodes
        self.config = config
        self._resolved: dict[Reference, Resolution] = {}
        self._in_progress: list[Reference] = []

    def resolve(self, reference: Reference, chain: Sequence[str] = ()) -> Resolution:
        """
        Resolves a single reference.

        :param reference: the reference to resolve
        :param chain: the references (or property paths) being resolved when this reference was hit, used as
            context in errors
        :return: a ``ResolvedValue`` if the value is known statically, a ``DeferredToken`` otherwise
        :raises UnresolvableReferenceError: if the producer node is not declared
        :raises CyclicDependencyError: if resolving the reference leads back to itself
        """
        if reference in self._resolved:
            return self._resolved[reference]

        chain = [*chain, str(reference)]
        producer = self.nodes.get(reference.source_node_id)
        if producer is None:
            raise UnresolvableReferenceError(
                reference.source_node_id, reference.attribute_name, chain
            )

        if reference in self._in_progress:
            loop = self._in_progress[self._in_progress.index(reference) :]
            raise CyclicDependencyError(_dedupe_consecutive([ref.source_node_id for ref in loop]))

        property_name = self._static_property_name(producer, reference.attribute_name)
        if property_name is None or property_name not in producer.properties:
            result = DeferredToken(reference.source_node_id, reference.attribute_name)
        else:
            self._in_progress.append(reference)
            try:
                value = self._resolve_value(producer.properties[property_name], chain)
            finally:
                self._in_progress.pop()
            if contains_deferred(value):
                result = DeferredToken(reference.source_node_id, reference.attribute_name)
            else:
                result = ResolvedValue(value)

        LOG.debug("Resolved %s to %s", reference, result)
        self._resolved[reference] = result
        return result

    def resolve_value(self, value: Any, context: Optional[str] = None) -> Any:
        """
        Rewrites a (possibly nested) property value: references become literals or ``DeferredToken``s, stack
        values become literals and joins are collapsed to strings where all their parts are known.

        :param value: the declared property value
        :param context: the property path the value belongs to (e.g. ``Service.Environment``), for errors
        """
        return self._resolve_value(value, [context] if context else [])

    def _resolve_value(self, value: Any, chain: list[str]) -> Any:
        if isinstance(value, Reference):
            resolution = self.resolve(value, chain)
            if isinstance(resolution, ResolvedValue):
                return resolution.value
            return resolution
        if isinstance(value, StackValue):
            return self.config.stack_value(value.name)
        if isinstance(value, Join):
            parts = [self._resolve_value(part, chain) for part in value.values]
            if any(contains_deferred(part) for part in parts):
                return Join(value.delimiter, parts)
            return value.delimiter.join(join_part(part) for part in parts)
        if isinstance(value, dict):
            return {key: self._resolve_value(item, chain) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve_value(item, chain) for item in value]
        return value

    @staticmethod
    def _static_property_name(producer: ResourceNode, attribute_name: str) -> Optional[str]:
        if attribute_name == PHYSICAL_RESOURCE_ID:
            return primary_identifier_property(get_resource_schema(producer.kind))
        return attribute_name


def _dedupe_consecutive(ids: list[str]) -> list[str]:
    result = []
    for logical_id in ids:
        if not result or result[-1] != logical_id:
            result.append(logical_id)
    if len(result) > 1 and result[0] == result[-1]:
        result.pop()
    return result
