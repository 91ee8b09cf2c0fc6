"""
Symbolic values that can appear in resource properties, and the tagged result of resolving them.

Declared properties may contain:

- ``Reference``: an attribute of another resource node (``Ref`` / ``Fn::GetAtt``)
- ``StackValue``: a field of the explicit stack configuration (``Ref: Stack::Stage``)
- ``Join``: a string concatenation of literals and any of the above (``Fn::Join``)

Resolution turns a reference into either a ``ResolvedValue`` (known before apply) or a ``DeferredToken``
(only known once the producer has been applied). Documents serialize both references and tokens in the
``Ref`` / ``Fn::GetAtt`` form.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Union

REF = "Ref"
GET_ATT = "Fn::GetAtt"
JOIN = "Fn::Join"

# attribute name a plain ``Ref`` resolves to
PHYSICAL_RESOURCE_ID = "PhysicalResourceId"

STACK_VALUE_PREFIX = "Stack::"
STACK_VALUE_NAMES = ("Name", "Stage", "Region", "Account")


@dataclass(frozen=True)
class Reference:
    source_node_id: str
    attribute_name: str = PHYSICAL_RESOURCE_ID

    def __str__(self):
        return f"{self.source_node_id}.{self.attribute_name}"

    def serialize(self) -> dict:
        return _serialize_attribute_ref(self.source_node_id, self.attribute_name)


@dataclass(frozen=True)
class StackValue:
    name: str

    def __post_init__(self):
        if self.name not in STACK_VALUE_NAMES:
            raise ValueError(
                f"Unknown stack value {self.name!r}, expected one of {', '.join(STACK_VALUE_NAMES)}"
            )

    def serialize(self) -> dict:
        return {REF: f"{STACK_VALUE_PREFIX}{self.name}"}


@dataclass(frozen=True)
class Join:
    delimiter: str
    values: tuple

    def __post_init__(self):
        object.__setattr__(self, "values", tuple(self.values))

    def serialize(self) -> dict:
        return {JOIN: [self.delimiter, [serialize_value(value) for value in self.values]]}


def join_part(value: Any) -> str:
    """Renders a resolved join part. Booleans are rendered lowercase, as in JSON."""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


@dataclass(frozen=True)
class ResolvedValue:
    value: Any


@dataclass(frozen=True)
class DeferredToken:
    """Placeholder for an attribute that only the provider knows, e.g. an endpoint assigned at runtime."""

    source_node_id: str
    attribute_name: str = PHYSICAL_RESOURCE_ID

    def __str__(self):
        return f"{self.source_node_id}.{self.attribute_name}"

    def serialize(self) -> dict:
        return _serialize_attribute_ref(self.source_node_id, self.attribute_name)


Resolution = Union[ResolvedValue, DeferredToken]


def _serialize_attribute_ref(logical_id: str, attribute_name: str) -> dict:
    if attribute_name == PHYSICAL_RESOURCE_ID:
        return {REF: logical_id}
    return {GET_ATT: [logical_id, attribute_name]}


def ref(logical_id: str) -> Reference:
    return Reference(logical_id, PHYSICAL_RESOURCE_ID)


def get_att(logical_id: str, attribute_name: str) -> Reference:
    return Reference(logical_id, attribute_name)


def stack_value(name: str) -> StackValue:
    return StackValue(name)


def join(delimiter: str, *values) -> Join:
    return Join(delimiter, values)


def iter_references(value: Any) -> Iterator[Reference]:
    """Yields every ``Reference`` contained in the given (possibly nested) property value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Join):
        for item in value.values:
            yield from iter_references(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def iter_tokens(value: Any) -> Iterator[DeferredToken]:
    """Yields every ``DeferredToken`` contained in the given (possibly nested) value."""
    if isinstance(value, DeferredToken):
        yield value
    elif isinstance(value, Join):
        for item in value.values:
            yield from iter_tokens(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_tokens(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_tokens(item)


def contains_deferred(value: Any) -> bool:
    return next(iter_tokens(value), None) is not None


def serialize_value(value: Any) -> Any:
    """Converts a property value into its JSON-compatible document form."""
    if isinstance(value, (Reference, DeferredToken, StackValue, Join)):
        return value.serialize()
    if isinstance(value, ResolvedValue):
        return serialize_value(value.value)
    if isinstance(value, dict):
        return {key: serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def parse_value(value: Any, deferred: bool = False) -> Any:
    """
    Converts the document/template form of intrinsics back into objects.

    :param value: the raw (JSON/YAML) value
    :param deferred: if set, ``Ref`` / ``Fn::GetAtt`` become ``DeferredToken``s (as found in synthesized
        documents), otherwise ``Reference``s (as found in templates)
    :return: the value with all intrinsics replaced
    :raises ValueError: if an intrinsic is malformed
    """
    if isinstance(value, list):
        return [parse_value(item, deferred) for item in value]
    if not isinstance(value, dict):
        return value

    if len(value) == 1 and REF in value:
        target = value[REF]
        if not isinstance(target, str) or not target:
            raise ValueError(f"Invalid {REF} target: {target!r}")
        if target.startswith(STACK_VALUE_PREFIX):
            return StackValue(target[len(STACK_VALUE_PREFIX) :])
        return DeferredToken(target) if deferred else Reference(target)

    if len(value) == 1 and GET_ATT in value:
        target = value[GET_ATT]
        if isinstance(target, str) and "." in target:
            target = target.split(".", 1)
        if (
            not isinstance(target, list)
            or len(target) != 2
            or not all(isinstance(part, str) and part for part in target)
        ):
            raise ValueError(f"Invalid {GET_ATT} target: {target!r}")
        logical_id, attribute_name = target
        if deferred:
            return DeferredToken(logical_id, attribute_name)
        return Reference(logical_id, attribute_name)

    if len(value) == 1 and JOIN in value:
        args = value[JOIN]
        if (
            not isinstance(args, list)
            or len(args) != 2
            or not isinstance(args[0], str)
            or not isinstance(args[1], list)
        ):
            raise ValueError(f"Invalid {JOIN} arguments: {args!r}")
        return Join(args[0], [parse_value(item, deferred) for item in args[1]])

    return {key: parse_value(item, deferred) for key, item in value.items()}
