"""
Diff of a synthesized document against the recorded stack state, producing the ordered change set an executor
applies.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import semver

from stacksmith.engine.graph import topological_order
from stacksmith.engine.intrinsics import DeferredToken, Join, join_part, serialize_value
from stacksmith.engine.schemas import get_resource_schema, schema_property_names
from stacksmith.engine.state import ResourceState, StackState
from stacksmith.engine.synthesizer import Document, DocumentResource
from stacksmith.utils.json import CustomEncoder, canonical_json

LOG = logging.getLogger(__name__)

TAGS_ATTRIBUTE = "Tags"


class ChangeAction(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"
    NOOP = "NoOp"


@dataclass
class ResourceChange:
    """A planned action on one resource. ``properties`` are the properties to apply (may contain tokens),
    ``previous`` is the recorded state of the resource, if any."""

    logical_id: str
    kind: str
    action: ChangeAction
    reason: str = ""
    changed_attributes: list[str] = field(default_factory=list)
    properties: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    previous: Optional[ResourceState] = None

    def attribute_changes(self) -> list[tuple[str, Any, Any]]:
        """Returns ``(name, before, after)`` for each changed attribute, in document form."""
        before_properties = self.previous.properties if self.previous else {}
        before_tags = self.previous.tags if self.previous else {}
        result = []
        for name in self.changed_attributes:
            if name == TAGS_ATTRIBUTE and name not in self.properties:
                result.append((name, before_tags, self.tags))
                continue
            result.append(
                (
                    name,
                    before_properties.get(name),
                    serialize_value(self.properties.get(name)),
                )
            )
        return result

    def serialize(self) -> dict:
        return {
            "LogicalResourceId": self.logical_id,
            "ResourceType": self.kind,
            "Action": self.action.value,
            "Reason": self.reason,
            "ChangedAttributes": list(self.changed_attributes),
            "Dependencies": list(self.dependencies),
        }


@dataclass
class Plan:
    """Ordered change set of a stack. Deletes always come after all other changes.

    ``serial`` is the serial of the state the plan was computed against. A plan is only applied to that state.
    """

    stack_name: str
    changes: list[ResourceChange] = field(default_factory=list)
    document: Optional[Document] = None
    serial: Optional[int] = None

    def __iter__(self):
        return iter(self.changes)

    def get(self, logical_id: str) -> Optional[ResourceChange]:
        for change in self.changes:
            if change.logical_id == logical_id:
                return change
        return None

    def by_action(self, action: ChangeAction) -> list[ResourceChange]:
        return [change for change in self.changes if change.action == action]

    @property
    def has_changes(self) -> bool:
        return any(change.action != ChangeAction.NOOP for change in self.changes)

    def summary(self) -> dict[str, int]:
        result = {action.value: 0 for action in ChangeAction}
        for change in self.changes:
            result[change.action.value] += 1
        return result

    def serialize(self) -> dict:
        return {
            "StackName": self.stack_name,
            "Serial": self.serial,
            "Changes": [change.serialize() for change in self.changes],
            "Summary": self.summary(),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.serialize(), indent=indent, cls=CustomEncoder)


class _UnknownValue:
    """A token whose producer is (re)created by the same plan."""


_UNKNOWN = _UnknownValue()


def plan(current: Document, previous: Optional[StackState]) -> Plan:
    """
    Computes the change set that moves the recorded state ``previous`` to the synthesized document
    ``current``.
    """
    previous = previous or StackState(stack_name=current.stack_name)
    result = Plan(stack_name=current.stack_name, document=current, serial=previous.serial)
    recreated: set[str] = set()

    # document resources are in dependency order, so producers are always decided before their consumers
    for resource in current.resources:
        recorded = previous.get(resource.logical_id)
        change = _diff_resource(resource, recorded, previous, recreated)
        if change.action in (ChangeAction.CREATE, ChangeAction.REPLACE):
            recreated.add(resource.logical_id)
        result.changes.append(change)

    removed = [logical_id for logical_id in previous.resources if current.get(logical_id) is None]
    result.changes.extend(_delete_changes(previous, removed))

    LOG.debug("Plan for stack %s: %s", current.stack_name, result.summary())
    return result


def plan_destroy(previous: StackState) -> Plan:
    """Computes a change set deleting every resource recorded in ``previous``."""
    result = Plan(stack_name=previous.stack_name, serial=previous.serial)
    result.changes.extend(_delete_changes(previous, list(previous.resources)))
    return result


def _diff_resource(
    resource: DocumentResource,
    recorded: Optional[ResourceState],
    previous: StackState,
    recreated: set[str],
) -> ResourceChange:
    change = ResourceChange(
        logical_id=resource.logical_id,
        kind=resource.kind.value,
        action=ChangeAction.CREATE,
        properties=resource.properties,
        dependencies=list(resource.dependencies),
        tags=dict(resource.tags),
        previous=recorded,
    )
    if recorded is None:
        change.reason = "resource is new"
        return change

    changed = []
    for name in sorted(set(resource.properties) | set(recorded.properties)):
        if name not in resource.properties or name not in recorded.properties:
            changed.append(name)
            continue
        value = _substitute_tokens(resource.properties[name], previous, recreated)
        if _contains_unknown(value) or canonical_json(value) != canonical_json(
            recorded.properties[name]
        ):
            changed.append(name)
    if resource.tags != recorded.tags and TAGS_ATTRIBUTE not in changed:
        changed.append(TAGS_ATTRIBUTE)
    change.changed_attributes = sorted(changed)

    if recorded.type != resource.kind.value:
        change.action = ChangeAction.REPLACE
        change.reason = f"resource type changed from {recorded.type} to {resource.kind.value}"
        return change

    if not changed:
        change.action = ChangeAction.NOOP
        change.reason = "no changes"
        return change

    if replace_reason := _replacement_reason(resource, recorded, change.changed_attributes):
        change.action = ChangeAction.REPLACE
        change.reason = replace_reason
    else:
        change.action = ChangeAction.UPDATE
        change.reason = f"properties changed: {', '.join(change.changed_attributes)}"
    return change


def _replacement_reason(
    resource: DocumentResource, recorded: ResourceState, changed: list[str]
) -> Optional[str]:
    schema = get_resource_schema(resource.kind)

    create_only_properties = schema_property_names(schema, "createOnlyProperties")
    if create_only := [name for name in changed if name in create_only_properties]:
        return f"immutable properties changed: {', '.join(create_only)}"

    for name in sorted(schema_property_names(schema, "versionProperties")):
        if name not in changed:
            continue
        new_version = resource.properties.get(name)
        old_version = recorded.properties.get(name)
        if is_downgrade(old_version, new_version):
            return f"{name} downgraded from {old_version} to {new_version}"
    return None


def is_downgrade(old_version: Any, new_version: Any) -> bool:
    """Whether ``new_version`` is a lower semantic version than ``old_version`` (e.g. ``14.7`` -> ``13.4``)."""
    if not isinstance(old_version, str) or not isinstance(new_version, str):
        return False
    try:
        old = semver.Version.parse(old_version, optional_minor_and_patch=True)
        new = semver.Version.parse(new_version, optional_minor_and_patch=True)
    except ValueError:
        LOG.debug("Unable to compare versions %s and %s", old_version, new_version)
        return False
    return new < old


def _substitute_tokens(value: Any, previous: StackState, recreated: set[str]) -> Any:
    """Replaces tokens by the values recorded in the previous state. Tokens of producers that are created or
    replaced by the same plan become unknown."""
    if isinstance(value, DeferredToken):
        producer = previous.get(value.source_node_id)
        if producer is None or value.source_node_id in recreated:
            return _UNKNOWN
        try:
            return producer.get_attribute(value.attribute_name)
        except KeyError:
            return _UNKNOWN
    if isinstance(value, Join):
        parts = [_substitute_tokens(part, previous, recreated) for part in value.values]
        if any(part is _UNKNOWN for part in parts):
            return _UNKNOWN
        return value.delimiter.join(join_part(part) for part in parts)
    if isinstance(value, dict):
        return {key: _substitute_tokens(item, previous, recreated) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_substitute_tokens(item, previous, recreated) for item in value]
    return value


def _contains_unknown(value: Any) -> bool:
    if value is _UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(_contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(_contains_unknown(item) for item in value)
    return False


def _delete_changes(previous: StackState, removed: list[str]) -> list[ResourceChange]:
    """Delete changes for the given recorded resources, every dependent before the resources it depends on."""
    removed_ids = set(removed)
    # edges point from a resource to its dependents, so dependents are ordered first
    dependents = {logical_id: set() for logical_id in removed_ids}
    for logical_id in removed_ids:
        for dependency in previous.resources[logical_id].dependencies:
            if dependency in removed_ids:
                dependents[dependency].add(logical_id)

    changes = []
    for logical_id in topological_order(dependents):
        recorded = previous.resources[logical_id]
        changes.append(
            ResourceChange(
                logical_id=logical_id,
                kind=recorded.type,
                action=ChangeAction.DELETE,
                reason="resource was removed from the stack",
                dependencies=list(recorded.dependencies),
                tags=dict(recorded.tags),
                previous=recorded,
            )
        )
    return changes
