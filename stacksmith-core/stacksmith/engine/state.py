"""
Persisted state of applied stacks and the stores holding it.

A store keeps one ``StackState`` per stack. Writers must hold the stack's single-writer lock (``store.lock``)
while they load, modify and save the state of a stack.
"""

import abc
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout

from stacksmith import config
from stacksmith.constants import STATE_FORMAT_VERSION
from stacksmith.engine.exceptions import StateLockError
from stacksmith.engine.intrinsics import PHYSICAL_RESOURCE_ID
from stacksmith.utils.json import FileMappedDocument, json_safe

LOG = logging.getLogger(__name__)

STATE_FILE_SUFFIX = ".state.json"
LOCK_FILE_SUFFIX = ".state.lock"


@dataclass
class ResourceState:
    """The recorded outcome of applying one resource node."""

    logical_id: str
    type: str
    physical_resource_id: Optional[str] = None
    properties: dict = field(default_factory=dict)
    attributes: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)

    def get_attribute(self, attribute_name: str) -> Any:
        """
        Looks up an attribute of the applied resource: provider-assigned attributes first, then the applied
        properties. Dotted names (``Endpoint.Address``) are looked up as nested keys as well.

        :raises KeyError: if the resource has no such attribute
        """
        if attribute_name == PHYSICAL_RESOURCE_ID and self.physical_resource_id is not None:
            return self.physical_resource_id
        for source in (self.attributes, self.properties):
            if attribute_name in source:
                return source[attribute_name]
            value = _lookup_path(source, attribute_name)
            if value is not _MISSING:
                return value
        raise KeyError(attribute_name)

    def serialize(self) -> dict:
        return {
            "Type": self.type,
            "PhysicalResourceId": self.physical_resource_id,
            "Properties": self.properties,
            "Attributes": self.attributes,
            "Dependencies": list(self.dependencies),
            "Tags": self.tags,
        }

    @classmethod
    def from_dict(cls, logical_id: str, data: dict) -> "ResourceState":
        return cls(
            logical_id=logical_id,
            type=data.get("Type", ""),
            physical_resource_id=data.get("PhysicalResourceId"),
            properties=dict(data.get("Properties") or {}),
            attributes=dict(data.get("Attributes") or {}),
            dependencies=list(data.get("Dependencies") or []),
            tags=dict(data.get("Tags") or {}),
        )


_MISSING = object()


def _lookup_path(source: dict, path: str) -> Any:
    current = source
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


@dataclass
class StackState:
    """
    The state of a stack as of its last apply. ``resources`` keeps the order in which the resources were
    recorded. Serialized states can carry fields unknown to this version; they are ignored when loading.
    """

    stack_name: str
    resources: dict[str, ResourceState] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    serial: int = 0
    last_applied: Optional[str] = None
    format_version: int = STATE_FORMAT_VERSION

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self.resources

    def get(self, logical_id: str) -> Optional[ResourceState]:
        return self.resources.get(logical_id)

    def is_empty(self) -> bool:
        return not self.resources

    def set_resource(self, resource: ResourceState):
        self.resources[resource.logical_id] = resource

    def remove_resource(self, logical_id: str) -> Optional[ResourceState]:
        return self.resources.pop(logical_id, None)

    def mark_applied(self):
        self.serial += 1
        self.last_applied = datetime.now(tz=timezone.utc).isoformat()

    def serialize(self) -> dict:
        return {
            "FormatVersion": self.format_version,
            "StackName": self.stack_name,
            "Serial": self.serial,
            "LastApplied": self.last_applied,
            "Resources": {
                logical_id: resource.serialize() for logical_id, resource in self.resources.items()
            },
            "Outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict, stack_name: Optional[str] = None) -> "StackState":
        resources = {
            logical_id: ResourceState.from_dict(logical_id, item)
            for logical_id, item in (data.get("Resources") or {}).items()
        }
        return cls(
            stack_name=data.get("StackName") or stack_name,
            resources=resources,
            outputs=dict(data.get("Outputs") or {}),
            serial=int(data.get("Serial") or 0),
            last_applied=data.get("LastApplied"),
            format_version=data.get("FormatVersion", STATE_FORMAT_VERSION),
        )


class StateStore(abc.ABC):
    """Loads and saves stack states. ``lock`` provides the single-writer lock of a stack."""

    def __init__(self, lock_timeout: Optional[float] = None):
        self.lock_timeout = config.STATE_LOCK_TIMEOUT if lock_timeout is None else lock_timeout
        self._locks: dict[str, threading.RLock] = {}
        self._locks_mutex = threading.Lock()

    @abc.abstractmethod
    def load(self, stack_name: str) -> StackState:
        """Returns the state of the given stack, or an empty state if the stack was never applied."""
        raise NotImplementedError

    @abc.abstractmethod
    def save(self, state: StackState):
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, stack_name: str):
        raise NotImplementedError

    @abc.abstractmethod
    def list_stacks(self) -> list[str]:
        raise NotImplementedError

    def _get_local_lock(self, stack_name: str) -> threading.RLock:
        with self._locks_mutex:
            if stack_name not in self._locks:
                self._locks[stack_name] = threading.RLock()
            return self._locks[stack_name]

    @contextmanager
    def lock(self, stack_name: str) -> Iterator[None]:
        """
        Holds the single-writer lock of the given stack. The lock is re-entrant for the current thread.

        :raises StateLockError: if the lock could not be acquired within the lock timeout
        """
        local_lock = self._get_local_lock(stack_name)
        timeout = self.lock_timeout if self.lock_timeout >= 0 else -1
        if not local_lock.acquire(timeout=timeout):
            raise StateLockError(stack_name, self.lock_timeout)
        try:
            with self._acquire_external_lock(stack_name):
                yield
        finally:
            local_lock.release()

    @contextmanager
    def _acquire_external_lock(self, stack_name: str) -> Iterator[None]:
        """Hook for stores that share state with other processes."""
        yield


class InMemoryStateStore(StateStore):
    """Keeps stack states in memory, e.g. for tests or when embedding the engine."""

    def __init__(self, lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        self._states: dict[str, dict] = {}

    def load(self, stack_name: str) -> StackState:
        data = self._states.get(stack_name)
        if data is None:
            return StackState(stack_name=stack_name)
        return StackState.from_dict(json_safe(data), stack_name=stack_name)

    def save(self, state: StackState):
        self._states[state.stack_name] = json_safe(state.serialize())

    def delete(self, stack_name: str):
        self._states.pop(stack_name, None)

    def list_stacks(self) -> list[str]:
        return sorted(self._states)


class FileStateStore(StateStore):
    """
    Keeps one JSON document per stack (``<directory>/<stack>.state.json``). The single-writer lock is shared
    with other processes through a lock file next to the state file.
    """

    def __init__(self, directory: Optional[str] = None, lock_timeout: Optional[float] = None):
        super().__init__(lock_timeout)
        self.directory = directory or config.STATE_DIR
        self._file_locks: dict[str, FileLock] = {}

    def state_file(self, stack_name: str) -> str:
        return os.path.join(self.directory, f"{stack_name}{STATE_FILE_SUFFIX}")

    def lock_file(self, stack_name: str) -> str:
        return os.path.join(self.directory, f"{stack_name}{LOCK_FILE_SUFFIX}")

    def load(self, stack_name: str) -> StackState:
        document = FileMappedDocument(self.state_file(stack_name))
        if not document:
            return StackState(stack_name=stack_name)
        state = StackState.from_dict(document, stack_name=stack_name)
        if state.format_version > STATE_FORMAT_VERSION:
            LOG.info(
                "State of stack %s was written by a newer version (format %s), unknown fields are ignored",
                stack_name,
                state.format_version,
            )
        return state

    def save(self, state: StackState):
        document = FileMappedDocument(self.state_file(state.stack_name))
        document.clear()
        document.update(state.serialize())
        document.save()
        LOG.debug("Saved state of stack %s (serial %s)", state.stack_name, state.serial)

    def delete(self, stack_name: str):
        FileMappedDocument(self.state_file(stack_name)).delete()

    def list_stacks(self) -> list[str]:
        if not os.path.isdir(self.directory):
            return []
        return sorted(
            name[: -len(STATE_FILE_SUFFIX)]
            for name in os.listdir(self.directory)
            if name.endswith(STATE_FILE_SUFFIX)
        )

    @contextmanager
    def _acquire_external_lock(self, stack_name: str) -> Iterator[None]:
        file_lock = self._file_locks.get(stack_name)
        if file_lock is None:
            os.makedirs(self.directory, exist_ok=True)
            file_lock = FileLock(self.lock_file(stack_name), timeout=self.lock_timeout)
            self._file_locks[stack_name] = file_lock
        try:
            file_lock.acquire()
        except Timeout:
            raise StateLockError(stack_name, self.lock_timeout) from None
        try:
            yield
        finally:
            file_lock.release()
