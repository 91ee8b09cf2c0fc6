from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union

from stacksmith import config as smith_config
from stacksmith.engine.intrinsics import Reference, iter_references

LOGICAL_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class ResourceKind(str, Enum):
    NETWORK = "Network"
    SUBNET = "Subnet"
    SECURITY_GROUP = "SecurityGroup"
    SECRET = "Secret"
    DATABASE = "Database"
    ROLE = "Role"
    CLUSTER = "Cluster"
    TASK_DEFINITION = "TaskDefinition"
    SERVICE = "Service"
    LOAD_BALANCER = "LoadBalancer"
    LISTENER = "Listener"
    TARGET_GROUP = "TargetGroup"

    @classmethod
    def parse(cls, value: Union[str, "ResourceKind"]) -> "ResourceKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown resource kind {value!r}, expected one of {', '.join(k.value for k in cls)}"
            ) from None


def validate_logical_id(logical_id: str) -> str:
    if not isinstance(logical_id, str) or not LOGICAL_ID_PATTERN.match(logical_id):
        raise ValueError(
            f"Invalid logical id {logical_id!r}: must be alphanumeric, may contain '-' and '_'"
        )
    return logical_id


@dataclass
class ResourceNode:
    """A typed, addressable declaration of one infrastructure object. ``kind`` and ``logical_id`` cannot be
    changed once the node is created."""

    logical_id: str
    kind: ResourceKind
    properties: dict = field(default_factory=dict)
    depends_on: set = field(default_factory=set)

    def __setattr__(self, name: str, value: Any):
        if name in ("logical_id", "kind") and name in self.__dict__:
            raise AttributeError(f"{name} of resource {self.logical_id} cannot be changed")
        super().__setattr__(name, value)

    def references(self) -> list[Reference]:
        return list(iter_references(self.properties))

    def dependencies(self) -> set[str]:
        """Logical ids of all producers of this node, from references and explicit ``depends_on``."""
        return {reference.source_node_id for reference in self.references()} | set(self.depends_on)


@dataclass(frozen=True)
class StackConfig:
    """
    Naming and tagging context of a stack (account, region, stage, tags). It is handed explicitly to the
    stack and to every synthesis pass.
    """

    stack_name: str
    stage: str = smith_config.STAGE
    region: str = smith_config.REGION
    account: str = smith_config.ACCOUNT
    tags: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if not self.stack_name or not LOGICAL_ID_PATTERN.match(self.stack_name):
            raise ValueError(f"Invalid stack name {self.stack_name!r}")
        object.__setattr__(self, "tags", dict(self.tags or {}))

    @classmethod
    def from_config(cls, stack_name: str, **overrides) -> "StackConfig":
        """Creates a config with the defaults currently set in ``stacksmith.config``, ignoring ``None``
        overrides."""
        values = {
            "stage": smith_config.STAGE,
            "region": smith_config.REGION,
            "account": smith_config.ACCOUNT,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(stack_name=stack_name, **values)

    def qualified_name(self, purpose: str) -> str:
        return f"{self.stack_name}-{purpose}-{self.stage}"

    def stack_value(self, name: str) -> str:
        return {
            "Name": self.stack_name,
            "Stage": self.stage,
            "Region": self.region,
            "Account": self.account,
        }[name]


@dataclass
class StackOutput:
    key: str
    value: Any
    description: Optional[str] = None
