"""
Synthesis of a dependency graph into a plan document: one entry per resource in dependency order, with all
references rewritten to literals or deferred tokens.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from stacksmith.constants import DOCUMENT_FORMAT_VERSION, SYSTEM_TAG_PREFIX
from stacksmith.engine.entities import ResourceKind, StackConfig, StackOutput
from stacksmith.engine.graph import DependencyGraph
from stacksmith.engine.intrinsics import parse_value, serialize_value
from stacksmith.engine.resolver import ReferenceResolver
from stacksmith.utils.json import CustomEncoder

LOG = logging.getLogger(__name__)

UNRESTRICTED_CIDRS = {"CidrIp": "0.0.0.0/0", "CidrIpv6": "::/0"}


def system_tags(config: StackConfig, logical_id: str) -> dict[str, str]:
    return {
        f"{SYSTEM_TAG_PREFIX}stack-name": config.stack_name,
        f"{SYSTEM_TAG_PREFIX}logical-id": logical_id,
    }


@dataclass
class DocumentResource:
    logical_id: str
    kind: ResourceKind
    properties: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)

    def serialize(self) -> dict:
        return {
            "LogicalResourceId": self.logical_id,
            "Type": self.kind.value,
            "Properties": serialize_value(self.properties),
            "DependsOn": list(self.dependencies),
            "Tags": dict(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentResource":
        return cls(
            logical_id=data["LogicalResourceId"],
            kind=ResourceKind.parse(data["Type"]),
            properties=parse_value(data.get("Properties") or {}, deferred=True),
            dependencies=sorted(data.get("DependsOn") or []),
            tags=dict(data.get("Tags") or {}),
        )


@dataclass
class DocumentOutput:
    key: str
    value: Any
    description: Optional[str] = None

    def serialize(self) -> dict:
        result = {"Value": serialize_value(self.value)}
        if self.description:
            result["Description"] = self.description
        return result


@dataclass
class Document:
    """The synthesized, versioned plan document of a stack."""

    stack_name: str
    stage: str
    region: str
    account: str
    resources: list[DocumentResource] = field(default_factory=list)
    outputs: dict[str, DocumentOutput] = field(default_factory=dict)
    format_version: str = DOCUMENT_FORMAT_VERSION

    def get(self, logical_id: str) -> Optional[DocumentResource]:
        for resource in self.resources:
            if resource.logical_id == logical_id:
                return resource
        return None

    @property
    def logical_ids(self) -> list[str]:
        return [resource.logical_id for resource in self.resources]

    def serialize(self) -> dict:
        return {
            "FormatVersion": self.format_version,
            "StackName": self.stack_name,
            "Stage": self.stage,
            "Region": self.region,
            "Account": self.account,
            "Resources": [resource.serialize() for resource in self.resources],
            "Outputs": {key: output.serialize() for key, output in self.outputs.items()},
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.serialize(), indent=indent, cls=CustomEncoder)

    @classmethod
    def from_dict(cls, data: dict) -> "Document":
        """Loads a serialized document. Fields this version does not know are ignored."""
        outputs = {}
        for key, output in (data.get("Outputs") or {}).items():
            outputs[key] = DocumentOutput(
                key=key,
                value=parse_value(output.get("Value"), deferred=True),
                description=output.get("Description"),
            )
        return cls(
            stack_name=data["StackName"],
            stage=data.get("Stage", ""),
            region=data.get("Region", ""),
            account=data.get("Account", ""),
            resources=[DocumentResource.from_dict(item) for item in data.get("Resources") or []],
            outputs=outputs,
            format_version=data.get("FormatVersion", DOCUMENT_FORMAT_VERSION),
        )

    @classmethod
    def from_json(cls, text: str) -> "Document":
        return cls.from_dict(json.loads(text))


def synthesize(
    graph: DependencyGraph, config: StackConfig, outputs: Optional[Iterable[StackOutput]] = None
) -> Document:
    """
    Emits the plan document of the given graph. Resources appear in topological order, references are
    resolved to literals where possible and to ``DeferredToken``s otherwise. Synthesis is pure: the same graph
    and config always yield an identical document.
    """
    resolver = ReferenceResolver(graph.nodes, config)
    document = Document(
        stack_name=config.stack_name,
        stage=config.stage,
        region=config.region,
        account=config.account,
    )

    for node in graph:
        properties = {
            name: resolver.resolve_value(value, context=f"{node.logical_id}.{name}")
            for name, value in node.properties.items()
        }
        tags = {**config.tags, **system_tags(config, node.logical_id)}
        document.resources.append(
            DocumentResource(
                logical_id=node.logical_id,
                kind=node.kind,
                properties=properties,
                dependencies=graph.dependencies(node.logical_id),
                tags=tags,
            )
        )

    for output in outputs or ():
        document.outputs[output.key] = DocumentOutput(
            key=output.key,
            value=resolver.resolve_value(output.value, context=f"Outputs.{output.key}"),
            description=output.description,
        )

    for warning in find_unrestricted_rules(document):
        LOG.warning("Review required: %s", warning)

    return document


def find_unrestricted_rules(document: Document) -> list[str]:
    """
    Lists security group rules that are open to any address (``0.0.0.0/0`` or ``::/0``). These rules are kept
    in the document as declared, but need an explicit review before being applied to a real environment.
    """
    findings = []
    for resource in document.resources:
        if resource.kind != ResourceKind.SECURITY_GROUP:
            continue
        for direction in ("SecurityGroupIngress", "SecurityGroupEgress"):
            for rule in resource.properties.get(direction) or []:
                if not isinstance(rule, dict):
                    continue
                for key, cidr in UNRESTRICTED_CIDRS.items():
                    if rule.get(key) == cidr:
                        findings.append(
                            f"{resource.logical_id}: {direction} rule "
                            f"({_describe_rule(rule)}) is open to {cidr}"
                        )
    return findings


def _describe_rule(rule: dict) -> str:
    protocol = rule.get("IpProtocol", "-1")
    if protocol in ("-1", -1):
        return "all traffic"
    from_port, to_port = rule.get("FromPort"), rule.get("ToPort")
    if from_port == to_port:
        return f"{protocol}/{from_port}"
    return f"{protocol}/{from_port}-{to_port}"
