"""
Resource type schemas. Only the metadata the engine needs is described here, in the style of CloudFormation
resource schemas (JSON pointers into the resource properties):

- ``primaryIdentifier``: property holding the physical id (what a plain ``Ref`` returns)
- ``createOnlyProperties``: properties that cannot be changed in place, changing them replaces the resource
- ``readOnlyProperties``: attributes assigned by the provider
- ``versionProperties``: version strings; a downgrade replaces the resource, an upgrade updates it in place
"""

from typing import Optional

from stacksmith.engine.entities import ResourceKind

PROPERTIES_PREFIX = "/properties/"

RESOURCE_SCHEMAS: dict[ResourceKind, dict] = {
    ResourceKind.NETWORK: {
        "typeName": "Network",
        "primaryIdentifier": ["/properties/VpcId"],
        "createOnlyProperties": ["/properties/CidrBlock", "/properties/MaxAzs"],
        "readOnlyProperties": ["/properties/VpcId", "/properties/DefaultSecurityGroup"],
    },
    ResourceKind.SUBNET: {
        "typeName": "Subnet",
        "primaryIdentifier": ["/properties/SubnetId"],
        "createOnlyProperties": [
            "/properties/VpcId",
            "/properties/CidrBlock",
            "/properties/AvailabilityZone",
        ],
        "readOnlyProperties": ["/properties/SubnetId"],
    },
    ResourceKind.SECURITY_GROUP: {
        "typeName": "SecurityGroup",
        "primaryIdentifier": ["/properties/GroupId"],
        "createOnlyProperties": [
            "/properties/GroupName",
            "/properties/GroupDescription",
            "/properties/VpcId",
        ],
        "readOnlyProperties": ["/properties/GroupId"],
    },
    ResourceKind.SECRET: {
        "typeName": "Secret",
        "primaryIdentifier": ["/properties/Id"],
        "createOnlyProperties": ["/properties/Name"],
        "readOnlyProperties": ["/properties/Id", "/properties/Arn"],
    },
    ResourceKind.DATABASE: {
        "typeName": "Database",
        "primaryIdentifier": ["/properties/DBInstanceIdentifier"],
        "createOnlyProperties": [
            "/properties/DBInstanceIdentifier",
            "/properties/Engine",
            "/properties/DBName",
            "/properties/MasterUsername",
            "/properties/StorageEncrypted",
        ],
        "readOnlyProperties": [
            "/properties/Endpoint/Address",
            "/properties/Endpoint/Port",
            "/properties/DbiResourceId",
        ],
        "versionProperties": ["/properties/EngineVersion"],
    },
    ResourceKind.ROLE: {
        "typeName": "Role",
        "primaryIdentifier": ["/properties/RoleName"],
        "createOnlyProperties": ["/properties/RoleName", "/properties/Path"],
        "readOnlyProperties": ["/properties/Arn", "/properties/RoleId"],
    },
    ResourceKind.CLUSTER: {
        "typeName": "Cluster",
        "primaryIdentifier": ["/properties/ClusterName"],
        "createOnlyProperties": ["/properties/ClusterName"],
        "readOnlyProperties": ["/properties/Arn"],
    },
    ResourceKind.TASK_DEFINITION: {
        "typeName": "TaskDefinition",
        "primaryIdentifier": ["/properties/TaskDefinitionArn"],
        # task definitions are immutable revisions
        "createOnlyProperties": [
            "/properties/Family",
            "/properties/Cpu",
            "/properties/Memory",
            "/properties/ContainerDefinitions",
            "/properties/TaskRoleArn",
            "/properties/ExecutionRoleArn",
            "/properties/NetworkMode",
            "/properties/RequiresCompatibilities",
            "/properties/RuntimePlatform",
        ],
        "readOnlyProperties": ["/properties/TaskDefinitionArn"],
    },
    ResourceKind.SERVICE: {
        "typeName": "Service",
        "primaryIdentifier": ["/properties/ServiceArn"],
        "createOnlyProperties": [
            "/properties/ServiceName",
            "/properties/Cluster",
            "/properties/LaunchType",
        ],
        "readOnlyProperties": ["/properties/ServiceArn", "/properties/Name"],
    },
    ResourceKind.LOAD_BALANCER: {
        "typeName": "LoadBalancer",
        "primaryIdentifier": ["/properties/LoadBalancerArn"],
        "createOnlyProperties": ["/properties/Name", "/properties/Scheme", "/properties/Type"],
        "readOnlyProperties": [
            "/properties/LoadBalancerArn",
            "/properties/DNSName",
            "/properties/CanonicalHostedZoneID",
            "/properties/LoadBalancerFullName",
        ],
    },
    ResourceKind.LISTENER: {
        "typeName": "Listener",
        "primaryIdentifier": ["/properties/ListenerArn"],
        "createOnlyProperties": ["/properties/LoadBalancerArn"],
        "readOnlyProperties": ["/properties/ListenerArn"],
    },
    ResourceKind.TARGET_GROUP: {
        "typeName": "TargetGroup",
        "primaryIdentifier": ["/properties/TargetGroupArn"],
        "createOnlyProperties": [
            "/properties/Name",
            "/properties/Port",
            "/properties/Protocol",
            "/properties/ProtocolVersion",
            "/properties/VpcId",
            "/properties/TargetType",
        ],
        "readOnlyProperties": ["/properties/TargetGroupArn", "/properties/TargetGroupFullName"],
    },
}


def get_resource_schema(kind: ResourceKind) -> dict:
    return RESOURCE_SCHEMAS.get(ResourceKind.parse(kind), {})


def _to_property_path(pointer: str) -> str:
    """Converts a JSON pointer like ``/properties/Endpoint/Address`` to ``Endpoint.Address``."""
    if pointer.startswith(PROPERTIES_PREFIX):
        pointer = pointer[len(PROPERTIES_PREFIX) :]
    return ".".join(part for part in pointer.split("/") if part)


def schema_property_names(schema: dict, key: str) -> set[str]:
    """Returns the top-level property names listed under ``key`` (e.g. ``createOnlyProperties``)."""
    return {_to_property_path(pointer).split(".")[0] for pointer in schema.get(key, [])}


def read_only_attributes(schema: dict) -> set[str]:
    """Returns the attribute names (dotted paths) a provider assigns, e.g. ``Endpoint.Address``."""
    return {_to_property_path(pointer) for pointer in schema.get("readOnlyProperties", [])}


def primary_identifier_property(schema: dict) -> Optional[str]:
    """The property holding the physical id, if it is one the user declares (not provider-assigned)."""
    identifiers = schema.get("primaryIdentifier") or []
    if len(identifiers) != 1:
        return None
    name = _to_property_path(identifiers[0])
    if name in read_only_attributes(schema):
        return None
    return name
