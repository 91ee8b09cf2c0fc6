"""
In-process resource providers that simulate the resources of the bundled topologies. They assign ids, ARNs
and endpoints the way the real services format them, derived from the stack, the logical id and the
create-only properties of a resource: updates keep every assigned attribute, replacements get new ones.
"""

import json
import logging
import threading
from typing import Optional

from stacksmith.engine.entities import ResourceKind
from stacksmith.engine.resource_provider import (
    OperationStatus,
    ProgressEvent,
    ResourceProvider,
    ResourceRequest,
)
from stacksmith.engine.schemas import get_resource_schema, schema_property_names
from stacksmith.utils.json import canonical_json
from stacksmith.utils.strings import random_password, short_uid_from_seed

LOG = logging.getLogger(__name__)

DEFAULT_DATABASE_PORT = "5432"
LOAD_BALANCER_HOSTED_ZONE_ID = "Z35SXDOTRQ7X7K"


class SecretValueStore:
    """Generated secret values, kept in memory only."""

    def __init__(self):
        self._values: dict[str, str] = {}
        self._mutex = threading.Lock()

    def put_if_absent(self, secret_id: str, value: str) -> str:
        with self._mutex:
            return self._values.setdefault(secret_id, value)

    def get(self, secret_id: str) -> Optional[str]:
        return self._values.get(secret_id)

    def remove(self, secret_id: str):
        with self._mutex:
            self._values.pop(secret_id, None)


secret_values = SecretValueStore()


class LocalResourceProvider(ResourceProvider[dict]):
    """
    Base class of the simulated providers. Subclasses implement ``assign`` to compute the attributes the
    provider assigns to a resource.
    """

    KIND: ResourceKind

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if getattr(cls, "KIND", None) is not None:
            cls.SCHEMA = get_resource_schema(cls.KIND)

    def create(self, request: ResourceRequest[dict]) -> ProgressEvent[dict]:
        model = dict(request.desired_state)
        model.update(self.assign(request, model))
        request.logger.debug("Created %s %s", self.KIND.value, request.logical_resource_id)
        return ProgressEvent(status=OperationStatus.SUCCESS, resource_model=model)

    def update(self, request: ResourceRequest[dict]) -> ProgressEvent[dict]:
        model = dict(request.desired_state)
        model.update(self.assign(request, model))
        request.logger.debug("Updated %s %s", self.KIND.value, request.logical_resource_id)
        return ProgressEvent(status=OperationStatus.SUCCESS, resource_model=model)

    def delete(self, request: ResourceRequest[dict]) -> ProgressEvent[dict]:
        request.logger.debug(
            "Deleted %s %s (%s)",
            self.KIND.value,
            request.logical_resource_id,
            request.physical_resource_id,
        )
        return ProgressEvent(status=OperationStatus.SUCCESS, resource_model={})

    def assign(self, request: ResourceRequest[dict], model: dict) -> dict:
        raise NotImplementedError

    def uid(self, request: ResourceRequest[dict], model: dict, *extra: str) -> str:
        create_only = {
            name: model.get(name)
            for name in sorted(schema_property_names(self.SCHEMA, "createOnlyProperties"))
        }
        seed = ":".join(
            [
                request.account_id,
                request.region_name,
                request.stack_name,
                request.logical_resource_id,
                self.KIND.value,
                canonical_json(create_only),
                *extra,
            ]
        )
        return short_uid_from_seed(seed)

    def hex_id(
        self, request: ResourceRequest[dict], model: dict, length: int = 17, salt: str = ""
    ) -> str:
        """A hex id like the ones EC2 assigns (the part after ``vpc-``, ``sg-``, ...)."""
        result = ""
        while len(result) < length:
            result += self.uid(request, model, salt, str(len(result)))
        return result[:length]

    @staticmethod
    def default_name(request: ResourceRequest[dict]) -> str:
        return f"{request.stack_name}-{request.logical_resource_id}"

    @staticmethod
    def arn(request: ResourceRequest[dict], service: str, resource: str) -> str:
        return f"arn:aws:{service}:{request.region_name}:{request.account_id}:{resource}"


class NetworkProvider(LocalResourceProvider):
    KIND = ResourceKind.NETWORK

    def assign(self, request, model):
        return {
            "VpcId": f"vpc-{self.hex_id(request, model)}",
            "DefaultSecurityGroup": f"sg-{self.hex_id(request, model, salt='default-sg')}",
        }


class SubnetProvider(LocalResourceProvider):
    KIND = ResourceKind.SUBNET

    def assign(self, request, model):
        return {
            "SubnetId": f"subnet-{self.hex_id(request, model)}",
            "AvailabilityZone": model.get("AvailabilityZone") or f"{request.region_name}a",
        }


class SecurityGroupProvider(LocalResourceProvider):
    KIND = ResourceKind.SECURITY_GROUP

    def assign(self, request, model):
        return {
            "GroupId": f"sg-{self.hex_id(request, model)}",
            "GroupName": model.get("GroupName") or self.default_name(request),
        }


class SecretProvider(LocalResourceProvider):
    """
    Secrets with ``GenerateSecretString`` get a generated value: the JSON ``SecretStringTemplate`` with the
    ``GenerateStringKey`` set to a random password. Values only live in memory and are never part of the
    resource model.
    """

    KIND = ResourceKind.SECRET

    def assign(self, request, model):
        name = model.get("Name") or self.default_name(request)
        arn = self.arn(request, "secretsmanager", f"secret:{name}-{self.uid(request, model)[:6]}")
        if generate := model.get("GenerateSecretString"):
            secret_values.put_if_absent(arn, generate_secret_string(generate))
        elif "SecretString" in model:
            secret_values.put_if_absent(arn, str(model["SecretString"]))
        return {"Id": arn, "Arn": arn, "Name": name}

    def delete(self, request):
        secret_values.remove(request.physical_resource_id)
        return super().delete(request)


def generate_secret_string(options: dict) -> str:
    password = random_password(
        length=int(options.get("PasswordLength", 30)),
        exclude_characters=options.get("ExcludeCharacters", ""),
    )
    template = options.get("SecretStringTemplate")
    if not template:
        return password
    secret = json.loads(template) if isinstance(template, str) else dict(template)
    secret[options.get("GenerateStringKey", "password")] = password
    return json.dumps(secret)


class DatabaseProvider(LocalResourceProvider):
    KIND = ResourceKind.DATABASE

    def assign(self, request, model):
        identifier = (model.get("DBInstanceIdentifier") or self.default_name(request)).lower()
        uid = self.uid(request, model)
        return {
            "DBInstanceIdentifier": identifier,
            "Endpoint": {
                "Address": f"{identifier}.c{uid}.{request.region_name}.rds.amazonaws.com",
                "Port": str(model.get("Port") or DEFAULT_DATABASE_PORT),
            },
            "DbiResourceId": f"db-{self.hex_id(request, model, 26).upper()}",
        }


class RoleProvider(LocalResourceProvider):
    KIND = ResourceKind.ROLE

    def assign(self, request, model):
        name = model.get("RoleName") or self.default_name(request)
        path = model.get("Path") or "/"
        return {
            "RoleName": name,
            "Arn": f"arn:aws:iam::{request.account_id}:role{path}{name}",
            "RoleId": f"AROA{self.hex_id(request, model, 17).upper()}",
        }


class ClusterProvider(LocalResourceProvider):
    KIND = ResourceKind.CLUSTER

    def assign(self, request, model):
        name = model.get("ClusterName") or self.default_name(request)
        return {"ClusterName": name, "Arn": self.arn(request, "ecs", f"cluster/{name}")}


class TaskDefinitionProvider(LocalResourceProvider):
    KIND = ResourceKind.TASK_DEFINITION

    def assign(self, request, model):
        family = model.get("Family") or self.default_name(request)
        # every create is a new revision, derived from the immutable definition
        revision = int(self.uid(request, model), 16) % 1000 + 1
        return {
            "Family": family,
            "TaskDefinitionArn": self.arn(request, "ecs", f"task-definition/{family}:{revision}"),
        }


class ServiceProvider(LocalResourceProvider):
    KIND = ResourceKind.SERVICE

    def assign(self, request, model):
        name = model.get("ServiceName") or self.default_name(request)
        cluster = str(model.get("Cluster") or "default").rsplit("/", 1)[-1]
        return {
            "Name": name,
            "ServiceArn": self.arn(request, "ecs", f"service/{cluster}/{name}"),
        }


class LoadBalancerProvider(LocalResourceProvider):
    KIND = ResourceKind.LOAD_BALANCER

    def assign(self, request, model):
        name = model.get("Name") or self.default_name(request)[:32]
        uid = self.uid(request, model)
        full_name = f"app/{name}/{uid}{uid}"
        return {
            "LoadBalancerArn": self.arn(request, "elasticloadbalancing", f"loadbalancer/{full_name}"),
            "LoadBalancerFullName": full_name,
            "DNSName": f"{name}-{int(uid, 16)}.{request.region_name}.elb.amazonaws.com",
            "CanonicalHostedZoneID": LOAD_BALANCER_HOSTED_ZONE_ID,
        }


class ListenerProvider(LocalResourceProvider):
    KIND = ResourceKind.LISTENER

    def assign(self, request, model):
        load_balancer = str(model.get("LoadBalancerArn") or "")
        load_balancer_path = load_balancer.split(":loadbalancer/", 1)[-1] or "app/unknown/0"
        return {
            "ListenerArn": self.arn(
                request,
                "elasticloadbalancing",
                f"listener/{load_balancer_path}/{self.uid(request, model)}",
            )
        }


class TargetGroupProvider(LocalResourceProvider):
    KIND = ResourceKind.TARGET_GROUP

    def assign(self, request, model):
        name = model.get("Name") or self.default_name(request)[:32]
        full_name = f"targetgroup/{name}/{self.uid(request, model)}"
        return {
            "TargetGroupArn": self.arn(request, "elasticloadbalancing", full_name),
            "TargetGroupFullName": full_name,
        }


LOCAL_PROVIDERS: dict[ResourceKind, type[LocalResourceProvider]] = {
    provider.KIND: provider
    for provider in (
        NetworkProvider,
        SubnetProvider,
        SecurityGroupProvider,
        SecretProvider,
        DatabaseProvider,
        RoleProvider,
        ClusterProvider,
        TaskDefinitionProvider,
        ServiceProvider,
        LoadBalancerProvider,
        ListenerProvider,
        TargetGroupProvider,
    )
}


def create_local_providers() -> dict[str, LocalResourceProvider]:
    """Returns one provider instance per resource kind, keyed by kind name."""
    return {kind.value: provider() for kind, provider in LOCAL_PROVIDERS.items()}
