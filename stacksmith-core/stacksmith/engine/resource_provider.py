from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from logging import Logger, LoggerAdapter
from typing import Any, Generic, Mapping, Optional, Type, TypeVar, Union

from plux import Plugin, PluginManager

from stacksmith import config
from stacksmith.constants import RESOURCE_PROVIDER_NAMESPACE
from stacksmith.engine.exceptions import NoResourceProvider

LOG = logging.getLogger(__name__)

Properties = TypeVar("Properties")


class OperationStatus(Enum):
    PENDING = auto()
    IN_PROGRESS = auto()
    SUCCESS = auto()
    FAILED = auto()


class ResourceAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ProgressEvent(Generic[Properties]):
    status: OperationStatus
    resource_model: Properties

    message: str = ""
    error_code: Optional[str] = None
    custom_context: dict = field(default_factory=dict)


@dataclass
class ResourceRequest(Generic[Properties]):
    stack_name: str
    account_id: str
    region_name: str
    action: ResourceAction

    desired_state: Properties

    logical_resource_id: str
    resource_type: str

    logger: Union[Logger, LoggerAdapter]

    physical_resource_id: Optional[str] = None
    custom_context: dict = field(default_factory=dict)

    previous_state: Optional[Properties] = None
    previous_attributes: Optional[dict] = None
    previous_tags: Optional[dict[str, str]] = None
    tags: dict[str, str] = field(default_factory=dict)


class ResourceProviderPlugin(Plugin):
    """
    Base class for resource provider plugins. Plugins are named after the resource kind they handle and expose
    the provider class as ``factory`` once loaded.
    """

    namespace = RESOURCE_PROVIDER_NAMESPACE

    def __init__(self):
        self.factory: Optional[Type[ResourceProvider]] = None


class ResourceProvider(Generic[Properties]):
    """
    This provides a base class onto which kind-specific resource providers are built. ``SCHEMA`` is the resource
    schema of the kind (see ``stacksmith.engine.schemas``); its ``primaryIdentifier`` locates the physical id in
    the returned resource model.
    """

    SCHEMA: dict = {}

    def create(self, request: ResourceRequest[Properties]) -> ProgressEvent[Properties]:
        raise NotImplementedError

    def update(self, request: ResourceRequest[Properties]) -> ProgressEvent[Properties]:
        raise NotImplementedError

    def delete(self, request: ResourceRequest[Properties]) -> ProgressEvent[Properties]:
        raise NotImplementedError


def resolve_json_pointer(resource_props: dict, primary_id_path: str) -> Any:
    primary_id_path = primary_id_path.replace("/properties", "")
    parts = [p for p in primary_id_path.split("/") if p]

    resolved_part: Any = resource_props
    for part in parts:
        if not isinstance(resolved_part, dict) or part not in resolved_part:
            raise KeyError(f"Resource properties are missing field: {part}")
        resolved_part = resolved_part[part]
    return resolved_part


plugin_manager = PluginManager(ResourceProviderPlugin.namespace)


def load_resource_provider(resource_type: str) -> ResourceProvider:
    """Loads the provider of the given resource kind from the ``stacksmith.resource_providers`` plugins."""
    try:
        plugin = plugin_manager.load(resource_type)
        return plugin.factory()
    except Exception:
        LOG.debug(
            "Failed to load resource type %s as a ResourceProvider.",
            resource_type,
            exc_info=LOG.isEnabledFor(logging.DEBUG),
        )
        raise NoResourceProvider(resource_type) from None


class ResourceProviderExecutor:
    """
    Runs a single resource operation against its provider until the provider reports a final status.
    """

    def __init__(
        self,
        *,
        stack_name: str,
        account_id: Optional[str] = None,
        region_name: Optional[str] = None,
        providers: Optional[Mapping[str, ResourceProvider]] = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self.stack_name = stack_name
        self.account_id = account_id or config.ACCOUNT
        self.region_name = region_name or config.REGION
        self.providers = dict(providers or {})
        self.timeout = config.PER_RESOURCE_TIMEOUT if timeout is None else timeout
        self.poll_interval = config.PROVIDER_POLL_INTERVAL if poll_interval is None else poll_interval

    def deploy_loop(self, raw_request: ResourceRequest) -> ProgressEvent:
        """
        Invokes the provider with the request, re-invoking it with the updated resource model and context as
        long as it reports ``IN_PROGRESS``.

        :raises NoResourceProvider: if there is no provider for the resource type and unsupported types are not
            ignored
        :raises TimeoutError: if the operation does not finish within the per-resource timeout
        """
        request = copy.deepcopy(raw_request)
        try:
            resource_provider = self.load_resource_provider(request.resource_type)
        except NoResourceProvider:
            if config.IGNORE_UNSUPPORTED_RESOURCE_TYPES:
                LOG.warning(
                    'No resource provider found for "%s", skipping %s of %s',
                    request.resource_type,
                    request.action.value,
                    request.logical_resource_id,
                )
                return ProgressEvent(OperationStatus.SUCCESS, resource_model={})
            raise

        deadline = time.monotonic() + self.timeout
        current_iteration = 0
        while True:
            event = self.execute_action(resource_provider, request)

            if event.status in (OperationStatus.SUCCESS, OperationStatus.FAILED):
                return event

            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"{request.action.value} of {request.logical_resource_id} did not finish within "
                    f"{self.timeout} seconds"
                )

            # update the shared state
            request.custom_context = {**request.custom_context, **event.custom_context}
            if event.resource_model is not None:
                request.desired_state = event.resource_model

            time.sleep(0 if current_iteration == 0 else self.poll_interval)
            current_iteration += 1

    def execute_action(
        self, resource_provider: ResourceProvider, request: ResourceRequest
    ) -> ProgressEvent:
        match request.action:
            case ResourceAction.CREATE:
                return resource_provider.create(request)
            case ResourceAction.UPDATE:
                try:
                    return resource_provider.update(request)
                except NotImplementedError:
                    LOG.warning(
                        'Unable to update resource type "%s", id "%s"',
                        request.resource_type,
                        request.logical_resource_id,
                    )
                    return ProgressEvent(
                        status=OperationStatus.SUCCESS,
                        resource_model={
                            **(request.previous_state or {}),
                            **(request.previous_attributes or {}),
                        },
                    )
            case ResourceAction.DELETE:
                return resource_provider.delete(request)
            case _:
                raise NotImplementedError(request.action)

    def load_resource_provider(self, resource_type: str) -> ResourceProvider:
        if resource_type in self.providers:
            return self.providers[resource_type]
        return load_resource_provider(resource_type)

    @staticmethod
    def extract_physical_resource_id_from_model_with_schema(
        resource_model: dict, resource_type_schema: dict
    ) -> Optional[str]:
        primary_id_paths = resource_type_schema.get("primaryIdentifier") or []
        if not primary_id_paths or not resource_model:
            return None
        try:
            parts = [resolve_json_pointer(resource_model, path) for path in primary_id_paths]
        except KeyError:
            return None
        return "-".join(str(part) for part in parts)
