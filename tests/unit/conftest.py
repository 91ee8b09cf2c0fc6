import threading
import time
from typing import Callable, Optional

import pytest

from stacksmith import config
from stacksmith.engine.entities import ResourceKind, StackConfig
from stacksmith.engine.intrinsics import get_att
from stacksmith.engine.resource_provider import (
    OperationStatus,
    ProgressEvent,
    ResourceAction,
    ResourceProvider,
    ResourceRequest,
)
from stacksmith.engine.schemas import get_resource_schema, primary_identifier_property
from stacksmith.engine.stack import Stack
from stacksmith.engine.state import FileStateStore, InMemoryStateStore


class RecordingProvider(ResourceProvider[dict]):
    """
    Provider for every resource kind. It records each call, assigns ``<logical id>-<n>`` as physical id (unless
    the physical id is a declared property) and fails the operations of the logical ids in ``failing``.
    """

    def __init__(
        self,
        failing=(),
        attributes: Optional[dict] = None,
        delay: float = 0,
        on_call: Optional[Callable[[ResourceRequest], None]] = None,
    ):
        self.failing = set(failing)
        self.attributes = attributes or {}
        self.delay = delay
        self.on_call = on_call
        self.calls: list[tuple[str, str]] = []
        self.requests: list[ResourceRequest] = []
        self.max_concurrency = 0
        self._active = 0
        self._counter = 0
        self._mutex = threading.Lock()

    def create(self, request):
        return self._handle(request)

    def update(self, request):
        return self._handle(request)

    def delete(self, request):
        return self._handle(request)

    def _handle(self, request: ResourceRequest) -> ProgressEvent:
        with self._mutex:
            self.calls.append((request.action.value, request.logical_resource_id))
            self.requests.append(request)
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)
            self._counter += 1
            counter = self._counter
        try:
            if self.on_call:
                self.on_call(request)
            if self.delay:
                time.sleep(self.delay)
            if request.logical_resource_id in self.failing:
                return ProgressEvent(
                    OperationStatus.FAILED,
                    resource_model={},
                    message=f"{request.logical_resource_id} exploded",
                )
            if request.action == ResourceAction.DELETE:
                return ProgressEvent(OperationStatus.SUCCESS, resource_model={})

            model = dict(request.desired_state)
            schema = get_resource_schema(request.resource_type)
            identifier = schema["primaryIdentifier"][0].split("/")[-1]
            if primary_identifier_property(schema) is None:
                model[identifier] = (
                    request.physical_resource_id or f"{request.logical_resource_id}-{counter}"
                )
            model.update(self.attributes.get(request.logical_resource_id, {}))
            return ProgressEvent(OperationStatus.SUCCESS, resource_model=model)
        finally:
            with self._mutex:
                self._active -= 1

    def logical_ids(self, action: str) -> list[str]:
        return [logical_id for call_action, logical_id in self.calls if call_action == action]

    def as_providers(self) -> dict[str, ResourceProvider]:
        """This provider registered for every resource kind."""
        return {kind.value: self for kind in ResourceKind}


@pytest.fixture
def create_provider():
    def _create(**kwargs) -> RecordingProvider:
        return RecordingProvider(**kwargs)

    return _create


@pytest.fixture
def stack_config() -> StackConfig:
    return StackConfig(
        stack_name="shop", stage="dev", region="eu-central-1", account="111111111111"
    )


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore(lock_timeout=1)


@pytest.fixture
def file_state_store(tmp_path) -> FileStateStore:
    return FileStateStore(str(tmp_path / "state"), lock_timeout=1)


@pytest.fixture
def recording_provider() -> RecordingProvider:
    return RecordingProvider(
        attributes={"D1": {"Endpoint": {"Address": "d1.example.com", "Port": "5432"}}}
    )


@pytest.fixture
def three_tier_stack(stack_config) -> Stack:
    """N1 (network) <- D1 (database, explicit dependency) <- S1 (service, references the D1 endpoint)."""
    stack = Stack(stack_config)
    stack.declare(ResourceKind.NETWORK, "N1", {"CidrBlock": "10.0.0.0/16"})
    stack.declare(
        ResourceKind.DATABASE,
        "D1",
        {"Engine": "postgres", "EngineVersion": "14.7", "AllocatedStorage": "20"},
        depends_on=["N1"],
    )
    stack.declare(
        ResourceKind.SERVICE,
        "S1",
        {"Environment": [{"Name": "HOST", "Value": get_att("D1", "Endpoint.Address")}]},
    )
    return stack


@pytest.fixture(autouse=True)
def isolate_config(monkeypatch, tmp_path):
    """Keeps tests independent of the environment of the machine running them."""
    monkeypatch.setattr(config, "STATE_DIR", str(tmp_path / "default-state"))
    monkeypatch.setattr(config, "PROVIDER_POLL_INTERVAL", 0.01)
    monkeypatch.setattr(config, "VERBOSE_ERRORS", False)
    monkeypatch.setattr(config, "IGNORE_UNSUPPORTED_RESOURCE_TYPES", False)
