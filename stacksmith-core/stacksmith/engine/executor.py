"""
Execution of plans. ``Executor`` is the interface the CLI and embedding code program against,
``DeploymentExecutor`` applies change sets through resource providers, running independent resources in
parallel.
"""

import abc
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from stacksmith import config
from stacksmith.engine.exceptions import ApplyPartialFailureError, StalePlanError
from stacksmith.engine.intrinsics import DeferredToken, Join, join_part, serialize_value
from stacksmith.engine.planner import ChangeAction, Plan, ResourceChange, plan_destroy
from stacksmith.engine.resource_provider import (
    OperationStatus,
    ResourceAction,
    ResourceProvider,
    ResourceProviderExecutor,
    ResourceRequest,
)
from stacksmith.engine.schemas import get_resource_schema
from stacksmith.engine.state import ResourceState, StackState, StateStore
from stacksmith.logging.format import resource_logger
from stacksmith.utils.json import json_safe

LOG = logging.getLogger(__name__)

REASON_CANCELLED = "apply cancelled"


class NodeStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass
class NodeOutcome:
    logical_id: str
    action: ChangeAction
    status: NodeStatus
    reason: Optional[str] = None
    physical_resource_id: Optional[str] = None

    def serialize(self) -> dict:
        return {
            "LogicalResourceId": self.logical_id,
            "Action": self.action.value,
            "Status": self.status.value,
            "Reason": self.reason,
            "PhysicalResourceId": self.physical_resource_id,
        }


@dataclass
class ApplyResult:
    """Per-node outcomes of an apply or destroy, keyed by logical id in plan order."""

    stack_name: str
    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def _with_status(self, status: NodeStatus) -> list[NodeOutcome]:
        return [outcome for outcome in self.outcomes.values() if outcome.status == status]

    @property
    def succeeded(self) -> list[NodeOutcome]:
        return self._with_status(NodeStatus.SUCCESS)

    @property
    def failed(self) -> list[NodeOutcome]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> list[NodeOutcome]:
        return self._with_status(NodeStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def raise_for_failures(self):
        """:raises ApplyPartialFailureError: if any node failed"""
        if self.failed:
            raise ApplyPartialFailureError(self)

    def serialize(self) -> dict:
        return {
            "StackName": self.stack_name,
            "Cancelled": self.cancelled,
            "Outcomes": [outcome.serialize() for outcome in self.outcomes.values()],
            "Outputs": self.outputs,
        }


class Executor(abc.ABC):
    """Applies plans and tears down stacks."""

    @abc.abstractmethod
    def apply(self, plan: Plan) -> ApplyResult:
        raise NotImplementedError

    @abc.abstractmethod
    def destroy(self, stack_id: str) -> ApplyResult:
        raise NotImplementedError

    @abc.abstractmethod
    def cancel(self):
        """Stops starting new nodes. Nodes already running are completed and recorded."""
        raise NotImplementedError


class UnresolvedTokenError(Exception):
    def __init__(self, token: DeferredToken):
        self.token = token
        super().__init__(f"unable to resolve {token}: producer has no such attribute")


@dataclass
class _NodeResult:
    status: NodeStatus
    reason: Optional[str] = None
    model: Optional[dict] = None
    physical_resource_id: Optional[str] = None
    # set for replacements whose previous resource was deleted before the failure
    previous_deleted: bool = False


class DeploymentExecutor(Executor):
    """
    Applies plans through resource providers. Independent nodes run in parallel on a thread pool, every
    dependency edge is serialized. The stack state is only touched by the scheduling thread and is saved after
    every completed node, while the stack lock is held for the whole run.
    """

    def __init__(
        self,
        state_store: StateStore,
        providers: Optional[Mapping[str, ResourceProvider]] = None,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self.state_store = state_store
        self.providers = dict(providers or {})
        self.max_workers = max_workers or config.APPLY_MAX_WORKERS
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._cancelled = threading.Event()

    def cancel(self):
        LOG.info("Cancelling apply, no further resources will be started")
        self._cancelled.set()

    def apply(self, plan: Plan) -> ApplyResult:
        with self.state_store.lock(plan.stack_name):
            state = self.state_store.load(plan.stack_name)
            if plan.serial is not None and plan.serial != state.serial:
                raise StalePlanError(plan.stack_name, plan.serial, state.serial)
            result = self._run(plan, state)
            if plan.document is not None:
                result.outputs = self._resolve_outputs(plan, state)
                state.outputs = result.outputs
            state.mark_applied()
            self.state_store.save(state)
        self._log_result(result)
        return result

    def destroy(self, stack_id: str) -> ApplyResult:
        with self.state_store.lock(stack_id):
            state = self.state_store.load(stack_id)
            result = self._run(plan_destroy(state), state)
            if state.is_empty():
                self.state_store.delete(stack_id)
            else:
                state.mark_applied()
                self.state_store.save(state)
        self._log_result(result)
        return result

    def _run(self, plan: Plan, state: StackState) -> ApplyResult:
        self._cancelled.clear()
        result = ApplyResult(stack_name=plan.stack_name)
        document = plan.document
        resource_executor = ResourceProviderExecutor(
            stack_name=plan.stack_name,
            account_id=document.account if document else None,
            region_name=document.region if document else None,
            providers=self.providers,
            timeout=self.timeout,
            poll_interval=self.poll_interval,
        )

        pending: dict[str, ResourceChange] = {change.logical_id: change for change in plan}
        waits_on = self._compute_waits(plan)
        # logical id of every unsuccessful node -> logical id of the node whose failure caused it
        root_causes: dict[str, str] = {}
        running: dict[Future, tuple[ResourceChange, dict]] = {}

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="apply"
        ) as pool:
            while pending or running:
                progress = True
                while progress and pending:
                    progress = False
                    for logical_id, change in list(pending.items()):
                        if self._cancelled.is_set():
                            result.cancelled = True
                            del pending[logical_id]
                            root_causes[logical_id] = logical_id
                            self._record(
                                result, change, NodeStatus.SKIPPED, reason=REASON_CANCELLED
                            )
                            continue

                        blockers = waits_on[logical_id]
                        blocker = next((b for b in sorted(blockers) if b in root_causes), None)
                        if blocker is not None:
                            del pending[logical_id]
                            root_causes[logical_id] = root_causes[blocker]
                            self._record(
                                result,
                                change,
                                NodeStatus.SKIPPED,
                                reason=self._skip_reason(change, root_causes[blocker], result),
                            )
                            progress = True
                            continue

                        if any(b not in result.outcomes for b in blockers):
                            continue

                        del pending[logical_id]
                        progress = True
                        if change.action == ChangeAction.NOOP:
                            self._record(
                                result,
                                change,
                                NodeStatus.SUCCESS,
                                physical_resource_id=(
                                    change.previous.physical_resource_id if change.previous else None
                                ),
                            )
                            continue

                        try:
                            properties = resolve_tokens(change.properties, state)
                        except UnresolvedTokenError as e:
                            root_causes[logical_id] = logical_id
                            self._record(result, change, NodeStatus.FAILED, reason=str(e))
                            continue

                        LOG.debug("Starting %s of %s", change.action.value, logical_id)
                        future = pool.submit(
                            self._execute, resource_executor, change, properties
                        )
                        running[future] = (change, properties)

                if not running:
                    # nothing in flight can unblock the remaining nodes
                    for change in pending.values():
                        self._record(
                            result, change, NodeStatus.SKIPPED, reason="unsatisfiable dependencies"
                        )
                    pending.clear()
                    continue

                finished, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in finished:
                    change, properties = running.pop(future)
                    node_result: _NodeResult = future.result()
                    if node_result.status != NodeStatus.SUCCESS:
                        root_causes[change.logical_id] = change.logical_id
                    self._update_state(state, change, properties, node_result)
                    self.state_store.save(state)
                    self._record(
                        result,
                        change,
                        node_result.status,
                        reason=node_result.reason,
                        physical_resource_id=node_result.physical_resource_id,
                    )

        return result

    @staticmethod
    def _compute_waits(plan: Plan) -> dict[str, set[str]]:
        """
        Nodes each planned change has to wait for: creates, updates and replacements wait for their producers,
        deletes wait for every change of a resource that depended on the deleted one.
        """
        in_plan = {change.logical_id for change in plan}
        waits_on = {}
        for change in plan:
            if change.action == ChangeAction.DELETE:
                waits_on[change.logical_id] = {
                    other.logical_id
                    for other in plan
                    if other.previous is not None
                    and change.logical_id in other.previous.dependencies
                    and other.logical_id != change.logical_id
                }
            else:
                waits_on[change.logical_id] = {
                    dependency for dependency in change.dependencies if dependency in in_plan
                }
        return waits_on

    @staticmethod
    def _skip_reason(change: ResourceChange, root_cause: str, result: ApplyResult) -> str:
        root = result.outcomes.get(root_cause)
        if root is not None and root.reason == REASON_CANCELLED:
            return REASON_CANCELLED
        if change.action == ChangeAction.DELETE:
            return f"dependent {root_cause} failed"
        return f"dependency {root_cause} failed"

    @staticmethod
    def _record(
        result: ApplyResult,
        change: ResourceChange,
        status: NodeStatus,
        reason: Optional[str] = None,
        physical_resource_id: Optional[str] = None,
    ):
        if status == NodeStatus.SUCCESS:
            LOG.info("%s %s: %s", change.action.value, change.logical_id, status.value)
        else:
            LOG.warning("%s %s: %s (%s)", change.action.value, change.logical_id, status.value, reason)
        result.outcomes[change.logical_id] = NodeOutcome(
            logical_id=change.logical_id,
            action=change.action,
            status=status,
            reason=reason,
            physical_resource_id=physical_resource_id,
        )

    def _execute(
        self,
        resource_executor: ResourceProviderExecutor,
        change: ResourceChange,
        properties: dict,
    ) -> _NodeResult:
        """Runs on a worker thread. Never raises, errors are reported as failed results."""
        previous_deleted = False
        try:
            if change.action in (ChangeAction.DELETE, ChangeAction.REPLACE):
                event = resource_executor.deploy_loop(
                    self._build_request(resource_executor, change, ResourceAction.DELETE, properties)
                )
                if event.status == OperationStatus.FAILED:
                    return _NodeResult(NodeStatus.FAILED, reason=event.message or "delete failed")
                if change.action == ChangeAction.DELETE:
                    return _NodeResult(
                        NodeStatus.SUCCESS,
                        physical_resource_id=(
                            change.previous.physical_resource_id if change.previous else None
                        ),
                    )
                previous_deleted = True

            action = ResourceAction.UPDATE
            if change.action in (ChangeAction.CREATE, ChangeAction.REPLACE):
                action = ResourceAction.CREATE
            request = self._build_request(resource_executor, change, action, properties)
            event = resource_executor.deploy_loop(request)
            if event.status == OperationStatus.FAILED:
                return _NodeResult(
                    NodeStatus.FAILED,
                    reason=event.message or f"{action.value} failed",
                    previous_deleted=previous_deleted,
                )

            model = dict(event.resource_model or {})
            extract_physical_resource_id = (
                ResourceProviderExecutor.extract_physical_resource_id_from_model_with_schema
            )
            physical_resource_id = extract_physical_resource_id(
                model, get_resource_schema(change.kind)
            )
            if physical_resource_id is None:
                physical_resource_id = request.physical_resource_id or change.logical_id
            return _NodeResult(
                NodeStatus.SUCCESS, model=model, physical_resource_id=physical_resource_id
            )
        except Exception as e:
            log_method = LOG.exception if config.VERBOSE_ERRORS else LOG.warning
            log_method("Error applying %s of %s: %s", change.action.value, change.logical_id, e)
            return _NodeResult(NodeStatus.FAILED, reason=str(e), previous_deleted=previous_deleted)

    @staticmethod
    def _build_request(
        resource_executor: ResourceProviderExecutor,
        change: ResourceChange,
        action: ResourceAction,
        properties: dict,
    ) -> ResourceRequest:
        # a create (also the second half of a replacement) starts from scratch
        previous = change.previous if action != ResourceAction.CREATE else None
        if action == ResourceAction.DELETE:
            desired_state = {**previous.properties, **previous.attributes} if previous else {}
        else:
            desired_state = properties
        return ResourceRequest(
            stack_name=resource_executor.stack_name,
            account_id=resource_executor.account_id,
            region_name=resource_executor.region_name,
            action=action,
            desired_state=desired_state,
            logical_resource_id=change.logical_id,
            resource_type=change.kind,
            logger=resource_logger(__name__, resource_executor.stack_name, change.logical_id),
            physical_resource_id=previous.physical_resource_id if previous else None,
            previous_state=dict(previous.properties) if previous else None,
            previous_attributes=dict(previous.attributes) if previous else None,
            previous_tags=dict(previous.tags) if previous else None,
            tags=dict(change.tags),
        )

    @staticmethod
    def _update_state(
        state: StackState, change: ResourceChange, properties: dict, node_result: _NodeResult
    ):
        if node_result.status != NodeStatus.SUCCESS:
            if node_result.previous_deleted:
                state.remove_resource(change.logical_id)
            return

        if change.action == ChangeAction.DELETE:
            state.remove_resource(change.logical_id)
            return

        applied_properties = json_safe(properties)
        model = json_safe(node_result.model or {})
        attributes = {
            key: value
            for key, value in model.items()
            if key not in applied_properties or applied_properties[key] != value
        }
        state.set_resource(
            ResourceState(
                logical_id=change.logical_id,
                type=change.kind,
                physical_resource_id=node_result.physical_resource_id,
                properties=applied_properties,
                attributes=attributes,
                dependencies=list(change.dependencies),
                tags=dict(change.tags),
            )
        )

    @staticmethod
    def _resolve_outputs(plan: Plan, state: StackState) -> dict[str, Any]:
        outputs = {}
        for key, output in plan.document.outputs.items():
            try:
                outputs[key] = json_safe(resolve_tokens(output.value, state))
            except UnresolvedTokenError as e:
                LOG.warning("Output %s of stack %s is not available: %s", key, plan.stack_name, e)
        return outputs

    @staticmethod
    def _log_result(result: ApplyResult):
        LOG.info(
            "Stack %s: %d succeeded, %d failed, %d skipped%s",
            result.stack_name,
            len(result.succeeded),
            len(result.failed),
            len(result.skipped),
            " (cancelled)" if result.cancelled else "",
        )


def resolve_tokens(value: Any, state: StackState) -> Any:
    """
    Replaces the deferred tokens in ``value`` by the attributes recorded for their producers.

    :raises UnresolvedTokenError: if a producer has not been recorded or lacks the attribute
    """
    if isinstance(value, DeferredToken):
        producer = state.get(value.source_node_id)
        if producer is None:
            raise UnresolvedTokenError(value)
        try:
            return producer.get_attribute(value.attribute_name)
        except KeyError:
            raise UnresolvedTokenError(value) from None
    if isinstance(value, Join):
        return value.delimiter.join(join_part(resolve_tokens(part, state)) for part in value.values)
    if isinstance(value, dict):
        return {key: resolve_tokens(item, state) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_tokens(item, state) for item in value]
    return serialize_value(value)
