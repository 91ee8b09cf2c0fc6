"""Errors raised by the engine passes (declare, build, synthesize, plan, apply)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from stacksmith.engine.executor import ApplyResult


class EngineError(Exception):
    """Base class for all engine errors. ``exit_code`` is the CLI exit code the error maps to."""

    exit_code: int = 1


class TemplateError(EngineError):
    """A stack template could not be parsed or contains an invalid declaration."""

    exit_code = 8


class DuplicateIdError(EngineError):
    exit_code = 3

    def __init__(self, logical_id: str, stack_name: Optional[str] = None):
        self.logical_id = logical_id
        self.stack_name = stack_name
        where = f" in stack {stack_name}" if stack_name else ""
        super().__init__(f'Resource "{logical_id}" is already declared{where}')


class UnresolvableReferenceError(EngineError):
    """A reference (or explicit dependency) points to a node that was never declared.

    ``chain`` is the sequence of references that were being resolved when the missing node was hit, outermost
    first, e.g. ``["Service.Environment", "Database.Name", "Missing.PhysicalResourceId"]``.
    """

    exit_code = 4

    def __init__(self, source_node_id: str, attribute_name: str, chain: Sequence[str] = ()):
        self.source_node_id = source_node_id
        self.attribute_name = attribute_name
        self.chain = list(chain)
        message = f'Unresolvable reference to undeclared resource "{source_node_id}"'
        if attribute_name:
            message += f" (attribute {attribute_name})"
        if self.chain:
            message += ": " + " -> ".join(self.chain)
        super().__init__(message)


class CyclicDependencyError(EngineError):
    """The dependency graph contains a cycle. ``cycle`` lists the logical ids along the cycle in order."""

    exit_code = 5

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Circular dependency between resources: {path}")


class StateLockError(EngineError):
    exit_code = 7

    def __init__(self, stack_name: str, timeout: float):
        self.stack_name = stack_name
        self.timeout = timeout
        super().__init__(
            f'Unable to acquire the state lock of stack "{stack_name}" within {timeout} seconds'
        )


class StalePlanError(EngineError):
    """The state of the stack changed between planning and applying."""

    exit_code = 7

    def __init__(self, stack_name: str, planned_serial: int, current_serial: int):
        self.stack_name = stack_name
        self.planned_serial = planned_serial
        self.current_serial = current_serial
        super().__init__(
            f'Plan of stack "{stack_name}" was computed against state serial {planned_serial}, '
            f"but the state is at serial {current_serial}. Plan again before applying"
        )


class ApplyPartialFailureError(EngineError):
    """Raised for an apply/destroy in which at least one node failed. Carries the full ``ApplyResult``."""

    exit_code = 6

    def __init__(self, result: "ApplyResult"):
        self.result = result
        failed = ", ".join(
            f"{outcome.logical_id} ({outcome.reason})" for outcome in result.failed
        )
        super().__init__(
            f'Stack "{result.stack_name}" was only partially applied. Failed: {failed}; '
            f"skipped: {len(result.skipped)}"
        )


class NoResourceProvider(EngineError):
    def __init__(self, resource_type: str):
        self.resource_type = resource_type
        super().__init__(f'No resource provider found for "{resource_type}"')
