"""Error taxonomy for the stack orchestration engine.

Structural errors (E1xx) are raised before any backend call is made, so no
partial apply is possible. Provisioning errors (E3xx) are raised during or
after apply and always carry enough context to tell a reverted stack from a
stuck one.
"""

from typing import Optional


class StackError(Exception):
    """Base exception for engine errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class TemplateParseError(StackError):
    """Template document is malformed."""

    def __init__(self, message: str, code: str = "E100"):
        super().__init__(code, message)


class PropertyValidationError(TemplateParseError):
    """Resolved properties rejected by the resource kind."""

    def __init__(self, logical_id: str, kind: str, problems: list[str]):
        self.logical_id = logical_id
        self.kind = kind
        self.problems = list(problems)
        super().__init__(
            f"Resource '{logical_id}' ({kind}): {'; '.join(problems)}",
            code="E106",
        )


class ParameterError(TemplateParseError):
    """Parameter value missing or invalid."""

    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__(f"Parameter '{name}': {reason}", code="E107")


class DanglingReferenceError(StackError):
    """A reference names something the template does not declare."""

    def __init__(self, source: str, target: str, what: str = "resource"):
        self.source = source
        self.target = target
        super().__init__("E101", f"'{source}' references unknown {what} '{target}'")


class GraphCycleError(StackError):
    """Resource dependencies form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__("E102", f"Dependency cycle: {' -> '.join(cycle)}")


class CyclicReferenceError(StackError):
    """An expression refers back to itself through other definitions."""

    def __init__(self, chain: list[str]):
        self.chain = list(chain)
        super().__init__("E103", f"Cyclic reference: {' -> '.join(chain)}")


class TypeMismatchError(StackError):
    """Expression operands resolved to incompatible types."""

    def __init__(self, message: str):
        super().__init__("E104", message)


class UnresolvedReferenceError(StackError):
    """A reference could not be resolved in the current context."""

    def __init__(self, message: str):
        super().__init__("E105", message)


class ProvisioningError(StackError):
    """A backend operation failed.

    Attributes:
        logical_id: Resource the operation was for (if known)
        transient: True if the backend flagged the failure as retryable
        rollback: RollbackResult attached by apply once rollback completed
    """

    def __init__(
        self,
        message: str,
        logical_id: Optional[str] = None,
        transient: bool = False,
        code: str = "E300",
    ):
        self.logical_id = logical_id
        self.transient = transient
        self.rollback = None
        super().__init__(code, message)


class ProvisioningTimeoutError(ProvisioningError):
    """A backend operation did not reach a terminal state in time."""

    def __init__(self, message: str, logical_id: Optional[str] = None):
        super().__init__(message, logical_id=logical_id, code="E301")


class ApplyCancelledError(ProvisioningError):
    """Apply was cancelled; the applied prefix has been rolled back."""

    def __init__(self, message: str = "Apply cancelled"):
        super().__init__(message, code="E305")


class RollbackFailureError(StackError):
    """A compensating operation failed; the stack needs manual repair.

    Attributes:
        failed: Logical ids whose compensation failed
        cause: The error that triggered the rollback
    """

    def __init__(self, failed: list[str], reason: str, cause: Optional[Exception] = None):
        self.failed = list(failed)
        self.cause = cause
        self.rollback = None
        super().__init__(
            "E302",
            f"Rollback failed for {', '.join(failed)}: {reason}. "
            "Stack marked inconsistent; manual reconciliation required",
        )


class StackLockedError(StackError):
    """Another plan is already mutating this stack."""

    def __init__(self, stack_id: str):
        self.stack_id = stack_id
        super().__init__("E303", f"Stack '{stack_id}' is locked by another apply")


class StalePlanError(StackError):
    """Plan was computed against an older state version."""

    def __init__(self, stack_id: str, planned: int, current: int):
        super().__init__(
            "E304",
            f"Plan for '{stack_id}' was computed against state version {planned}, "
            f"current version is {current}. Re-run plan",
        )


class StackInconsistentError(StackError):
    """Stack is marked inconsistent after a failed rollback."""

    def __init__(self, stack_id: str):
        self.stack_id = stack_id
        super().__init__(
            "E306",
            f"Stack '{stack_id}' is inconsistent after a failed rollback. "
            "Reconcile manually, then run: stack-driver unlock -s " + stack_id,
        )
