from typing import Optional


class AutomationError(Exception):
    """Base class for every outcome the engine raises internally."""
    reason = "automation_error"

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id


# --- Expected control flow: logged at INFO, never surfaced as failures ---

class DuplicateEvent(AutomationError):
    reason = "duplicate_event"

    def __init__(self, message: str, duplicate_of: Optional[str] = None):
        super().__init__(message)
        self.duplicate_of = duplicate_of


class EnrollmentBlocked(AutomationError):
    reason = "enrollment_blocked"


class GuardrailDeferral(AutomationError):
    reason = "guardrail_deferral"


# --- Run-terminating failures ---

class ActionDispatchError(AutomationError):
    reason = "dispatch_failed"

    def __init__(self, message: str, retryable: bool = False, node_id: Optional[str] = None):
        super().__init__(message, node_id=node_id)
        self.retryable = retryable


class NodeTraversalError(AutomationError):
    reason = "node_traversal"


class LoopPreventionError(AutomationError):
    reason = "loop_prevention"


class RunTimeoutError(AutomationError):
    reason = "timeout"


class WorkflowCompileError(AutomationError):
    reason = "compile_error"


class RunNotFoundError(AutomationError):
    reason = "run_not_found"


class StoreUnavailableError(AutomationError):
    reason = "store_unavailable"
