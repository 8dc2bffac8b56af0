"""
Control-plane error types.

Callers distinguish their own bugs (InvalidContext) from storage failures
that must surface (LedgerWriteFailed) and failures the control plane absorbs
(CacheWriteFailed, BudgetEvaluationUnavailable, DuplicateKey).
"""


class ControlPlaneError(Exception):
    """Base class for all control-plane errors."""


class InvalidContext(ControlPlaneError, ValueError):
    """Raised when a request lacks firm, operation type or prompt.

    Rejected before any lookup; retrying the same call cannot succeed.
    """


class DuplicateKey(ControlPlaneError):
    """Raised when a live cache entry already holds the same prompt hash."""

    def __init__(self, firm_id: str, operation_type: str, prompt_hash: str):
        super().__init__(
            f"Live cache entry already exists for {firm_id}/{operation_type}/{prompt_hash[:12]}"
        )
        self.firm_id = firm_id
        self.operation_type = operation_type
        self.prompt_hash = prompt_hash


class CacheWriteFailed(ControlPlaneError):
    """Cache population failed; never fatal to the request."""


class LedgerWriteFailed(ControlPlaneError):
    """A usage record could not be appended; always fatal to the request."""


class BudgetEvaluationUnavailable(ControlPlaneError):
    """Budget state or spend could not be read; the governor fails open."""


class BudgetExceeded(ControlPlaneError):
    """Raised by SDK clients when a firm is paused and no cached answer exists."""

    def __init__(self, firm_id: str, spend_cents: float, budget_cents: int):
        super().__init__(
            f"AI usage paused for firm {firm_id}: spent {spend_cents:.2f} of {budget_cents} cents this month"
        )
        self.firm_id = firm_id
        self.spend_cents = spend_cents
        self.budget_cents = budget_cents
