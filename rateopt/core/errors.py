from __future__ import annotations


class OptimizerError(Exception):
    """Base error for rateopt."""


class OptimizationValidationError(OptimizerError):
    """Deterministic input problem; never retried automatically."""

    code = "OPTIMIZATION_VALIDATION_ERROR"


class InvalidRatePlanError(OptimizationValidationError):
    """Rate plan has non-positive overage rate or data per overage charge."""

    code = "INVALID_RATE_PLAN"


class RatePlanSetEmptyError(OptimizationValidationError):
    """No eligible rate plans remain for a group."""

    code = "RATE_PLAN_SET_EMPTY"


class RatePlanLimitExceededError(OptimizationValidationError):
    """Group carries more rate plans than the permutation limit allows."""

    code = "RATE_PLAN_LIMIT_EXCEEDED"


class SequenceBatchError(OptimizationValidationError):
    """Sequence continuation payload does not match the group it targets."""

    code = "SEQUENCE_BATCH_INVALID"


class TransientStoreError(OptimizerError):
    """Store or queue is temporarily unavailable."""


class CheckpointUnavailableError(TransientStoreError):
    """Checkpoint store could not load or persist assigner state."""


class CheckpointSchemaError(OptimizerError):
    """Checkpoint blob was written with an unsupported schema version."""


class QueueNotFoundError(OptimizerError):
    """Optimization queue row does not exist."""


class InstanceNotFoundError(OptimizerError):
    """Optimization instance row does not exist."""


class SessionNotFoundError(OptimizerError):
    """No active optimization session with that id."""


class WorkItemMismatchError(OptimizerError):
    """Work item references a queue outside the group it names."""


class OptimizationRunningError(OptimizerError):
    """Tenant already has an active, non-error optimization session."""

    def __init__(self, message: str, *, running_session_id: int | None) -> None:
        super().__init__(message)
        self.running_session_id = running_session_id


class BillingPeriodNotFoundError(OptimizerError):
    """Billing period row does not exist for the tenant."""
