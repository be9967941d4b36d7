"""
Exception taxonomy for the optimization job engine.

Fit errors are absorbed into per-combination results, job errors are
persisted on the job record, aggregation errors are logged per group.
None of them is retried automatically.
"""


class OptimizerError(Exception):
    """Base class for all engine errors."""


class ValidationError(OptimizerError, ValueError):
    """Job-creation or search input is missing or malformed."""


class ModelNotFoundError(ValidationError, KeyError):
    """Requested model id is not in the registry."""

    def __str__(self):
        # KeyError quotes its message; keep it readable in job error fields
        return str(self.args[0]) if self.args else ""


class EligibilityError(OptimizerError):
    """Model/SKU pair lacks sufficient history. A planned skip, not a failure."""

    def __init__(self, model_id: str, sku: str, observations: int, required: int):
        self.model_id = model_id
        self.sku = sku
        self.observations = observations
        self.required = required
        super().__init__(
            f"{model_id} requires at least {required} observations for SKU {sku} "
            f"(has {observations})"
        )


class FitError(OptimizerError):
    """A single parameter combination could not be fitted or evaluated."""


class JobError(OptimizerError):
    """The job as a whole failed; recorded on the job record."""


class AggregationError(OptimizerError):
    """Historical result data could not be scored for one group."""
