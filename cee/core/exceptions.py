"""CEE exceptions.

Expected business-rule violations are never raised; they are collected on
``OperationResult.errors``. The exceptions below are reserved for faults and
for read APIs addressed at an experiment that does not exist.
"""


class CEEError(Exception):
    """Base exception for all CEE errors."""


class ConfigurationError(CEEError):
    """Invalid or unreadable configuration."""


class StorageError(CEEError):
    """The experiment store could not complete an operation.

    Wraps the underlying driver or ORM exception; callers own retries.
    """

    def __init__(self, message: str, operation: str | None = None):
        self.message = message
        self.operation = operation
        if operation:
            super().__init__(f"{operation}: {message}")
        else:
            super().__init__(message)


class ExperimentNotFoundError(CEEError):
    """Raised by read APIs when the requested experiment does not exist."""

    def __init__(self, experiment_id: int):
        self.experiment_id = experiment_id
        super().__init__(f"Experiment {experiment_id} not found")


class VariantNotFoundError(CEEError):
    """Raised by read APIs when a variant is not part of the experiment."""

    def __init__(self, experiment_id: int, variant_id: int):
        self.experiment_id = experiment_id
        self.variant_id = variant_id
        super().__init__(
            f"Variant {variant_id} not found in experiment {experiment_id}"
        )
