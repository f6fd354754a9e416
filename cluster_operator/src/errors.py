from __future__ import annotations


class OperatorError(RuntimeError):
    """Base class for failures raised by the reconciliation core."""


class OperatorConfigError(OperatorError):
    """Raised when the operator's own configuration is invalid."""


class ClusterSpecError(OperatorError):
    """Raised when a ``RabbitmqCluster`` spec cannot be interpreted."""


class ConfigurationParseError(OperatorError):
    """Raised when a configuration template or free-form overlay cannot be parsed."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class ConfigurationSerializeError(OperatorError):
    """Raised when a configuration document cannot be written canonically."""


class OwnerReferenceError(OperatorError):
    """Raised when a controller owner reference cannot be attached to a child object."""
