"""
errors.py
~~~~~~~~~

Exceptions raised by the network engine and the model store.
Every error carries a short code and a context dictionary so callers
(and the API server) can report failures without parsing messages.
"""

from typing import Optional, Any, Dict


class NodenetError(Exception):
    """Base exception for all nodenet errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ConfigurationError(NodenetError):
    """Raised when a network, its categories or its inputs are misconfigured."""

    def __init__(self, message: str, parameter: Optional[str] = None,
                 actual_value: Optional[Any] = None):
        self.parameter = parameter
        self.actual_value = actual_value
        super().__init__(message, "CONFIG_ERROR", {
            "parameter": parameter,
            "actual_value": actual_value
        })


class NetworkStateError(NodenetError):
    """Raised when a node value is read before the pass that computes it."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, "STATE_ERROR", {"field": field})


class TrainingDidNotConverge(NodenetError):
    """
    Raised by ``learn`` when the epoch limit is reached before the target
    accuracy. The network keeps the weights of the last epoch.
    """

    def __init__(self, epochs: int, accuracy: float, mse: float,
                 target: float):
        self.epochs = epochs
        self.accuracy = accuracy
        self.mse = mse
        self.target = target
        super().__init__(
            f"Accuracy {accuracy:.2f}% did not reach {target:.2f}% "
            f"after {epochs} epochs",
            "NOT_CONVERGED",
            {"epochs": epochs, "accuracy": accuracy, "mse": mse,
             "target": target}
        )


class ModelStoreError(NodenetError):
    """Base class for failures while writing or reading model files."""

    def __init__(self, message: str, error_code: str = "MODEL_STORE_ERROR",
                 model_path: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.model_path = model_path
        context = dict(context or {})
        context["model_path"] = model_path
        super().__init__(message, error_code, context)


class WriteModelFailed(ModelStoreError):
    """Raised when a model file could not be written."""

    def __init__(self, model_path: str, reason: str = ""):
        message = f"Failed to write model {model_path}"
        if reason:
            message += f": {reason}"
        super().__init__(message, "WRITE_MODEL_FAILED", model_path)


class ModelNameCollision(ModelStoreError):
    """Raised when a generated model file name already exists."""

    def __init__(self, model_path: str):
        super().__init__(f"Model file {model_path} already exists",
                         "MODEL_NAME_COLLISION", model_path)


class ReadModelFailed(ModelStoreError):
    """Raised when a model file could not be opened or read."""

    def __init__(self, model_path: str, reason: str):
        self.reason = reason
        super().__init__(f"Failed to read model {model_path}: {reason}",
                         "READ_MODEL_FAILED", model_path,
                         {"reason": reason})


class ModelFormatError(ModelStoreError):
    """Raised when a model file does not hold a valid network layout."""

    def __init__(self, message: str, model_path: Optional[str] = None,
                 error_code: str = "MODEL_FORMAT_ERROR",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, model_path, context)


class InvalidNodeValueRead(ModelFormatError):
    """Raised when a weight or bias field is not a valid number."""

    def __init__(self, token: str, field: str, reason: str,
                 model_path: Optional[str] = None):
        self.token = token
        self.field = field
        self.reason = reason
        super().__init__(
            f"Invalid {field} value {token!r}: {reason}",
            model_path,
            "INVALID_NODE_VALUE",
            {"token": token, "field": field, "reason": reason}
        )


class ActivationFunctionNotRead(ModelFormatError):
    """Raised when the activation line of a model is missing or unknown."""

    def __init__(self, model_path: Optional[str] = None,
                 line: Optional[str] = None):
        self.line = line
        message = "Activation function could not be read"
        if model_path:
            message += f" while reading {model_path}"
        if line is not None:
            message += f" (found {line!r})"
        super().__init__(message, model_path, "ACTIVATION_NOT_READ",
                         {"line": line})


class ModelRegistrationFailed(ModelStoreError):
    """Raised when a written model could not be recorded in the registry."""

    def __init__(self, model_path: str):
        super().__init__(f"Model {model_path} could not be registered",
                         "REGISTRATION_FAILED", model_path)


class UnknownModelError(ModelStoreError):
    """Raised for unclassified I/O failures around model files."""

    def __init__(self, message: str, model_path: Optional[str] = None):
        super().__init__(message, "UNKNOWN_ERROR", model_path)


class DistinguishingModelFailure(NodenetError):
    """
    Raised by trainers built on top of ``NeuralNetwork.learn`` (for example
    an adversarial trainer) when their inner categorizing model fails.
    The inner error is chained as ``__cause__``.
    """

    def __init__(self, inner: NodenetError):
        self.inner = inner
        super().__init__(f"Distinguishing model failed: {inner}",
                         "DISTINGUISHING_MODEL_FAILURE",
                         {"inner_code": inner.error_code})
