# affinity_engine/core/errors.py
"""
Domain errors shared by the engine services.

Routers translate them to HTTP responses:
  - ValidationError -> 400
  - NotFoundError   -> 404
  - TrainingInProgress -> 409
  - TrainingBudgetExceeded -> 503
DegenerateInputError never leaves the similarity module: callers get 0.0.
"""


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(EngineError):
    """Missing/malformed identifiers, unknown strategy names, empty order sets."""


class NotFoundError(EngineError):
    """Unknown cart/product/customer referenced by id."""


class DegenerateInputError(EngineError):
    """Zero-magnitude vectors or fewer than two paired observations."""


class TrainingBudgetExceeded(EngineError):
    """A batch job ran past its wall-clock budget; the previous snapshot stays live."""


class TrainingInProgress(EngineError):
    """Another training job holds the training lock."""
