# src/aqcal/model/errors.py
from typing import Optional


class CalibrationError(Exception):
    """Base class for every error raised by the calibration engine."""


class InvalidSpecification(CalibrationError, ValueError):
    """Malformed model, prior, graph or CV block. Raised before any computation."""


class UnidentifiableModel(CalibrationError):
    """
    The conditional precision of the latent field is singular, e.g. a grouping
    level with no observations under an improper (zero precision) prior.
    """

    def __init__(self, message: str, term: Optional[str] = None):
        self.term = term
        if term is not None:
            message = f"{message} (term: {term})"
        super().__init__(message)


class InferenceDidNotConverge(CalibrationError):
    """Hyperparameter mode search / integration did not stabilise within the iteration cap."""

    def __init__(self, message: str, gradient_norm: float = float("nan"), iterations: int = 0):
        self.gradient_norm = float(gradient_norm)
        self.iterations = int(iterations)
        super().__init__(
            f"{message} (last gradient norm={self.gradient_norm:.4g}, iterations={self.iterations})"
        )


class FoldImbalance(CalibrationError):
    """A cross-validation block leaves a training set that cannot identify the model."""

    def __init__(self, message: str, block=None):
        self.block = block
        super().__init__(message if block is None else f"{message} (block: {block})")
