"""
Error types raised by the prediction models.
"""


class InsufficientDataError(ValueError):
    """Raised when a model is asked to train on fewer samples than it needs."""

    def __init__(self, minimum: int, actual: int, unit: str = "data points"):
        self.minimum = minimum
        self.actual = actual
        self.unit = unit
        super().__init__(
            f"Insufficient data: need at least {minimum} {unit}, got {actual}"
        )
