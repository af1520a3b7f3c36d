"""Exceptions raised by the reconstruction driver."""


class ConfigurationError(ValueError):
    """Invalid or incomplete reconstruction setup, detected before iterating."""


class NumericalAnomaly(ArithmeticError):
    """Non-finite values appeared in the iterate or the objective."""

    def __init__(self, iteration: int, what: str):
        self.iteration = iteration
        self.what = what
        super().__init__(f"non-finite {what} at iteration {iteration}")
