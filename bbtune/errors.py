"""Exception taxonomy for the bbtune analysis engine."""
from __future__ import annotations


class BlackboxAnalysisError(Exception):
    """Base class for all errors raised by bbtune."""


class InsufficientDataError(BlackboxAnalysisError, ValueError):
    """Fewer samples than a component needs to produce a measurement."""

    def __init__(self, what: str, required: int, actual: int):
        self.what = what
        self.required = required
        self.actual = actual
        super().__init__(f"{what} needs at least {required} samples, got {actual}")


class DegenerateSignalError(BlackboxAnalysisError, ArithmeticError):
    """Zero variance, zero fundamental or a division by zero.

    Raised only inside the analyzers; callers always receive 0 or a neutral
    value instead.
    """


class UnknownControllerTypeError(BlackboxAnalysisError, KeyError):
    """The requested tuning archetype is not in the coefficient table."""

    def __init__(self, controller_type: str, known):
        self.controller_type = controller_type
        self.known = tuple(known)
        super().__init__(
            f"Unknown controller type {controller_type!r}; "
            f"expected one of {', '.join(self.known)}"
        )

    def __str__(self) -> str:
        return self.args[0]


class MissingChannelError(BlackboxAnalysisError, LookupError):
    """A channel role was requested that the log does not provide."""


class InvalidRecommendationError(BlackboxAnalysisError, ValueError):
    """A recommendation is malformed (missing axis, non-finite value)."""


class AnalysisCancelled(BlackboxAnalysisError):
    """The caller cancelled a running analysis."""


class UnknownDesignMethodError(BlackboxAnalysisError, KeyError):
    """The requested model-based design method does not exist."""

    def __init__(self, method: str, known):
        self.method = method
        self.known = tuple(known)
        super().__init__(f"Unknown design method {method!r}; expected one of {', '.join(self.known)}")

    def __str__(self) -> str:
        return self.args[0]


class UnsupportedModelError(BlackboxAnalysisError, ValueError):
    """A design method cannot handle the identified model's order."""
