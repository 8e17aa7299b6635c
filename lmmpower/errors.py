"""
Exception and warning types for LMMPower.

Validation problems raise ``DomainError`` immediately. Fit problems are
scoped to a single simulation repetition: ``NonconvergentFit`` marks a
fit that produced no usable estimates, while ``StructuralSingularity``
is only a warning, issued when a variance component collapses to zero.
"""


class DomainError(ValueError):
    """Raised when an input lies outside its valid domain.

    Examples: a probability outside [0, 1], a covariance matrix that is not
    positive semi-definite, a level count of zero, or category probabilities
    that do not sum to one.
    """

    pass


class NonconvergentFit(RuntimeError):
    """Raised when the model-fitting collaborator cannot produce stable estimates."""

    def __init__(self, message: str, method: str = "unknown"):
        super().__init__(message)
        self.method = method


class StructuralSingularity(UserWarning):
    """Issued when an estimated variance component sits at the zero boundary.

    The fit is still usable; ``FitResult.singular`` is set so callers can
    tell a negligible effect from a mis-specified one.
    """

    pass


class UnknownTerm(KeyError):
    """Raised when a term is looked up that the model does not contain."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""
