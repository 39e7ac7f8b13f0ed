"""
Exceptions and warnings raised by pyGREML.
"""


class InputShapeError(ValueError):
    """Dimensions of y, X, kernels or marker data do not agree."""


class NumericalFailure(RuntimeError):
    """A required matrix factorization failed (not positive definite or singular)."""


class ExternalEstimatorError(RuntimeError):
    """The external REML executable failed or did not write its result files."""


class NonConvergenceWarning(UserWarning):
    """Iteration ceiling reached before the convergence criterion was met."""


class DataCompletenessWarning(UserWarning):
    """Requested markers or individuals were not found and have been dropped."""
