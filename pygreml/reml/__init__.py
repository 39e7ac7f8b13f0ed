"""
REML (Restricted Maximum Likelihood) estimation of variance components.

Key components:
- REMLOptions: Configuration for the REML estimator
- REMLResult: Result container with variance components, effects and diagnostics
- fit_reml(): In-process Average-Information REML
- AIREMLEstimator / ExternalREML: interchangeable estimators returning REMLResult
"""

from .optimizer import (
    fit_reml,
    ai_reml_step,
    REMLOptions,
    REMLResult,
    Estimator,
    AIREMLEstimator,
)
from .external import ExternalREML

__all__ = [
    'fit_reml',
    'ai_reml_step',
    'REMLOptions',
    'REMLResult',
    'Estimator',
    'AIREMLEstimator',
    'ExternalREML',
]
