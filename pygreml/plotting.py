"""
Plotting functions for cross-validation results and marker effects.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from typing import Optional, Sequence, Tuple, Union


def plot_cv(cv: 'CVResult', figsize: Tuple[int, int] = (12, 10)) -> plt.Figure:
    """
    Plot cross-validation results.

    Four panels: predictive ability (correlation) per fold, prediction
    error per fold, variance component estimates per fold (REML folds
    only) and pooled predicted against observed phenotypes with the
    regression line of observed on predicted.

    Parameters
    ----------
    cv : CVResult
        Result of :func:`pygreml.validation.cross_validate`
    figsize : tuple, default=(12, 10)
        Figure size

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    fig, axes = plt.subplots(2, 2, figsize=figsize)
    axes = axes.flatten()
    folds = cv.folds

    sns.boxplot(y=folds["corr"], ax=axes[0], color="lightsteelblue")
    axes[0].set_title("Predictive Ability")
    axes[0].set_ylabel("Correlation")

    sns.boxplot(y=folds["mspe"], ax=axes[1], color="lightsteelblue")
    axes[1].set_title("Prediction Error")
    axes[1].set_ylabel("MSPE")

    stat_cols = {"fold", "n_train", "n_valid", "corr", "r2", "intercept", "slope", "mspe", "llik"}
    theta_cols = [c for c in folds.columns if c not in stat_cols]
    if theta_cols:
        theta = folds[theta_cols].melt(var_name="component", value_name="variance")
        sns.boxplot(data=theta, x="component", y="variance", ax=axes[2], color="lightsteelblue")
        axes[2].set_ylabel("Variance")
    else:
        axes[2].text(0.5, 0.5, "No variance components", ha="center", va="center",
                     transform=axes[2].transAxes)
        axes[2].set_axis_off()
    axes[2].set_title("Estimates")

    _plot_observed_vs_predicted(cv.observed, cv.predicted, ax=axes[3])

    plt.tight_layout()
    return fig


def _plot_observed_vs_predicted(observed: np.ndarray, predicted: np.ndarray,
                                ax: Optional[plt.Axes] = None) -> plt.Figure:
    """Scatter of predicted against observed with the fitted regression line."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 6))
    else:
        fig = ax.get_figure()

    ax.scatter(observed, predicted, alpha=0.6, s=20)
    if observed.size > 2 and np.ptp(predicted) > 0:
        fit = stats.linregress(predicted, observed)
        # Observed = a + b * predicted, drawn in (observed, predicted) space
        grid = np.linspace(predicted.min(), predicted.max(), 50)
        ax.plot(fit.intercept + fit.slope * grid, grid, 'r--', linewidth=2,
                label=f"slope={fit.slope:.3f}, r={fit.rvalue:.3f}")
        ax.legend()

    ax.set_xlabel("Observed")
    ax.set_ylabel("Predicted")
    ax.set_title("Observed vs Predicted")
    ax.grid(True, alpha=0.3)
    return fig


def plot_effects(
    fit: Optional['MarkerSolveResult'] = None,
    s: Optional[Union[np.ndarray, pd.Series]] = None,
    sets: Optional[Sequence[int]] = None,
    figsize: Tuple[int, int] = (12, 4)
) -> plt.Figure:
    """
    Plot marker effects against marker position.

    Parameters
    ----------
    fit : MarkerSolveResult, optional
        Solver result whose effects are plotted
    s : array-like, optional
        Effects to plot instead of ``fit.s``
    sets : sequence of int, optional
        Marker positions to highlight
    figsize : tuple, default=(12, 4)
        Figure size

    Returns
    -------
    plt.Figure
        Matplotlib figure object
    """
    if s is None:
        if fit is None:
            raise ValueError("Either fit or s must be given")
        s = fit.s
    s = np.asarray(s, dtype=float).ravel()
    pos = np.arange(1, s.size + 1)

    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(pos, s, s=2, color="black")
    if sets is not None:
        sets = np.asarray(sets, dtype=int)
        ax.scatter(pos[sets], s[sets], s=12, color="red", label="highlighted")
        ax.legend()

    ax.set_xlabel("Position")
    ax.set_ylabel("Coefficients")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    return fig
