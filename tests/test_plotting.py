"""
Test cases for plotting functions.
"""

import pytest
import numpy as np
import matplotlib
matplotlib.use('Agg')  # Use non-interactive backend for testing
import matplotlib.pyplot as plt

import sys
import os
# Add parent directory to path to find pygreml package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pygreml.plotting import plot_cv, plot_effects
from pygreml.validation import cross_validate, make_partitions, marker_fold, reml_fold
from pygreml.kernels import compute_grm
from pygreml.solver import gsru
from pygreml.datasets import simulate_example


@pytest.fixture
def sim():
    return simulate_example(n=50, m=20, n_causal=3, h2=0.8, seed=4)


def test_plot_cv_marker_folds(sim):
    cv = cross_validate(marker_fold, sim["y"], np.ones((50, 1)), sim["W"],
                        make_partitions(50, nfolds=5, seed=1), lambda_=5.0)
    fig = plot_cv(cv)

    assert isinstance(fig, plt.Figure)
    assert len(fig.axes) == 4
    assert fig.axes[3].get_xlabel() == "Observed"
    plt.close(fig)


def test_plot_cv_reml_folds(sim):
    G = compute_grm(sim["W"].to_numpy())
    cv = cross_validate(reml_fold, sim["y"], np.ones((50, 1)), {"G": G},
                        make_partitions(50, nfolds=5, seed=1))
    fig = plot_cv(cv)

    assert fig.axes[2].get_ylabel() == "Variance"
    plt.close(fig)


def test_plot_effects(sim):
    fit = gsru(sim["y"], sim["W"], X=np.ones((50, 1)), lambda_=5.0)
    fig = plot_effects(fit, sets=[0, 3])

    ax = fig.axes[0]
    assert ax.get_xlabel() == "Position"
    assert ax.get_ylabel() == "Coefficients"
    plt.close(fig)

    with pytest.raises(ValueError):
        plot_effects()
