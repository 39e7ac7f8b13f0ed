"""
Example datasets for pyGREML package.
"""

import pandas as pd
import numpy as np
from typing import Dict, Optional, Tuple

from .genotypes import standardize_dosages


def load_toy_reml_example() -> Tuple[pd.Series, np.ndarray, np.ndarray]:
    """
    Nine observations in three groups for a one-kernel REML fit.

    The kernel is x x' for the group covariate x = (-1, -1, -1, 0, 0, 0, 1, 1, 1),
    so the genetic component is a random slope on x. With an intercept as
    the only fixed effect the REML estimates have a closed form:
    theta_G = 136 / 126 and theta_E = 88 / 21.

    Returns
    -------
    tuple
        (y as pd.Series indexed "1".."9", intercept design X, kernel G)

    Examples
    --------
    >>> y, X, G = load_toy_reml_example()
    >>> fit = greml(y, X, {"G": G})
    """
    y = pd.Series([5., 8., 6., 2., 3., 1., 2., 4., 5.],
                  index=[str(i) for i in range(1, 10)], name="y")
    x = np.array([-1., -1., -1., 0., 0., 0., 1., 1., 1.])
    X = np.ones((9, 1))
    G = np.outer(x, x)
    return y, X, G


def simulate_genotypes(
    n: int = 100,
    m: int = 50,
    maf_range: Tuple[float, float] = (0.05, 0.5),
    missing_rate: float = 0.0,
    seed: Optional[int] = None
) -> pd.DataFrame:
    """
    Simulate allele dosages under Hardy-Weinberg equilibrium.

    Parameters
    ----------
    n : int, default=100
        Number of individuals
    m : int, default=50
        Number of markers
    maf_range : tuple, default=(0.05, 0.5)
        Range of the uniform allele frequency distribution
    missing_rate : float, default=0.0
        Proportion of genotypes set to missing (NaN)
    seed : int, optional
        Random seed for reproducibility

    Returns
    -------
    pd.DataFrame
        Dosages 0, 1, 2 (n x m), index "1".."n", columns "m1".."mm"
    """
    rng = np.random.default_rng(seed)
    freq = rng.uniform(maf_range[0], maf_range[1], size=m)
    dosages = rng.binomial(2, freq, size=(n, m)).astype(float)

    if missing_rate > 0:
        missing = rng.random((n, m)) < missing_rate
        dosages[missing] = np.nan

    return pd.DataFrame(
        dosages,
        index=[str(i + 1) for i in range(n)],
        columns=[f"m{j + 1}" for j in range(m)]
    )


def simulate_phenotype(
    W: np.ndarray,
    h2: float = 0.5,
    n_causal: int = 10,
    mean: float = 0.0,
    seed: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Simulate phenotypes from standardised genotypes.

    ``n_causal`` randomly chosen markers get normal effects; residual noise
    is scaled so that the genetic share of the phenotypic variance is ``h2``.

    Returns
    -------
    tuple
        (phenotypes, true marker effects with zeros for non-causal markers)
    """
    if not 0 < h2 <= 1:
        raise ValueError("h2 must be in (0, 1]")
    W = np.asarray(W, dtype=float)
    n, m = W.shape
    if not 0 < n_causal <= m:
        raise ValueError(f"n_causal must be between 1 and {m}")

    rng = np.random.default_rng(seed)
    effects = np.zeros(m)
    causal = rng.choice(m, size=n_causal, replace=False)
    effects[causal] = rng.normal(0.0, 1.0, size=n_causal)

    g = W @ effects
    var_g = np.var(g)
    var_e = var_g * (1.0 - h2) / h2 if var_g > 0 else 1.0
    y = mean + g + rng.normal(0.0, np.sqrt(var_e), size=n)
    return y, effects


def simulate_example(
    n: int = 100,
    m: int = 50,
    n_causal: int = 5,
    h2: float = 0.9,
    seed: Optional[int] = 42
) -> Dict[str, object]:
    """
    Simulated genotypes and phenotypes with known marker effects.

    Returns
    -------
    dict
        dosages (DataFrame), W (standardised, DataFrame), y (Series),
        effects (Series of true effects) and h2
    """
    dosages = simulate_genotypes(n, m, seed=seed)
    W = pd.DataFrame(standardize_dosages(dosages.to_numpy()),
                     index=dosages.index, columns=dosages.columns)
    y, effects = simulate_phenotype(W.to_numpy(), h2=h2, n_causal=n_causal, mean=10.0,
                                    seed=None if seed is None else seed + 1)
    return {
        "dosages": dosages,
        "W": W,
        "y": pd.Series(y, index=dosages.index, name="y"),
        "effects": pd.Series(effects, index=dosages.columns, name="effect"),
        "h2": h2,
    }
