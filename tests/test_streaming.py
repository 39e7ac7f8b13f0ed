"""
Test cases for the streamed solver and genomic scoring.
"""

import pytest
import numpy as np
import pandas as pd

import sys
import os
# Add parent directory to path to find pygreml package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pygreml.genotypes import write_genotype_file, standardize_dosages
from pygreml.solver import SolverOptions, gsru
from pygreml.streaming import rsolve, genomic_score
from pygreml.datasets import simulate_genotypes, simulate_phenotype
from pygreml.exceptions import InputShapeError, DataCompletenessWarning

OPTIONS = SolverOptions(max_iter=1000, tol=1e-12)


class TestRSolve:
    """Test cases for the disk-backed Gauss-Seidel solver."""

    def setup_method(self):
        self.dosages = simulate_genotypes(n=40, m=15, seed=11)
        self.W = standardize_dosages(self.dosages.to_numpy())
        self.y, self.s_true = simulate_phenotype(self.W, h2=0.7, n_causal=4, mean=5.0, seed=12)

    def _store(self, tmp_path):
        return write_genotype_file(tmp_path / "geno.raw", self.dosages.to_numpy(),
                                   ids=list(self.dosages.index), marker_ids=list(self.dosages.columns))

    def test_matches_dense_solver(self, tmp_path):
        store = self._store(tmp_path)
        X = np.ones((40, 1))
        streamed = rsolve(self.y, store, X=X, lambda_=3.0, options=OPTIONS)
        dense = gsru(self.y, self.W, X=X, lambda_=3.0, options=OPTIONS)

        np.testing.assert_allclose(streamed.s, dense.s, atol=1e-8)
        np.testing.assert_allclose(streamed.yhat, dense.yhat, atol=1e-8)
        np.testing.assert_allclose(streamed.b, dense.b, atol=1e-8)
        assert list(streamed.marker_ids) == list(self.dosages.columns)

    def test_solution_satisfies_ridge_equations(self, tmp_path):
        store = self._store(tmp_path)
        X = np.ones((40, 1))
        fit = rsolve(self.y, store, X=X, lambda_=3.0, options=OPTIONS)

        # Residual after the initial intercept fit, corrected for the marker effects
        e = self.y - np.mean(self.y) - self.W @ fit.s
        np.testing.assert_allclose(self.W.T @ e, 3.0 * fit.s, atol=1e-3)

    def test_matches_dense_solver_with_weights(self, tmp_path):
        store = self._store(tmp_path)
        streamed = rsolve(self.y, store, lambda_=3.0, weights=True, options=OPTIONS)
        dense = gsru(self.y, self.W, lambda_=3.0, weights=True, options=OPTIONS)

        np.testing.assert_allclose(streamed.lambda_, dense.lambda_, rtol=1e-10)
        np.testing.assert_allclose(streamed.s, dense.s, atol=1e-8)

    def test_individual_subset_in_any_order(self, tmp_path):
        store = self._store(tmp_path)
        rows = np.array([30, 2, 17, 5, 9, 21, 11, 38, 0, 14, 25, 33, 7, 19, 28, 1, 36, 12, 23, 4])
        ids = self.dosages.index[rows]
        streamed = rsolve(self.y[rows], store, individual_ids=ids, lambda_=2.0, options=OPTIONS)
        dense = gsru(self.y[rows], self.W[rows], lambda_=2.0, options=OPTIONS)

        np.testing.assert_allclose(streamed.s, dense.s, atol=1e-8)
        assert list(streamed.ids) == list(ids)

    def test_missing_markers_dropped(self, tmp_path):
        store = self._store(tmp_path)
        with pytest.warns(DataCompletenessWarning):
            fit = rsolve(self.y, store, marker_ids=["m9", "m3", "absent", "m1"], lambda_=1.0)

        assert fit.n_dropped == 1
        # Effects come back in file order
        assert list(fit.marker_ids) == ["m1", "m3", "m9"]
        dense = gsru(self.y, self.W[:, [0, 2, 8]], lambda_=1.0, options=SolverOptions(tol=1e-5))
        np.testing.assert_allclose(fit.s, dense.s, atol=1e-6)

    def test_zero_variance_marker(self, tmp_path):
        dosages = self.dosages.to_numpy().copy()
        dosages[:, 3] = 1.0
        store = write_genotype_file(tmp_path / "mono.raw", dosages)
        fit = rsolve(self.y, store, lambda_=1.0, options=OPTIONS)

        assert fit.s[3] == 0.0

    def test_rows_required_when_sizes_differ(self, tmp_path):
        store = self._store(tmp_path)
        with pytest.raises(InputShapeError, match="individual_ids"):
            rsolve(self.y[:10], store)

    def test_no_markers_found(self, tmp_path):
        store = self._store(tmp_path)
        with pytest.warns(DataCompletenessWarning):
            with pytest.raises(InputShapeError):
                rsolve(self.y, store, marker_ids=["absent"])


class TestGenomicScore:
    """Test cases for chunked scoring."""

    def setup_method(self):
        self.dosages = simulate_genotypes(n=25, m=9, seed=21)
        self.W = standardize_dosages(self.dosages.to_numpy())

    def _store(self, tmp_path):
        return write_genotype_file(tmp_path / "geno.raw", self.dosages.to_numpy(),
                                   ids=list(self.dosages.index), marker_ids=list(self.dosages.columns))

    def test_single_effect_column(self, tmp_path):
        store = self._store(tmp_path)
        effects = pd.Series(np.arange(9, dtype=float), index=self.dosages.columns, name="prs")
        score = genomic_score(store, effects, msize=4)

        assert isinstance(score, pd.Series)
        assert score.name == "prs"
        np.testing.assert_allclose(score.to_numpy(), self.W @ effects.to_numpy())
        assert list(score.index) == list(self.dosages.index)

    def test_multiple_columns_and_subset(self, tmp_path):
        store = self._store(tmp_path)
        rng = np.random.default_rng(0)
        effects = pd.DataFrame(rng.normal(size=(9, 2)), index=self.dosages.columns, columns=["a", "b"])
        # Effects listed out of file order
        effects = effects.iloc[::-1]
        ids = ["3", "10", "1"]
        score = genomic_score(store, effects, ids=ids, msize=2)

        rows = [2, 9, 0]
        expected = self.W[rows] @ effects.loc[self.dosages.columns].to_numpy()
        np.testing.assert_allclose(score.to_numpy(), expected)
        assert list(score.columns) == ["a", "b"]

    def test_unknown_markers_warned(self, tmp_path):
        store = self._store(tmp_path)
        effects = pd.Series([1.0, 2.0], index=["m2", "zzz"])
        with pytest.warns(DataCompletenessWarning):
            score = genomic_score(store, effects)

        np.testing.assert_allclose(score.to_numpy(), self.W[:, 1])

    def test_scores_streamed_fit(self, tmp_path):
        store = self._store(tmp_path)
        y = self.W @ np.linspace(-1, 1, 9) + 1.0
        fit = rsolve(y, store, X=np.ones((25, 1)), lambda_=1.0)
        score = genomic_score(store, fit.effects)

        np.testing.assert_allclose(score.to_numpy(), fit.g, atol=1e-10)
