"""
Test cases for the cross-validation orchestrator.
"""

import pytest
import numpy as np

import sys
import os
# Add parent directory to path to find pygreml package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pygreml.validation import (
    FoldPrediction,
    as_partitions,
    cross_validate,
    make_partitions,
    marker_fold,
    reml_fold,
    sample_partitions,
    streamed_fold,
)
from pygreml.genotypes import write_genotype_file
from pygreml.kernels import compute_grm
from pygreml.solver import SolverOptions
from pygreml.datasets import simulate_example
from pygreml.utils import accuracy
from pygreml.exceptions import InputShapeError


class TestPartitions:
    """Test cases for building and validating validation sets."""

    def test_make_partitions_cover_all_rows(self):
        parts = make_partitions(23, nfolds=5, seed=1)

        assert len(parts) == 5
        np.testing.assert_array_equal(np.sort(np.concatenate(parts)), np.arange(23))

    def test_make_partitions_seeded(self):
        a = make_partitions(30, nfolds=3, seed=7)
        b = make_partitions(30, nfolds=3, seed=7)
        for x, y in zip(a, b):
            np.testing.assert_array_equal(x, y)

    def test_make_partitions_invalid(self):
        with pytest.raises(ValueError):
            make_partitions(10, nfolds=1)

    def test_sample_partitions(self):
        parts = sample_partitions(50, nsets=4, fold=10, seed=3)

        assert parts.shape == (5, 4)
        for j in range(4):
            assert len(np.unique(parts[:, j])) == 5

    def test_matrix_columns_are_folds(self):
        sets = as_partitions(np.array([[0, 3], [1, 4], [2, 5]]), n=6)

        np.testing.assert_array_equal(sets[0], [0, 1, 2])
        np.testing.assert_array_equal(sets[1], [3, 4, 5])

    def test_out_of_range(self):
        with pytest.raises(InputShapeError):
            as_partitions([[0, 1], [5, 6]], n=6)
        with pytest.raises(InputShapeError):
            as_partitions([[-1, 2]], n=6)

    def test_no_training_rows(self):
        with pytest.raises(InputShapeError):
            as_partitions([np.arange(6)], n=6)


class TestCrossValidate:
    """Test cases for the fold loop."""

    def setup_method(self):
        self.sim = simulate_example(n=100, m=50, n_causal=5, h2=0.9, seed=42)
        self.y = self.sim["y"]
        self.W = self.sim["W"]
        self.X = np.ones((100, 1))
        self.parts = make_partitions(100, nfolds=5, seed=2024)
        self.lam = 50 * (1 - 0.9) / 0.9

    def test_held_out_phenotypes_are_not_passed(self):
        seen = []

        def fit_fn(y_train, X, inputs, train, valid):
            seen.append((y_train.size, train, valid))
            assert np.intersect1d(train, valid).size == 0
            return FoldPrediction(predicted=np.zeros(valid.size))

        cross_validate(fit_fn, self.y, self.X, None, self.parts)

        for (size, train, valid), part in zip(seen, self.parts):
            assert size == 100 - part.size
            np.testing.assert_array_equal(valid, part)
            assert train.size + valid.size == 100

    def test_prediction_count_checked(self):
        def fit_fn(y_train, X, inputs, train, valid):
            return FoldPrediction(predicted=np.zeros(valid.size + 1))

        with pytest.raises(InputShapeError):
            cross_validate(fit_fn, self.y, self.X, None, self.parts)

    def test_marker_folds_predict_well(self):
        # Regression check on a fixed seeded simulation
        cv = cross_validate(marker_fold, self.y, self.X, self.W, self.parts, lambda_=self.lam)
        pooled = cv.pooled_accuracy()

        assert len(cv.folds) == 5
        assert pooled["corr"] > 0.5
        assert cv.observed.size == 100
        np.testing.assert_array_equal(np.sort(cv.index), np.arange(100))
        for col in ["fold", "n_train", "n_valid", "corr", "r2", "intercept", "slope", "mspe", "llik"]:
            assert col in cv.folds.columns

    def test_pooled_observations_follow_rows(self):
        cv = cross_validate(marker_fold, self.y, self.X, self.W, self.parts, lambda_=self.lam)

        np.testing.assert_array_equal(cv.observed, self.y.to_numpy()[cv.index])
        assert list(cv.ids) == list(self.y.index[cv.index])
        frame = cv.to_frame()
        assert list(frame.columns) == ["fold", "id", "row", "observed", "predicted"]

    def test_fold_statistics_match_accuracy(self):
        cv = cross_validate(marker_fold, self.y, self.X, self.W, self.parts, lambda_=self.lam)
        first = cv.fold == 1
        stats = accuracy(cv.observed[first], cv.predicted[first])

        assert cv.folds.loc[0, "corr"] == pytest.approx(stats["corr"])
        assert cv.folds.loc[0, "mspe"] == pytest.approx(stats["mspe"])

    def test_gsqr_folds(self):
        cv = cross_validate(marker_fold, self.y, self.X, self.W, self.parts,
                            method="gsqr", msets=10, lambda_=self.lam)

        assert cv.pooled_accuracy()["corr"] > 0.5

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown method"):
            cross_validate(marker_fold, self.y, self.X, self.W, self.parts, method="lasso")

    def test_streamed_folds_match_dense(self, tmp_path):
        dosages = self.sim["dosages"]
        store = write_genotype_file(tmp_path / "geno.raw", dosages.to_numpy(),
                                    ids=list(dosages.index), marker_ids=list(dosages.columns))
        options = SolverOptions(tol=1e-10)
        dense = cross_validate(marker_fold, self.y, self.X, self.W, self.parts,
                               lambda_=self.lam, options=options)
        streamed = cross_validate(streamed_fold, self.y, self.X, store, self.parts,
                                  lambda_=self.lam, options=options)

        np.testing.assert_allclose(streamed.predicted, dense.predicted, atol=1e-6)

    def test_reml_folds(self):
        G = compute_grm(self.W.to_numpy())
        cv = cross_validate(reml_fold, self.y, self.X, {"G": G}, self.parts)

        assert {"G", "E", "llik"} <= set(cv.folds.columns)
        assert np.all(np.isfinite(cv.folds["llik"]))
        # Neither component is left on the floor
        assert np.all(cv.folds[["G", "E"]].to_numpy() > 1e-3)
        assert np.all(cv.folds["llik"] > -1e3)
        assert cv.pooled_accuracy()["corr"] > 0.5

    def test_reml_fold_kernel_size_checked(self):
        with pytest.raises(InputShapeError):
            cross_validate(reml_fold, self.y, self.X, {"G": np.eye(101)}, self.parts)

    def test_verbose(self, capsys):
        cross_validate(marker_fold, self.y, self.X, self.W, self.parts[:2], lambda_=self.lam, verbose=True)
        out = capsys.readouterr().out

        assert "[CV fold 1/2]" in out
        assert "[CV fold 2/2]" in out
