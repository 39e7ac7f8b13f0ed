"""
Test cases for the binary genotype store.
"""

import pytest
import numpy as np
import warnings

import sys
import os
# Add parent directory to path to find pygreml package
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pygreml.genotypes import GenotypeStore, write_genotype_file, standardize_dosages
from pygreml.datasets import simulate_genotypes
from pygreml.exceptions import InputShapeError, DataCompletenessWarning


@pytest.fixture
def dosages():
    return simulate_genotypes(n=12, m=7, seed=3).to_numpy()


@pytest.fixture
def store(tmp_path, dosages):
    return write_genotype_file(tmp_path / "geno.raw", dosages)


class TestFileLayout:
    """Test cases for the marker-major byte layout."""

    def test_file_size(self, store):
        assert store.path.stat().st_size == 12 * 7
        assert store.n == 12
        assert store.m == 7

    def test_marker_offsets(self, store, dosages):
        raw = np.fromfile(store.path, dtype=np.uint8)
        j = 4
        np.testing.assert_array_equal(raw[j * 12:(j + 1) * 12], dosages[:, j] + 1)

    def test_raw_codes_with_missing(self, tmp_path, dosages):
        dosages = dosages.copy()
        dosages[3, 2] = np.nan
        store = write_genotype_file(tmp_path / "geno.raw", dosages)

        with store.open_pass() as reader:
            raw = reader.read_raw(2)

        assert raw[3] == 0
        np.testing.assert_array_equal(np.delete(raw, 3), np.delete(dosages[:, 2], 3) + 1)

    def test_size_mismatch(self, tmp_path):
        path = tmp_path / "short.raw"
        np.ones(10, dtype=np.uint8).tofile(path)
        with pytest.raises(InputShapeError, match="expected n\\*m"):
            GenotypeStore(path, ids=["a", "b", "c"], marker_ids=["m1", "m2", "m3", "m4"])

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            GenotypeStore(tmp_path / "none.raw", ids=["a"], marker_ids=["m1"])

    def test_invalid_dosages(self, tmp_path):
        with pytest.raises(ValueError, match="0, 1, 2"):
            write_genotype_file(tmp_path / "bad.raw", np.array([[0.0, 3.0], [1.0, 2.0]]))


class TestStandardisation:
    """Test cases for centring and scaling on read."""

    def test_read_chunk_matches_in_memory(self, store, dosages):
        W = store.read_chunk(np.arange(7))
        np.testing.assert_allclose(W, standardize_dosages(dosages))

    def test_allele_frequencies(self, store, dosages):
        np.testing.assert_allclose(store.freq, dosages.mean(axis=0) / 2.0)

    def test_missing_genotypes_map_to_zero(self, tmp_path, dosages):
        dosages = dosages.copy()
        dosages[0, 1] = np.nan
        store = write_genotype_file(tmp_path / "geno.raw", dosages)
        W = store.read_chunk([1])

        assert W[0, 0] == 0.0
        p = np.nanmean(dosages[:, 1]) / 2.0
        assert store.freq[1] == pytest.approx(p)
        expected = (dosages[1:, 1] - 2 * p) / np.sqrt(2 * p * (1 - p))
        np.testing.assert_allclose(W[1:, 0], expected)

    def test_monomorphic_marker(self, tmp_path, dosages):
        dosages = dosages.copy()
        dosages[:, 0] = 2.0
        store = write_genotype_file(tmp_path / "geno.raw", dosages)

        np.testing.assert_array_equal(store.read_chunk([0]), 0.0)

    def test_row_selection(self, store, dosages):
        rows = np.array([5, 0, 7])
        W = store.read_chunk([3, 1], rows=rows)
        full = standardize_dosages(dosages)

        np.testing.assert_allclose(W, full[np.ix_(rows, [3, 1])])

    def test_custom_codes(self, tmp_path, dosages):
        store = write_genotype_file(tmp_path / "geno.raw", dosages, missing_code=9, code_offset=0)
        np.testing.assert_allclose(store.read_chunk(np.arange(7)), standardize_dosages(dosages))


class TestReader:
    """Test cases for scoped, relative-seek reads."""

    def test_reads_in_any_order(self, store, dosages):
        full = standardize_dosages(dosages)
        with store.open_pass() as reader:
            w6 = reader.read(6)
            w2 = reader.read(2)
            w3 = reader.read(3)

        np.testing.assert_allclose(w6, full[:, 6])
        np.testing.assert_allclose(w2, full[:, 2])
        np.testing.assert_allclose(w3, full[:, 3])

    def test_position_tracks_last_marker(self, store):
        with store.open_pass() as reader:
            reader.read_raw(4)
            assert reader._current == 5
            assert reader._handle.tell() == 5 * store.n

    def test_file_closed_after_pass(self, store):
        with store.open_pass() as reader:
            handle = reader._handle
        assert handle.closed

    def test_file_closed_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.open_pass() as reader:
                handle = reader._handle
                raise RuntimeError("abandoned pass")
        assert handle.closed

    def test_out_of_range_marker(self, store):
        with store.open_pass() as reader:
            with pytest.raises(IndexError):
                reader.read_raw(7)

    def test_iter_chunks(self, store, dosages):
        chunks = list(store.iter_chunks([6, 0, 2, 3, 4, 1, 5], msize=3))

        assert [list(c) for c, _ in chunks] == [[0, 1, 2], [3, 4, 5], [6]]
        np.testing.assert_allclose(np.hstack([W for _, W in chunks]), standardize_dosages(dosages))


class TestMatching:
    """Test cases for marker and individual lookup."""

    def test_match_markers(self, store):
        cols, missing = store.match_markers(["m5", "m2", "x9"])

        np.testing.assert_array_equal(cols, [1, 4])
        assert missing == ["x9"]

    def test_select_markers_warns(self, store):
        with pytest.warns(DataCompletenessWarning):
            cols, missing = store.select_markers(["m1", "nope"])

        np.testing.assert_array_equal(cols, [0])
        assert missing == ["nope"]

    def test_all_markers_by_default(self, store):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            cols, missing = store.select_markers()

        np.testing.assert_array_equal(cols, np.arange(7))
        assert missing == []

    def test_match_individuals(self, store):
        np.testing.assert_array_equal(store.match_individuals(["3", "1"]), [2, 0])
        with pytest.raises(InputShapeError):
            store.match_individuals(["1", "unknown"])


class TestMetadata:
    """Test cases for persisting the store description."""

    def test_save_and_load(self, store, tmp_path):
        path = store.save_metadata(tmp_path / "geno.npz")
        loaded = GenotypeStore.from_metadata(path)

        assert loaded.n == store.n
        assert loaded.m == store.m
        np.testing.assert_array_equal(loaded.freq, store.freq)
        np.testing.assert_allclose(loaded.read_chunk([2]), store.read_chunk([2]))
        assert "n=12" in repr(loaded)
