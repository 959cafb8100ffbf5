"""
Tests for peak derivation and posterior cutoffs (chromstate.inference.peaks).
"""
import pytest
import numpy as np
import pandas as pd

from chromstate.core.results import ModelKind, PosteriorsNotKeptError
from chromstate.inference.calling import (
    call_peaks_by_mode,
    call_peaks_multivariate,
    call_peaks_univariate,
)
from chromstate.inference.peaks import (
    PEAK_COLUMNS,
    empty_peaks,
    apply_max_post_cutoff,
    apply_post_cutoff,
    calls_from_peaks,
    find_segments,
    peaks_from_calls,
    peaks_table,
    resolve_cutoffs,
)


def _total_width(peaks):
    return int((peaks['end'] - peaks['start']).sum())


def _assert_same_peaks(a, b):
    pd.testing.assert_frame_equal(a.reset_index(drop=True), b.reset_index(drop=True))


class TestSegments:
    def test_runs(self):
        calls = np.array([0, 1, 1, 0, 1, 0, 0, 1])
        starts, ends = find_segments(calls, [('chr1', 0, 8)])
        np.testing.assert_array_equal(starts, [1, 4, 7])
        np.testing.assert_array_equal(ends, [3, 5, 8])

    def test_split_at_chromosome_boundary(self):
        calls = np.array([1, 1, 1, 1])
        starts, ends = find_segments(calls, [('chr1', 0, 2), ('chr2', 2, 4)])
        np.testing.assert_array_equal(starts, [0, 2])
        np.testing.assert_array_equal(ends, [2, 4])

    def test_no_calls(self):
        starts, ends = find_segments(np.zeros(5), [('chr1', 0, 5)])
        assert len(starts) == 0 and len(ends) == 0


class TestPeaksFromCalls:
    def test_coordinates_and_score(self):
        chrom = np.array(['chr1'] * 4 + ['chr2'] * 2)
        start = np.array([0, 100, 200, 300, 0, 100])
        end = start + 100
        calls = np.array([0, 1, 1, 0, 1, 1])
        post = np.array([0.1, 0.7, 0.95, 0.2, 0.6, 0.8])

        peaks = peaks_from_calls(chrom, start, end, calls, post)

        assert list(peaks.columns) == PEAK_COLUMNS
        assert peaks['chrom'].tolist() == ['chr1', 'chr2']
        assert peaks['start'].tolist() == [100, 0]
        assert peaks['end'].tolist() == [300, 200]
        assert peaks['max_posterior'].tolist() == [0.95, 0.8]
        assert peaks['first_bin'].tolist() == [1, 4]
        assert peaks['end_bin'].tolist() == [3, 6]

    def test_empty(self):
        peaks = peaks_from_calls(np.array(['chr1'] * 3), np.array([0, 1, 2]),
                                 np.array([1, 2, 3]), np.zeros(3), np.zeros(3))
        assert len(peaks) == 0
        assert list(peaks.columns) == PEAK_COLUMNS

    def test_empty_table_has_same_dtypes(self):
        chrom = np.array(['chr1'] * 3)
        start = np.array([0, 10, 20])
        peaks = peaks_from_calls(chrom, start, start + 10, np.array([0, 1, 1]),
                                 np.array([0.1, 0.8, 0.9]))
        pd.testing.assert_series_equal(peaks.dtypes, empty_peaks().dtypes)

    def test_calls_from_peaks_inverse(self):
        chrom = np.array(['chr1'] * 6)
        start = np.arange(6) * 10
        calls = np.array([1, 1, 0, 0, 1, 0])
        peaks = peaks_from_calls(chrom, start, start + 10, calls, None)
        np.testing.assert_array_equal(calls_from_peaks(6, peaks), calls)
        assert peaks['max_posterior'].isna().all()


class TestResolveCutoffs:
    def test_scalar(self):
        assert resolve_cutoffs(0.9, ['a', 'b']) == {'a': 0.9, 'b': 0.9}

    def test_none(self):
        assert resolve_cutoffs(None, ['a']) == {'a': None}

    def test_mapping_missing_samples_keep_default(self):
        assert resolve_cutoffs({'b': 0.5}, ['a', 'b']) == {'a': None, 'b': 0.5}

    def test_unknown_sample(self):
        with pytest.raises(KeyError):
            resolve_cutoffs({'c': 0.5}, ['a', 'b'])

    @pytest.mark.parametrize('bad', [-0.1, 1.5])
    def test_out_of_range(self, bad):
        with pytest.raises(ValueError):
            resolve_cutoffs(bad, ['a'])

    def test_bad_type(self):
        with pytest.raises(TypeError):
            resolve_cutoffs('0.5', ['a'])


class TestUnivariateCutoffs:
    def test_default_peak(self, peak_binned):
        result = call_peaks_univariate(peak_binned)
        peaks = result.peaks['H3K4me3-SHR-rep1']
        assert len(peaks) == 1
        row = peaks.iloc[0]
        assert (row['start'], row['end']) == (3000, 6000)
        assert (row['first_bin'], row['end_bin']) == (3, 6)
        assert row['max_posterior'] > 0.9

    def test_post_cutoff_keeps_1d_calls(self, peak_binned):
        result = apply_post_cutoff(call_peaks_univariate(peak_binned), 0.5)
        assert result.kind is ModelKind.UNIVARIATE
        assert result.calls.ndim == 1
        np.testing.assert_array_equal(result.calls, [0, 0, 0, 1, 1, 1, 0, 0, 0, 0])

    def test_post_cutoff_needs_posteriors(self, peak_binned):
        result = call_peaks_univariate(peak_binned, keep_posteriors=False)
        with pytest.raises(PosteriorsNotKeptError):
            apply_post_cutoff(result, 0.5)

    def test_max_post_cutoff_without_posteriors(self, peak_binned):
        result = call_peaks_univariate(peak_binned, keep_posteriors=False)
        strict = apply_max_post_cutoff(result, 0.999999999)
        relaxed = apply_max_post_cutoff(strict, 0.5)
        assert len(relaxed.peaks['H3K4me3-SHR-rep1']) == 1
        assert len(strict.peaks['H3K4me3-SHR-rep1']) <= 1


class TestMultivariateCutoffs:
    def test_post_cutoff_idempotent(self, multivariate_result):
        once = apply_post_cutoff(multivariate_result, 0.9)
        twice = apply_post_cutoff(once, 0.9)
        for sid in multivariate_result.sample_ids:
            _assert_same_peaks(once.peaks[sid], twice.peaks[sid])
        np.testing.assert_array_equal(once.calls, twice.calls)

    def test_max_post_cutoff_idempotent(self, multivariate_result):
        once = apply_max_post_cutoff(multivariate_result, 0.99)
        twice = apply_max_post_cutoff(once, 0.99)
        for sid in multivariate_result.sample_ids:
            _assert_same_peaks(once.peaks[sid], twice.peaks[sid])

    def test_max_post_cutoff_monotone(self, multivariate_result):
        previous = None
        for t in [0.0, 0.5, 0.9, 0.99, 0.9999, 0.999999, 1.0]:
            result = apply_max_post_cutoff(multivariate_result, t)
            current = [(len(result.peaks[sid]), _total_width(result.peaks[sid]))
                       for sid in result.sample_ids]
            if previous is not None:
                for (n, w), (n_prev, w_prev) in zip(current, previous):
                    assert n <= n_prev
                    assert w <= w_prev
            previous = current

    def test_post_cutoff_shrinks_calls(self, multivariate_result):
        loose = apply_post_cutoff(multivariate_result, 0.5)
        strict = apply_post_cutoff(multivariate_result, 0.999)
        assert np.all(strict.calls <= loose.calls)

    def test_max_post_cutoff_can_be_lowered(self, multivariate_result):
        strict = apply_max_post_cutoff(multivariate_result, 0.999999)
        lowered = apply_max_post_cutoff(strict, None)
        for sid in multivariate_result.sample_ids:
            _assert_same_peaks(lowered.peaks[sid], multivariate_result.base_peaks[sid])
        np.testing.assert_array_equal(lowered.calls, multivariate_result.argmax_calls())

    def test_none_restores_argmax_calls(self, multivariate_result):
        changed = apply_post_cutoff(multivariate_result, 0.999)
        restored = apply_post_cutoff(changed, None)
        np.testing.assert_array_equal(restored.calls, multivariate_result.argmax_calls())

    def test_per_sample_cutoff(self, multivariate_result):
        first, second = multivariate_result.sample_ids
        result = apply_max_post_cutoff(multivariate_result, {first: 1.0})
        assert len(result.peaks[first]) == 0
        _assert_same_peaks(result.peaks[second], multivariate_result.peaks[second])

    def test_post_cutoff_reapplies_peak_cutoff(self, multivariate_result):
        filtered = apply_max_post_cutoff(multivariate_result, 0.99)
        result = apply_post_cutoff(filtered, 0.6)
        for sid in result.sample_ids:
            assert (result.peaks[sid]['max_posterior'] > 0.99).all()
            np.testing.assert_array_equal(
                result.calls[:, result.sample_ids.index(sid)],
                calls_from_peaks(len(result.chrom), result.peaks[sid]))

    def test_input_not_modified(self, multivariate_result):
        before = {sid: df.copy() for sid, df in multivariate_result.peaks.items()}
        calls_before = multivariate_result.calls.copy()
        apply_post_cutoff(multivariate_result, 0.999)
        apply_max_post_cutoff(multivariate_result, 0.999)
        for sid, df in before.items():
            _assert_same_peaks(multivariate_result.peaks[sid], df)
        np.testing.assert_array_equal(multivariate_result.calls, calls_before)

    def test_dropped_posteriors(self, univariate_pair):
        result = call_peaks_multivariate(univariate_pair, n_iter=3, keep_posteriors=False)
        assert result.posteriors is None and result.state_posteriors is None
        with pytest.raises(PosteriorsNotKeptError):
            apply_post_cutoff(result, 0.9)
        apply_max_post_cutoff(result, 0.9)


class TestCombinedCutoffs:
    def test_separate_mode(self, two_mark_binned):
        combined = call_peaks_by_mode(two_mark_binned, mode='separate', n_iter=30)
        first = combined.sample_ids[0]
        result = apply_max_post_cutoff(combined, {first: 1.0})
        assert result.kind is ModelKind.COMBINED
        assert len(result.peaks_for(first)) == 0
        assert result.sample_calls().shape == (two_mark_binned.n_bins, 2)

    def test_unknown_sample(self, two_mark_binned):
        combined = call_peaks_by_mode(two_mark_binned, mode='separate', n_iter=5)
        with pytest.raises(KeyError):
            apply_post_cutoff(combined, {'H3K9me3-SHR-rep1': 0.5})


class TestPeaksTable:
    def test_columns(self, multivariate_result):
        table = peaks_table(multivariate_result)
        assert list(table.columns) == ['sample', 'chrom', 'start', 'end', 'max_posterior']
        assert set(table['sample']) <= set(multivariate_result.sample_ids)
        assert len(table) == sum(len(p) for p in multivariate_result.peaks.values())
