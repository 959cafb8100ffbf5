"""
Tests for the peak calling entry points and sample-parallel fitting.
"""
import os

import pytest
import numpy as np

from chromstate.core.bins import BinAlignmentError
from chromstate.core.model_io import save_result
from chromstate.core.results import AdvisoryWarning, ModelKind
from chromstate.core.states import StateSpaceTooLargeError, build_state_spaces, codes_to_bits
from chromstate.inference.calling import (
    call_peaks_by_mode,
    call_peaks_multivariate,
    call_peaks_univariate,
    fit_univariate_all,
)
from chromstate.inference.parallel import fit_univariate_parallel

from conftest import build_binned, simulate_counts, simulate_truth


@pytest.fixture
def two_condition_binned():
    """Two marks in two conditions, one replicate each."""
    rng = np.random.default_rng(3)
    truth = simulate_truth(rng, 300, 4)
    counts = simulate_counts(rng, truth)
    ids = ['H3K4me3-SHR-rep1', 'H3K27me3-SHR-rep1', 'H3K4me3-BN-rep1', 'H3K27me3-BN-rep1']
    return build_binned(counts, ids, n_chroms=3)


@pytest.fixture
def six_sample_results():
    rng = np.random.default_rng(11)
    truth = simulate_truth(rng, 120, 6, block=10)
    binned = build_binned(simulate_counts(rng, truth),
                          [f"H3K27me3-SHR-rep{i}" for i in range(1, 7)])
    return [call_peaks_univariate(binned, sid, n_iter=20) for sid in binned.sample_ids]


class TestUnivariate:
    def test_sample_id_required(self, two_mark_binned):
        with pytest.raises(ValueError):
            call_peaks_univariate(two_mark_binned)

    def test_result_shape(self, univariate_pair, two_mark_binned):
        result = univariate_pair[0]
        assert result.kind is ModelKind.UNIVARIATE
        assert result.sample_ids == ['H3K4me3-SHR-rep1']
        assert result.calls.shape == (two_mark_binned.n_bins,)
        assert result.posteriors.shape == (two_mark_binned.n_bins,)
        np.testing.assert_array_equal(result.base_calls, result.posteriors > 0.5)
        assert result.config['n_iter'] == 50

    def test_budget_advisory(self, two_mark_binned):
        with pytest.warns(AdvisoryWarning):
            result = call_peaks_univariate(two_mark_binned, 'H3K4me3-SHR-rep1', n_iter=1)
        assert 'not-converged' in result.diagnostics.codes()
        assert result.diagnostics.advisories[0].samples == ('H3K4me3-SHR-rep1',)

    def test_drop_posteriors(self, peak_binned):
        result = call_peaks_univariate(peak_binned, keep_posteriors=False)
        assert result.posteriors is None
        assert not result.has_posteriors
        assert len(result.peaks['H3K4me3-SHR-rep1']) == 1


class TestParallelFits:
    def test_serial_order(self, two_mark_binned):
        results = fit_univariate_all(two_mark_binned, n_iter=10)
        assert [r.sample.id for r in results] == two_mark_binned.sample_ids

    def test_processes_match_serial(self, two_mark_binned):
        serial = fit_univariate_parallel(two_mark_binned, n_workers=1, n_iter=10)
        parallel = fit_univariate_parallel(two_mark_binned, n_workers=2, n_iter=10)
        assert [r.sample.id for r in parallel] == two_mark_binned.sample_ids
        for a, b in zip(serial, parallel):
            np.testing.assert_allclose(a.model.means_, b.model.means_)
            np.testing.assert_array_equal(a.calls, b.calls)

    def test_subset_of_samples(self, two_mark_binned):
        results = fit_univariate_all(two_mark_binned, sample_ids=['H3K27me3-SHR-rep1'],
                                     n_iter=5)
        assert len(results) == 1
        assert results[0].sample.id == 'H3K27me3-SHR-rep1'


class TestMultivariate:
    def test_result_consistency(self, multivariate_result, two_mark_binned):
        result = multivariate_result
        assert result.kind is ModelKind.MULTIVARIATE
        assert result.sample_ids == two_mark_binned.sample_ids
        assert result.state_space.binary_strings() == ['00', '01', '10', '11']
        assert set(np.unique(result.state)) <= set(result.state_space.codes.tolist())
        np.testing.assert_array_equal(result.calls,
                                      codes_to_bits(result.state, 2))
        np.testing.assert_allclose(result.state_posteriors.sum(axis=1), 1.0)
        np.testing.assert_allclose(result.posteriors,
                                   result.hmm.sample_posteriors(result.state_posteriors))
        assert result.transmat.shape == (4, 4)

    def test_most_likely_state_is_argmax(self, multivariate_result):
        result = multivariate_result
        idx = np.argmax(result.state_posteriors, axis=1)
        np.testing.assert_array_equal(result.state, result.state_space.codes[idx])

    def test_combination_labels(self, multivariate_result):
        labels = multivariate_result.combination()
        assert set(labels) <= set(multivariate_result.state_space.labels)

    def test_zero_iterations(self, univariate_pair):
        result = call_peaks_multivariate(univariate_pair, n_iter=0)
        assert result.hmm.n_iter_ == 0
        np.testing.assert_allclose(np.diag(result.transmat), 0.9)
        assert 'not-converged' not in result.diagnostics.codes()

    def test_univariate_advisories_carried(self, two_mark_binned):
        with pytest.warns(AdvisoryWarning):
            pair = [call_peaks_univariate(two_mark_binned, sid, n_iter=1)
                    for sid in two_mark_binned.sample_ids]
        result = call_peaks_multivariate(pair, n_iter=0)
        assert result.diagnostics.codes().count('not-converged') == 2

    def test_too_many_states(self, six_sample_results):
        with pytest.raises(StateSpaceTooLargeError):
            call_peaks_multivariate(six_sample_results, n_iter=0)

    def test_select_frequent_states(self, six_sample_results):
        with pytest.warns(AdvisoryWarning):
            result = call_peaks_multivariate(six_sample_results, select_states=True,
                                             max_states=16, n_iter=2)
        assert result.state_space.n_states == 16
        assert 0 in result.state_space.codes
        assert 'state-selection' in result.diagnostics.codes()

    def test_explicit_state_space_order(self, univariate_pair):
        samples = [univariate_pair[1].sample, univariate_pair[0].sample]
        space = build_state_spaces(samples, 'full')[0]
        result = call_peaks_multivariate(univariate_pair, state_space=space, n_iter=0)
        assert result.sample_ids == [s.id for s in samples]
        np.testing.assert_array_equal(result.counts[:, 0], univariate_pair[1].counts)

    def test_misaligned_bins(self, univariate_pair, make_binned):
        other = make_binned(univariate_pair[1].counts, ['H3K9me3-SHR-rep1'], width=500)
        shifted = call_peaks_univariate(other, n_iter=5)
        with pytest.raises(BinAlignmentError):
            call_peaks_multivariate([univariate_pair[0], shifted], n_iter=0)

    def test_paths_and_results_mixed(self, univariate_pair, temp_dir):
        path = save_result(univariate_pair[1], os.path.join(temp_dir, 'second.json'))
        result = call_peaks_multivariate([univariate_pair[0], path], n_iter=0)
        assert result.sample_ids == [r.sample.id for r in univariate_pair]

    def test_rejects_other_inputs(self, univariate_pair):
        with pytest.raises(TypeError):
            call_peaks_multivariate([univariate_pair[0], 42], n_iter=0)


class TestByMode:
    def test_combinatorial(self, two_condition_binned):
        result = call_peaks_by_mode(two_condition_binned, mode='combinatorial', n_iter=5)
        assert result.kind is ModelKind.COMBINED
        assert [c.state_space.name for c in result.components] == \
            ['condition:SHR', 'condition:BN']
        assert sorted(result.sample_ids) == sorted(two_condition_binned.sample_ids)
        assert result.sample_calls().shape == (two_condition_binned.n_bins, 4)

    def test_differential_only(self, two_condition_binned):
        result = call_peaks_by_mode(two_condition_binned, mode='differential',
                                    differential_only=True, n_iter=5)
        for component in result.components:
            assert component.state_space.binary_strings() == ['01', '10']

    def test_separate(self, two_condition_binned):
        result = call_peaks_by_mode(two_condition_binned, mode='separate', n_iter=5)
        assert all(c.kind is ModelKind.UNIVARIATE for c in result.components)
        assert result.sample_ids == two_condition_binned.sample_ids

    def test_full_with_existing_fits(self, two_mark_binned, univariate_pair):
        result = call_peaks_by_mode(two_mark_binned, mode='full', n_iter=3,
                                    univariate_results=univariate_pair)
        assert len(result.components) == 1
        assert result.components[0].state_space.n_states == 4
        assert result.config['mode'] == 'full'

    def test_combinations_table(self, two_condition_binned):
        result = call_peaks_by_mode(two_condition_binned, mode='combinatorial', n_iter=3)
        table = result.combinations()
        assert list(table.columns) == ['chrom', 'start', 'end',
                                       'condition:SHR', 'condition:BN']
        assert len(table) == two_condition_binned.n_bins
