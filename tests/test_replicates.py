"""
Tests for replicate agreement and outlier grouping.
"""
import os

import pytest
import numpy as np

from chromstate.core.model_io import load_result, save_result
from chromstate.core.results import AdvisoryWarning
from chromstate.inference.calling import call_peaks_univariate
from chromstate.inference.replicates import (
    call_peaks_replicates,
    correlation_matrix,
    distance_matrix,
    group_samples,
)

from conftest import build_binned, simulate_counts, simulate_truth

REPLICATES = [f"H3K27me3-SHR-rep{i}" for i in range(1, 5)]


@pytest.fixture
def replicate_results():
    """Three agreeing replicates and a fourth, sparser one with unrelated signal."""
    rng = np.random.default_rng(5)
    shared = simulate_truth(rng, 600, 1)
    outlier = simulate_truth(rng, 600, 1, p_on=0.15)
    truth = np.column_stack([shared, shared, shared, outlier])
    binned = build_binned(simulate_counts(rng, truth, high=30.0), REPLICATES)
    return [call_peaks_univariate(binned, sid, n_iter=30) for sid in REPLICATES]


@pytest.fixture
def replicate_analysis(replicate_results):
    with pytest.warns(AdvisoryWarning):
        return call_peaks_replicates(replicate_results, n_iter=20)


class TestHelpers:
    def test_constant_column(self):
        calls = np.array([[0, 1, 1], [0, 0, 0], [0, 1, 1]])
        corr = correlation_matrix(calls)
        np.testing.assert_allclose(np.diag(corr), 1.0)
        assert corr[0, 1] == 0.0 and corr[1, 0] == 0.0
        assert corr[1, 2] == pytest.approx(1.0)

    def test_distance_symmetric(self):
        corr = np.array([[1.0, 0.5], [0.5, 1.0]])
        dist = distance_matrix(corr)
        np.testing.assert_allclose(dist, dist.T)
        assert dist[0, 1] == pytest.approx(np.sqrt(0.5))
        np.testing.assert_allclose(np.diag(dist), 0.0)

    def test_groups_numbered_by_first_appearance(self):
        dist = np.array([[0.0, 2.0, 0.1],
                         [2.0, 0.0, 2.0],
                         [0.1, 2.0, 0.0]])
        np.testing.assert_array_equal(group_samples(dist, 0.2), [1, 2, 1])

    def test_single_sample_group(self):
        np.testing.assert_array_equal(group_samples(np.zeros((1, 1)), 0.2), [1])

    def test_cut_height(self):
        dist = np.array([[0.0, 0.3], [0.3, 0.0]])
        assert len(set(group_samples(dist, 0.2))) == 2
        assert len(set(group_samples(dist, 0.5))) == 1


class TestReplicateGrouping:
    def test_outlier_in_own_group(self, replicate_analysis):
        groups = replicate_analysis.info.info['group']
        assert groups[REPLICATES[0]] == groups[REPLICATES[1]] == groups[REPLICATES[2]]
        assert groups[REPLICATES[3]] != groups[REPLICATES[0]]
        assert replicate_analysis.info.n_groups == 2

    def test_divergence_advisory_names_dropped_replicate(self, replicate_analysis):
        advisories = [a for a in replicate_analysis.diagnostics
                      if a.code == 'replicate-divergence']
        assert len(advisories) == 1
        assert advisories[0].samples == (REPLICATES[3],)
        assert 'replicate-divergence' in replicate_analysis.model.diagnostics.codes()

    def test_info_table(self, replicate_analysis, replicate_results):
        info = replicate_analysis.info.info
        assert list(info.index) == REPLICATES
        assert list(info.columns) == ['total_count', 'weight_univariate',
                                      'weight_multivariate', 'group']
        assert info['total_count'].tolist() == [int(r.counts.sum()) for r in replicate_results]
        assert ((info['weight_multivariate'] >= 0) & (info['weight_multivariate'] <= 1)).all()

    def test_matrices(self, replicate_analysis):
        corr = replicate_analysis.info.correlation
        dist = replicate_analysis.info.distance
        assert list(corr.index) == REPLICATES
        np.testing.assert_allclose(np.diag(corr.to_numpy()), 1.0)
        assert corr.loc[REPLICATES[0], REPLICATES[1]] > 0.8
        np.testing.assert_allclose(dist.to_numpy(), dist.to_numpy().T)

    def test_model_carries_info(self, replicate_analysis):
        assert replicate_analysis.model.replicate_info is replicate_analysis.info
        assert replicate_analysis.model.state_space.n_states == 16

    def test_info_survives_save(self, replicate_analysis, temp_dir):
        path = save_result(replicate_analysis.model, os.path.join(temp_dir, 'reps.json'))
        loaded = load_result(path).replicate_info
        assert loaded.info['group'].tolist() == replicate_analysis.info.info['group'].tolist()
        np.testing.assert_allclose(loaded.distance.to_numpy(),
                                   replicate_analysis.info.distance.to_numpy())


class TestReanalysis:
    def test_larger_cut_merges_groups(self, replicate_analysis):
        regrouped = call_peaks_replicates(replicate_analysis.model, max_distance=10.0)
        assert regrouped.info.n_groups == 1
        assert len(regrouped.diagnostics) == 0
        # the earlier result is not modified
        assert replicate_analysis.info.n_groups == 2

    def test_same_cut_same_groups(self, replicate_analysis):
        with pytest.warns(AdvisoryWarning):
            regrouped = call_peaks_replicates(replicate_analysis.model, max_distance=0.2)
        assert regrouped.info.info['group'].tolist() == \
            replicate_analysis.info.info['group'].tolist()

    def test_no_replicate_info(self, multivariate_result):
        with pytest.warns(AdvisoryWarning):
            analysis = call_peaks_replicates(multivariate_result)
        assert analysis.diagnostics.codes() == ['no-replicate-info']
        assert analysis.info is None


class TestEdgeCases:
    def test_single_replicate(self, univariate_pair):
        analysis = call_peaks_replicates([univariate_pair[0]])
        assert analysis.model is None
        info = analysis.info.info
        assert info['group'].tolist() == [1]
        assert np.isnan(info['weight_multivariate'].iloc[0])
        assert len(analysis.diagnostics) == 0

    def test_force_equal_two_states(self, replicate_results):
        analysis = call_peaks_replicates(replicate_results[:3], force_equal=True, n_iter=5)
        assert analysis.model.state_space.binary_strings() == ['000', '111']
        calls = analysis.model.argmax_calls()
        assert np.all(calls == calls[:, [0]])

    def test_empty(self):
        with pytest.raises(ValueError):
            call_peaks_replicates([])
