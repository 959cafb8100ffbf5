"""
Shared pytest fixtures for chromstate tests.
"""
import pytest
import numpy as np
import tempfile

from chromstate.core.bins import BinnedCounts, SampleInfo


def simulate_truth(rng, n_bins, n_samples, block=20, p_on=0.3):
    """Blocks of 'block' bins in which each sample is on with probability p_on."""
    n_blocks = int(np.ceil(n_bins / block))
    bits = (rng.random((n_blocks, n_samples)) < p_on).astype(np.int8)
    return np.repeat(bits, block, axis=0)[:n_bins]


def simulate_counts(rng, truth, low=1.0, high=25.0):
    """Poisson counts, mean 'high' where truth is 1 and 'low' elsewhere."""
    return rng.poisson(np.where(truth > 0, high, low)).astype(np.int64)


def build_binned(counts, sample_ids, n_chroms=2, width=1000):
    """Spread the rows of counts evenly over n_chroms chromosomes."""
    counts = np.asarray(counts)
    if counts.ndim == 1:
        counts = counts.reshape(-1, 1)
    n_bins = counts.shape[0]
    per_chrom = int(np.ceil(n_bins / n_chroms))
    chrom, start = [], []
    for i in range(n_bins):
        c, j = divmod(i, per_chrom)
        chrom.append(f"chr{c + 1}")
        start.append(j * width)
    start = np.array(start, dtype=np.int64)
    return BinnedCounts(
        chrom=np.array(chrom),
        start=start,
        end=start + width,
        counts=counts,
        samples=[SampleInfo.from_id(sid) for sid in sample_ids],
    )


@pytest.fixture
def make_binned():
    """Factory: build_binned(counts, sample_ids, n_chroms=2, width=1000)."""
    return build_binned


@pytest.fixture
def peak_counts():
    """Ten bins with one clear enriched stretch (bins 4-6, 1-based)."""
    return np.array([0, 0, 0, 50, 55, 52, 0, 0, 0, 0])


@pytest.fixture
def peak_binned(peak_counts):
    """The ten-bin sample on a single chromosome."""
    return build_binned(peak_counts, ['H3K4me3-SHR-rep1'], n_chroms=1)


@pytest.fixture
def two_mark_truth():
    """True on/off calls of two marks over 400 bins."""
    rng = np.random.default_rng(42)
    return simulate_truth(rng, 400, 2)


@pytest.fixture
def two_mark_binned(two_mark_truth):
    """Two marks of one condition over two chromosomes."""
    rng = np.random.default_rng(7)
    counts = simulate_counts(rng, two_mark_truth)
    return build_binned(counts, ['H3K4me3-SHR-rep1', 'H3K27me3-SHR-rep1'])


@pytest.fixture
def univariate_pair(two_mark_binned):
    """Univariate fits of both marks."""
    from chromstate.inference.calling import call_peaks_univariate

    return [call_peaks_univariate(two_mark_binned, sid, n_iter=50)
            for sid in two_mark_binned.sample_ids]


@pytest.fixture
def multivariate_result(univariate_pair):
    """Joint fit of the two marks over all four combinatorial states."""
    from chromstate.inference.calling import call_peaks_multivariate

    return call_peaks_multivariate(univariate_pair, n_iter=20)


@pytest.fixture
def temp_dir():
    """Temporary directory for file operations."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir
