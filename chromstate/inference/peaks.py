"""chromstate peak derivation and posterior cutoffs."""

from dataclasses import replace
from numbers import Real
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from chromstate.core.bins import chromosome_runs
from chromstate.core.results import ModelKind, PosteriorsNotKeptError

Cutoff = Union[None, float, Mapping[str, Optional[float]]]

PEAK_COLUMNS = ['chrom', 'start', 'end', 'max_posterior', 'first_bin', 'end_bin']


def empty_peaks() -> pd.DataFrame:
    return pd.DataFrame({
        'chrom': pd.Series([], dtype=str),
        'start': pd.Series([], dtype=np.int64),
        'end': pd.Series([], dtype=np.int64),
        'max_posterior': pd.Series([], dtype=float),
        'first_bin': pd.Series([], dtype=np.int64),
        'end_bin': pd.Series([], dtype=np.int64),
    })


def find_segments(calls: np.ndarray,
                  chrom_slices: Sequence[Tuple[str, int, int]]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Contiguous runs of called bins, never crossing a chromosome boundary.

    Returns:
        (starts, ends) row indices, ends exclusive
    """
    starts, ends = [], []
    calls = np.asarray(calls).astype(np.int8)
    for _, lo, hi in chrom_slices:
        # Pad with 0 (unmodified) at edges
        padded = np.concatenate([[0], calls[lo:hi], [0]])
        diff = np.diff(padded)
        # Peak starts: 0 -> 1 (diff == 1), ends: 1 -> 0 (diff == -1)
        starts.append(np.where(diff == 1)[0] + lo)
        ends.append(np.where(diff == -1)[0] + lo)
    if not starts:
        return np.array([], dtype=np.int64), np.array([], dtype=np.int64)
    return (np.concatenate(starts).astype(np.int64),
            np.concatenate(ends).astype(np.int64))


def peaks_from_calls(chrom: np.ndarray, start: np.ndarray, end: np.ndarray,
                     calls: np.ndarray, posteriors: Optional[np.ndarray]) -> pd.DataFrame:
    """
    Merge called bins into peaks.

    Args:
        chrom, start, end: Bin coordinates
        calls: 0/1 call per bin
        posteriors: Posterior of modification per bin; the peak score is the
            maximum inside the peak (NaN if None)

    Returns:
        DataFrame with PEAK_COLUMNS
    """
    seg_starts, seg_ends = find_segments(calls, chromosome_runs(chrom))
    if len(seg_starts) == 0:
        return empty_peaks()

    if posteriors is not None:
        posteriors = np.asarray(posteriors, dtype=float)
        max_post = np.array([posteriors[s:e].max() for s, e in zip(seg_starts, seg_ends)])
    else:
        max_post = np.full(len(seg_starts), np.nan)

    return pd.DataFrame({
        'chrom': pd.Series(np.asarray(chrom)[seg_starts], dtype=str),
        'start': np.asarray(start)[seg_starts].astype(np.int64),
        'end': np.asarray(end)[seg_ends - 1].astype(np.int64),
        'max_posterior': max_post.astype(float),
        'first_bin': seg_starts,
        'end_bin': seg_ends,
    })


def calls_from_peaks(n_bins: int, peaks: pd.DataFrame) -> np.ndarray:
    """0/1 call per bin covering exactly the given peaks."""
    calls = np.zeros(n_bins, dtype=np.int8)
    for first, last in zip(peaks['first_bin'].to_numpy(), peaks['end_bin'].to_numpy()):
        calls[first:last] = 1
    return calls


def resolve_cutoffs(cutoff: Cutoff, sample_ids: Sequence[str]) -> Dict[str, Optional[float]]:
    """
    Expand a scalar or per-sample cutoff to one threshold per sample.

    Samples missing from a mapping get None (default calls).
    """
    if cutoff is None or isinstance(cutoff, Real):
        thresholds = {sid: (None if cutoff is None else float(cutoff)) for sid in sample_ids}
    elif isinstance(cutoff, Mapping):
        unknown = set(cutoff) - set(sample_ids)
        if unknown:
            raise KeyError(f"Cutoff given for unknown samples: {sorted(unknown)}")
        thresholds = {sid: (None if cutoff.get(sid) is None else float(cutoff[sid]))
                      for sid in sample_ids}
    else:
        raise TypeError(f"Cutoff must be a number or a mapping, got {type(cutoff).__name__}")

    for sid, t in thresholds.items():
        if t is not None and not 0.0 <= t <= 1.0:
            raise ValueError(f"Cutoff for {sid} must be within [0, 1], got {t}")
    return thresholds


def _filter_peaks(peaks: pd.DataFrame, threshold: Optional[float]) -> pd.DataFrame:
    if threshold is None:
        return peaks.copy()
    return peaks[peaks['max_posterior'] > threshold].reset_index(drop=True)


def _with_calls(result, calls: np.ndarray, **changes):
    """Copy of a single-block result with new 2-D calls."""
    if result.kind is ModelKind.UNIVARIATE:
        calls = calls[:, 0]
    return replace(result, calls=calls, **changes)


def _component_cutoff(cutoff: Cutoff, sample_ids: Sequence[str]) -> Cutoff:
    if isinstance(cutoff, Mapping):
        return {sid: cutoff[sid] for sid in sample_ids if sid in cutoff}
    return cutoff


def _check_combined_samples(result, cutoff: Cutoff) -> None:
    if isinstance(cutoff, Mapping):
        unknown = set(cutoff) - set(result.sample_ids)
        if unknown:
            raise KeyError(f"Cutoff given for unknown samples: {sorted(unknown)}")


def apply_post_cutoff(result, cutoff: Cutoff):
    """
    Re-derive calls from per-bin posteriors.

    A bin is called for a sample iff its posterior of modification exceeds
    the sample's threshold; a threshold of None restores the most likely
    state calls. Any per-peak cutoff already set is applied again to the
    new peaks. Nothing is refitted and the input is not modified.

    Args:
        result: Univariate, multivariate or combined result
        cutoff: Scalar for all samples, or sample ID -> threshold

    Returns:
        New result of the same kind

    Raises:
        PosteriorsNotKeptError: The result was fitted with keep_posteriors=False
    """
    if result.kind is ModelKind.COMBINED:
        _check_combined_samples(result, cutoff)
        components = [apply_post_cutoff(c, _component_cutoff(cutoff, c.sample_ids))
                      for c in result.components]
        return replace(result, components=components)

    if not result.has_posteriors:
        raise PosteriorsNotKeptError(
            "Posteriors were not kept for this model (keep_posteriors=False); "
            "refit to change the per-bin cutoff"
        )
    thresholds = resolve_cutoffs(cutoff, result.sample_ids)
    posteriors = result.sample_posteriors()
    argmax = result.argmax_calls()

    calls = np.empty_like(argmax, dtype=np.int8)
    base_peaks = {}
    peaks = {}
    max_cut = result.max_post_cutoff or {}
    for s, sid in enumerate(result.sample_ids):
        t = thresholds[sid]
        col = argmax[:, s] if t is None else (posteriors[:, s] > t)
        base_peaks[sid] = peaks_from_calls(result.chrom, result.start, result.end,
                                           col, posteriors[:, s])
        peaks[sid] = _filter_peaks(base_peaks[sid], max_cut.get(sid))
        calls[:, s] = calls_from_peaks(len(col), peaks[sid])

    return _with_calls(result, calls, base_peaks=base_peaks, peaks=peaks,
                       post_cutoff=thresholds)


def apply_max_post_cutoff(result, cutoff: Cutoff):
    """
    Keep only peaks whose maximum posterior exceeds the threshold.

    Peaks are the contiguous runs of the current per-bin calls; the filter
    always starts again from that full peak set, so thresholds can be
    lowered as well as raised. Works without stored per-bin posteriors.

    Args:
        result: Univariate, multivariate or combined result
        cutoff: Scalar for all samples, or sample ID -> threshold

    Returns:
        New result of the same kind
    """
    if result.kind is ModelKind.COMBINED:
        _check_combined_samples(result, cutoff)
        components = [apply_max_post_cutoff(c, _component_cutoff(cutoff, c.sample_ids))
                      for c in result.components]
        return replace(result, components=components)

    thresholds = resolve_cutoffs(cutoff, result.sample_ids)
    n_bins = len(result.chrom)
    calls = np.empty((n_bins, len(result.sample_ids)), dtype=np.int8)
    peaks = {}
    for s, sid in enumerate(result.sample_ids):
        peaks[sid] = _filter_peaks(result.base_peaks[sid], thresholds[sid])
        calls[:, s] = calls_from_peaks(n_bins, peaks[sid])

    return _with_calls(result, calls, peaks=peaks, max_post_cutoff=thresholds)


def initial_peaks(chrom: np.ndarray, start: np.ndarray, end: np.ndarray,
                  calls: np.ndarray, posteriors: np.ndarray,
                  sample_ids: Sequence[str]) -> Dict[str, pd.DataFrame]:
    """Peaks of the most likely state calls for every sample column."""
    return {
        sid: peaks_from_calls(chrom, start, end, calls[:, s], posteriors[:, s])
        for s, sid in enumerate(sample_ids)
    }


def peaks_table(result) -> pd.DataFrame:
    """All current peaks of a result in one table with a 'sample' column."""
    frames: List[pd.DataFrame] = []
    for sid in result.sample_ids:
        df = result.peaks_for(sid)[['chrom', 'start', 'end', 'max_posterior']].copy()
        df.insert(0, 'sample', sid)
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=['sample', 'chrom', 'start', 'end', 'max_posterior'])
    return pd.concat(frames, ignore_index=True)
