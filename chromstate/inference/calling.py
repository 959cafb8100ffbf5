"""
Peak calling entry points.

    call_peaks_univariate    mixture fit of one sample
    fit_univariate_all       mixture fits of every sample (parallel)
    call_peaks_multivariate  joint HMM over one state space
    call_peaks_by_mode       one analysis mode over all samples

Fitting settings are stored in each result's config dict.
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from chromstate.core.bins import BinAlignmentError, BinnedCounts, chromosome_runs
from chromstate.core.emission import UnivariateModel
from chromstate.core.hmm import MultivariateHMM
from chromstate.core.model_io import resolve_univariate
from chromstate.core.results import (
    CombinedResult,
    Diagnostics,
    MultivariateResult,
    UnivariateResult,
)
from chromstate.core.states import (
    DEFAULT_MAX_STATES,
    StateSpace,
    StateSpaceTooLargeError,
    build_state_spaces,
    codes_to_bits,
    select_frequent_states,
)
from chromstate.inference.parallel import fit_univariate_parallel
from chromstate.inference.peaks import initial_peaks


def call_peaks_univariate(binned: BinnedCounts,
                          sample_id: Optional[str] = None,
                          n_components: int = 3,
                          tol: float = 0.01,
                          n_iter: Optional[int] = None,
                          max_time: Optional[float] = None,
                          keep_posteriors: bool = True,
                          verbose: bool = False) -> UnivariateResult:
    """
    Fit the count mixture of one sample and call peaks.

    A bin is called modified when the modified component is the more
    likely of the two states (posterior > 0.5).

    Args:
        binned: Counts; may hold several samples
        sample_id: Sample to fit (may be omitted for single-sample input)
        n_components: 3 with zero-inflation, 2 without
        tol: Log-likelihood improvement at which EM stops
        n_iter: Maximum EM iterations (None = no limit)
        max_time: Maximum EM time in seconds (None = no limit)
        keep_posteriors: Keep per-bin posteriors (needed for apply_post_cutoff)
        verbose: Show EM progress

    Returns:
        UnivariateResult
    """
    if sample_id is None:
        if binned.n_samples != 1:
            raise ValueError(
                f"sample_id is required for input with {binned.n_samples} samples"
            )
        sample_id = binned.sample_ids[0]
    counts = binned.column(sample_id)
    sample = binned.samples[binned.sample_ids.index(sample_id)]

    model = UnivariateModel(n_components=n_components, n_iter=n_iter,
                            tol=tol, max_time=max_time)
    model.fit(counts, verbose=verbose, desc=f"EM {sample_id}")

    diagnostics = Diagnostics()
    for code, message in model.advisories_:
        diagnostics.add(code, message, [sample_id])

    posteriors = model.predict_proba(counts)
    base_calls = (posteriors > 0.5).astype(np.int8)
    base_peaks = initial_peaks(binned.chrom, binned.start, binned.end,
                               base_calls.reshape(-1, 1), posteriors.reshape(-1, 1),
                               [sample_id])

    if verbose:
        print(f"{sample_id}: {len(base_peaks[sample_id])} peaks, "
              f"modified weight {model.modified_weight:.3f}")

    return UnivariateResult(
        sample=sample,
        chrom=binned.chrom,
        start=binned.start,
        end=binned.end,
        counts=counts.copy(),
        model=model,
        posteriors=posteriors if keep_posteriors else None,
        base_calls=base_calls,
        calls=base_calls.copy(),
        base_peaks=base_peaks,
        peaks={sid: df.copy() for sid, df in base_peaks.items()},
        config={
            'n_components': n_components,
            'tol': tol,
            'n_iter': n_iter,
            'max_time': max_time,
            'keep_posteriors': keep_posteriors,
        },
        diagnostics=diagnostics,
    )


def fit_univariate_all(binned: BinnedCounts,
                       sample_ids: Optional[Sequence[str]] = None,
                       n_workers: int = 1,
                       verbose: bool = False,
                       **kwargs) -> List[UnivariateResult]:
    """Univariate fits of every sample (or the given ones), in sample order."""
    return fit_univariate_parallel(binned, sample_ids=sample_ids, n_workers=n_workers,
                                   verbose=verbose, **kwargs)


def _check_same_bins(results: Sequence[UnivariateResult]) -> None:
    ref = results[0]
    for r in results[1:]:
        same = (
            len(r.chrom) == len(ref.chrom)
            and np.array_equal(np.asarray(r.chrom).astype(str), np.asarray(ref.chrom).astype(str))
            and np.array_equal(r.start, ref.start)
            and np.array_equal(r.end, ref.end)
        )
        if not same:
            raise BinAlignmentError(
                f"Bins of {r.sample.id} and {ref.sample.id} differ"
            )


def _limit_states(space: StateSpace, results: Sequence[UnivariateResult],
                  max_states: Optional[int], select_states: bool,
                  diagnostics: Diagnostics) -> StateSpace:
    if max_states is None or space.n_states <= max_states:
        return space
    if not select_states:
        raise StateSpaceTooLargeError(
            f"State space '{space.name}' has {space.n_states} states, more than "
            f"max_states={max_states}. Pass select_states=True to keep only the "
            f"most frequent states, or raise max_states."
        )
    calls = np.column_stack([r.base_calls for r in results])
    reduced = select_frequent_states(space, calls, max_states)
    diagnostics.add(
        'state-selection',
        f"State space '{space.name}' reduced from {space.n_states} to "
        f"{reduced.n_states} most frequent states",
        space.sample_ids,
    )
    return reduced


def call_peaks_multivariate(univariate_results: Sequence[Any],
                            state_space: Optional[StateSpace] = None,
                            max_states: Optional[int] = DEFAULT_MAX_STATES,
                            select_states: bool = False,
                            tol: float = 0.01,
                            n_iter: Optional[int] = None,
                            max_time: Optional[float] = None,
                            per_chrom: bool = True,
                            n_workers: int = 1,
                            keep_posteriors: bool = True,
                            verbose: bool = False) -> MultivariateResult:
    """
    Fit a joint HMM over several samples.

    Args:
        univariate_results: UnivariateResults or paths to saved ones
        state_space: States to use (default: all 2^S combinations)
        max_states: Maximum number of states (None = no cap)
        select_states: Reduce an oversized state space to its max_states
            most frequent univariate combinations instead of failing
        tol: Log-likelihood improvement at which Baum-Welch stops
        n_iter: Maximum Baum-Welch iterations (None = no limit, 0 = none)
        max_time: Maximum Baum-Welch time in seconds
        per_chrom: Treat every chromosome as its own sequence
        n_workers: Threads for the per-chromosome forward-backward passes
        keep_posteriors: Keep per-bin posteriors (needed for apply_post_cutoff)
        verbose: Show progress

    Returns:
        MultivariateResult

    Raises:
        StateSpaceTooLargeError: Too many states and select_states is False
        BinAlignmentError: Univariate results cover different bins
    """
    results = [resolve_univariate(item) for item in univariate_results]
    if not results:
        raise ValueError("No univariate results given")
    ids = [r.sample.id for r in results]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate sample IDs: {ids}")
    _check_same_bins(results)

    by_id = {r.sample.id: r for r in results}
    if state_space is None:
        state_space = build_state_spaces([r.sample for r in results], 'full',
                                         max_states=None)[0]
    missing = [sid for sid in state_space.sample_ids if sid not in by_id]
    if missing:
        raise KeyError(f"No univariate result for samples: {missing}")
    results = [by_id[sid] for sid in state_space.sample_ids]

    diagnostics = Diagnostics()
    for r in results:
        for advisory in r.diagnostics:
            diagnostics.add(advisory.code, advisory.message, advisory.samples, warn=False)

    state_space = _limit_states(state_space, results, max_states, select_states, diagnostics)

    ref = results[0]
    chrom_slices = chromosome_runs(ref.chrom)
    counts = np.column_stack([r.counts for r in results])

    if verbose:
        print(f"Fitting multivariate HMM '{state_space.name}': "
              f"{state_space.n_samples} samples, {state_space.n_states} states, "
              f"{len(chrom_slices)} chromosomes")

    hmm = MultivariateHMM(state_space, [r.model for r in results],
                          n_iter=n_iter, tol=tol, max_time=max_time,
                          per_chrom=per_chrom, n_workers=n_workers)
    hmm.fit(counts, chrom_slices, verbose=verbose, desc=f"Baum-Welch {state_space.name}")
    if n_iter != 0 and not hmm.converged_:
        diagnostics.add(
            'not-converged',
            f"Baum-Welch stopped after {hmm.n_iter_} iterations without reaching "
            f"tol={tol}; best parameters kept",
            state_space.sample_ids,
        )

    state_posteriors, _ = hmm.predict_proba(counts, chrom_slices)
    state = state_space.codes[np.argmax(state_posteriors, axis=1)]
    posteriors = hmm.sample_posteriors(state_posteriors)
    calls = codes_to_bits(state, state_space.n_samples)
    base_peaks = initial_peaks(ref.chrom, ref.start, ref.end, calls, posteriors,
                               state_space.sample_ids)

    return MultivariateResult(
        state_space=state_space,
        hmm=hmm,
        chrom=ref.chrom,
        start=ref.start,
        end=ref.end,
        counts=counts,
        state=state,
        state_posteriors=state_posteriors if keep_posteriors else None,
        posteriors=posteriors if keep_posteriors else None,
        calls=calls.copy(),
        base_peaks=base_peaks,
        peaks={sid: df.copy() for sid, df in base_peaks.items()},
        config={
            'max_states': max_states,
            'select_states': select_states,
            'tol': tol,
            'n_iter': n_iter,
            'max_time': max_time,
            'per_chrom': per_chrom,
            'keep_posteriors': keep_posteriors,
        },
        diagnostics=diagnostics,
    )


def call_peaks_by_mode(binned: BinnedCounts,
                       mode: str = 'full',
                       differential_only: bool = False,
                       common_only: bool = False,
                       force_equal: bool = False,
                       max_states: Optional[int] = DEFAULT_MAX_STATES,
                       select_states: bool = False,
                       n_components: int = 3,
                       tol: float = 0.01,
                       n_iter: Optional[int] = None,
                       max_time: Optional[float] = None,
                       per_chrom: bool = True,
                       n_workers: int = 1,
                       keep_posteriors: bool = True,
                       univariate_results: Optional[Sequence[Any]] = None,
                       verbose: bool = False) -> CombinedResult:
    """
    Run one analysis mode over all samples.

    Every sample gets a univariate fit (unless univariate_results are
    given); 'separate' mode returns those directly, the other modes fit one
    joint HMM per state-space block.

    Args:
        binned: Counts of all samples
        mode: 'separate', 'combinatorial', 'differential' or 'full'
        differential_only, common_only, force_equal: State-space options,
            see build_state_spaces
        max_states: Maximum states per block
        select_states: Reduce oversized blocks to their most frequent states
        n_components, tol, n_iter, max_time: Fit settings, used for both
            the univariate and the multivariate fits
        per_chrom: Treat every chromosome as its own sequence
        n_workers: Worker processes for the univariate fits and threads for
            the forward-backward passes
        keep_posteriors: Keep per-bin posteriors
        univariate_results: Existing univariate fits (results or paths)
        verbose: Print progress

    Returns:
        CombinedResult with one component per block
    """
    spaces = build_state_spaces(
        binned.samples, mode,
        differential_only=differential_only,
        common_only=common_only,
        force_equal=force_equal,
        max_states=None if select_states else max_states,
    )

    if univariate_results is None:
        univariate = fit_univariate_all(
            binned, n_workers=n_workers, verbose=verbose,
            n_components=n_components, tol=tol, n_iter=n_iter,
            max_time=max_time, keep_posteriors=keep_posteriors,
        )
    else:
        univariate = [resolve_univariate(item) for item in univariate_results]
    by_id = {r.sample.id: r for r in univariate}

    if mode == 'separate':
        components = [by_id[space.sample_ids[0]] for space in spaces]
    else:
        components = [
            call_peaks_multivariate(
                [by_id[sid] for sid in space.sample_ids],
                state_space=space,
                max_states=max_states,
                select_states=select_states,
                tol=tol,
                n_iter=n_iter,
                max_time=max_time,
                per_chrom=per_chrom,
                n_workers=n_workers,
                keep_posteriors=keep_posteriors,
                verbose=verbose,
            )
            for space in spaces
        ]

    diagnostics = Diagnostics()
    for c in components:
        for advisory in c.diagnostics:
            diagnostics.add(advisory.code, advisory.message, advisory.samples, warn=False)

    config: Dict[str, Any] = {
        'mode': mode,
        'differential_only': differential_only,
        'common_only': common_only,
        'force_equal': force_equal,
        'max_states': max_states,
        'select_states': select_states,
        'n_components': n_components,
        'tol': tol,
        'n_iter': n_iter,
        'max_time': max_time,
        'per_chrom': per_chrom,
        'keep_posteriors': keep_posteriors,
    }
    return CombinedResult(mode=mode, components=components, config=config,
                          diagnostics=diagnostics)
