"""chromstate sample-parallel univariate fitting and worker management."""

import os
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from chromstate.core.bins import BinnedCounts
from chromstate.core.results import UnivariateResult


def _init_fit_worker():
    """Initialize worker process."""
    # Disable numba caching to avoid file lock contention between workers
    os.environ['NUMBA_CACHE_DIR'] = ''


def _fit_sample(args: Tuple[int, BinnedCounts, Dict[str, Any]]) -> Tuple[int, UnivariateResult]:
    """
    Worker function: fit the mixture model of one sample.

    Args:
        args: (sample index, single-sample BinnedCounts, fit keyword arguments)

    Returns:
        (sample index, UnivariateResult)
    """
    # Imported here so workers only pull in the fitting code they need
    from chromstate.inference.calling import call_peaks_univariate

    index, binned, kwargs = args
    return index, call_peaks_univariate(binned, binned.sample_ids[0], **kwargs)


def fit_univariate_parallel(binned: BinnedCounts,
                            sample_ids: Optional[Sequence[str]] = None,
                            n_workers: int = 1,
                            verbose: bool = False,
                            **fit_kwargs) -> List[UnivariateResult]:
    """
    Fit the univariate model of every sample, one process per sample.

    Fits are independent; results are returned in sample order no matter
    which worker finishes first. With n_workers <= 1 the fits run serially
    in this process.

    Args:
        binned: Counts of all samples
        sample_ids: Samples to fit (default: all, in column order)
        n_workers: Number of worker processes
        verbose: Print progress
        **fit_kwargs: Passed to call_peaks_univariate

    Returns:
        List of UnivariateResult, one per sample
    """
    from chromstate.inference.calling import call_peaks_univariate

    if sample_ids is None:
        sample_ids = binned.sample_ids
    sample_ids = list(sample_ids)
    work_items = [(i, binned.subset([sid]), fit_kwargs) for i, sid in enumerate(sample_ids)]

    if n_workers <= 1 or len(work_items) <= 1:
        results = []
        iterator = tqdm(work_items, desc="Univariate fits") if verbose else work_items
        for _, single, kwargs in iterator:
            results.append(call_peaks_univariate(single, single.sample_ids[0], **kwargs))
        return results

    n_workers = min(n_workers, len(work_items))
    if verbose:
        print(f"Fitting {len(work_items)} samples with {n_workers} workers...")
    start_time = time.time()

    results: List[Optional[UnivariateResult]] = [None] * len(work_items)
    with ProcessPoolExecutor(max_workers=n_workers,
                             initializer=_init_fit_worker) as executor:
        futures = {executor.submit(_fit_sample, item): item[0] for item in work_items}

        progress = tqdm(total=len(futures), desc="Univariate fits") if verbose else None
        for future in as_completed(futures):
            try:
                index, result = future.result()
            except Exception as e:
                print(f"\nError fitting sample {sample_ids[futures[future]]}: {e}")
                raise
            results[index] = result
            if progress is not None:
                progress.update(1)
        if progress is not None:
            progress.close()

    if verbose:
        print(f"  Done in {time.time() - start_time:.1f}s")
    return results
