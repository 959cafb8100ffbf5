"""
Replicate agreement and outlier grouping.

Replicates are fitted jointly, and the per-sample calls of the most likely
state are correlated across samples. Samples are clustered on the
Euclidean distance between their correlation profiles (complete linkage)
and the tree is cut at max_distance. More than one group is reported as
an advisory naming the group with the highest mean read count as the one
to keep.
"""

from dataclasses import dataclass, replace
from typing import Any, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import pdist, squareform

from chromstate.core.model_io import resolve_univariate
from chromstate.core.results import (
    Diagnostics,
    ModelKind,
    MultivariateResult,
    ReplicateInfo,
)
from chromstate.core.states import (
    DEFAULT_MAX_STATES,
    StateSpace,
    build_state_spaces,
)
from chromstate.inference.calling import call_peaks_multivariate


@dataclass
class ReplicateAnalysis:
    """
    Outcome of call_peaks_replicates.

    Attributes:
        model: Joint fit with replicate_info attached (None for one sample)
        info: Replicate agreement table (None if it could not be computed)
        diagnostics: Advisories, including 'replicate-divergence'
    """
    model: Optional[MultivariateResult]
    info: Optional[ReplicateInfo]
    diagnostics: Diagnostics


def correlation_matrix(calls: np.ndarray) -> np.ndarray:
    """
    Pearson correlation between the columns of a binary call matrix.

    Constant columns have no defined correlation; they are treated as
    uncorrelated with everything but themselves.
    """
    calls = np.asarray(calls, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        corr = np.corrcoef(calls, rowvar=False)
    corr = np.atleast_2d(np.nan_to_num(corr, nan=0.0))
    np.fill_diagonal(corr, 1.0)
    return corr


def distance_matrix(corr: np.ndarray) -> np.ndarray:
    """Euclidean distance between the rows of a correlation matrix."""
    return squareform(pdist(corr, metric='euclidean'))


def group_samples(distance: np.ndarray, max_distance: float) -> np.ndarray:
    """
    Complete-linkage clusters cut at height max_distance.

    Group labels start at 1 and are numbered by first appearance.
    """
    n = len(distance)
    if n == 1:
        return np.array([1])
    condensed = squareform(np.asarray(distance, dtype=float), checks=False)
    labels = fcluster(linkage(condensed, method='complete'),
                      t=max_distance, criterion='distance')
    renumber = {}
    for label in labels:
        renumber.setdefault(label, len(renumber) + 1)
    return np.array([renumber[label] for label in labels])


def _report_groups(info: pd.DataFrame, diagnostics: Diagnostics) -> None:
    n_groups = info['group'].nunique()
    if n_groups <= 1:
        return
    avg_count = info.groupby('group')['total_count'].mean()
    keep_group = avg_count.idxmax()
    keep = [str(s) for s in info.index[info['group'] == keep_group]]
    drop = [str(s) for s in info.index[info['group'] != keep_group]]
    diagnostics.add(
        'replicate-divergence',
        f"Your replicates cluster in {n_groups} groups. Consider redoing the analysis "
        f"with only the group with the highest average coverage: {', '.join(keep)}. "
        f"Replicates from groups with lower coverage are: {', '.join(drop)}",
        drop,
    )


def _reanalyze(model: MultivariateResult, max_distance: float) -> ReplicateAnalysis:
    diagnostics = Diagnostics()
    current = model.replicate_info
    if current is None or current.distance is None:
        diagnostics.add('no-replicate-info',
                        "No check done because no replicate info was found")
        return ReplicateAnalysis(model=model, info=current, diagnostics=diagnostics)

    info = current.info.copy()
    info['group'] = group_samples(current.distance.to_numpy(), max_distance)
    replicate_info = ReplicateInfo(info=info, correlation=current.correlation,
                                   distance=current.distance)
    _report_groups(info, diagnostics)
    merged = Diagnostics(list(model.diagnostics.advisories))
    merged.extend(diagnostics)
    model = replace(model, replicate_info=replicate_info, diagnostics=merged)
    return ReplicateAnalysis(model=model, info=replicate_info, diagnostics=diagnostics)


def call_peaks_replicates(models: Union[MultivariateResult, Sequence[Any]],
                          max_states: int = DEFAULT_MAX_STATES,
                          force_equal: bool = False,
                          tol: float = 0.01,
                          n_iter: Optional[int] = None,
                          max_time: Optional[float] = None,
                          keep_posteriors: bool = True,
                          n_workers: int = 1,
                          max_distance: float = 0.2,
                          per_chrom: bool = True,
                          verbose: bool = False) -> ReplicateAnalysis:
    """
    Fit replicates jointly and group them by agreement.

    Args:
        models: Univariate results or paths to saved ones, or a
            MultivariateResult to regroup with a new max_distance
        max_states: Maximum number of states; more replicates than fit
            exactly are fitted with the most frequent states
        force_equal: Replicates share one call (states all-off / all-on)
        tol: Log-likelihood improvement at which Baum-Welch stops
        n_iter: Maximum Baum-Welch iterations
        max_time: Maximum Baum-Welch time in seconds
        keep_posteriors: Keep per-bin posteriors
        n_workers: Threads for the per-chromosome forward-backward passes
        max_distance: Tree height at which replicate groups are cut
        per_chrom: Treat every chromosome as its own sequence
        verbose: Show progress

    Returns:
        ReplicateAnalysis
    """
    if getattr(models, 'kind', None) is ModelKind.MULTIVARIATE:
        return _reanalyze(models, max_distance)

    results = [resolve_univariate(item) for item in models]
    if not results:
        raise ValueError("No replicates given")
    ids = [r.sample.id for r in results]

    info = pd.DataFrame({
        'total_count': [int(np.sum(r.counts)) for r in results],
        'weight_univariate': [r.model.modified_weight for r in results],
    }, index=ids)
    diagnostics = Diagnostics()

    if len(results) == 1:
        info['weight_multivariate'] = np.nan
        info['group'] = 1
        replicate_info = ReplicateInfo(info=info)
        return ReplicateAnalysis(model=None, info=replicate_info, diagnostics=diagnostics)

    samples = [r.sample for r in results]
    if force_equal:
        n = len(samples)
        space = StateSpace(name='replicates', samples=samples,
                           codes=np.array([0, 2 ** n - 1]))
    else:
        space = build_state_spaces(samples, 'full', max_states=None)[0]
    max_states = min(max_states, space.n_states)

    model = call_peaks_multivariate(
        results, state_space=space, max_states=max_states, select_states=True,
        tol=tol, n_iter=n_iter, max_time=max_time, per_chrom=per_chrom,
        n_workers=n_workers, keep_posteriors=keep_posteriors, verbose=verbose,
    )

    binary = model.argmax_calls()
    corr = correlation_matrix(binary)
    dist = distance_matrix(corr)
    info['weight_multivariate'] = binary.mean(axis=0)
    info['group'] = group_samples(dist, max_distance)

    replicate_info = ReplicateInfo(
        info=info,
        correlation=pd.DataFrame(corr, index=ids, columns=ids),
        distance=pd.DataFrame(dist, index=ids, columns=ids),
    )
    _report_groups(info, diagnostics)
    model.replicate_info = replicate_info
    model.diagnostics.extend(diagnostics)

    if verbose:
        print(f"Replicates form {replicate_info.n_groups} group(s)")
    return ReplicateAnalysis(model=model, info=replicate_info, diagnostics=diagnostics)
