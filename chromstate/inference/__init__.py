"""Peak calling, posterior cutoffs, parallel fitting and replicate grouping."""

from chromstate.inference.calling import (
    call_peaks_by_mode,
    call_peaks_multivariate,
    call_peaks_univariate,
    fit_univariate_all,
)
from chromstate.inference.parallel import fit_univariate_parallel
from chromstate.inference.peaks import (
    apply_max_post_cutoff,
    apply_post_cutoff,
    peaks_table,
)
from chromstate.inference.replicates import ReplicateAnalysis, call_peaks_replicates

__all__ = [
    'call_peaks_by_mode',
    'call_peaks_multivariate',
    'call_peaks_univariate',
    'fit_univariate_all',
    'fit_univariate_parallel',
    'apply_max_post_cutoff',
    'apply_post_cutoff',
    'peaks_table',
    'ReplicateAnalysis',
    'call_peaks_replicates',
]
