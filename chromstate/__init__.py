"""
chromstate - Hidden Markov Model toolkit for combinatorial and differential
chromatin-state calling from binned ChIP-seq read counts.
"""

__version__ = "1.0.0"

from chromstate.core.bins import BinnedCounts, SampleInfo
from chromstate.core.emission import UnivariateModel
from chromstate.core.hmm import MultivariateHMM
from chromstate.core.model_io import load_result, save_result
from chromstate.core.states import build_state_spaces
from chromstate.inference.calling import (
    call_peaks_by_mode,
    call_peaks_multivariate,
    call_peaks_univariate,
)
from chromstate.inference.peaks import apply_max_post_cutoff, apply_post_cutoff
from chromstate.inference.replicates import call_peaks_replicates
