"""Count containers, state spaces, emission and HMM models, result I/O."""

from chromstate.core.bins import BinAlignmentError, BinnedCounts, SampleInfo
from chromstate.core.emission import UnivariateModel
from chromstate.core.hmm import MultivariateHMM
from chromstate.core.model_io import load_result, resolve_univariate, save_result
from chromstate.core.results import (
    Advisory,
    AdvisoryWarning,
    CombinedResult,
    Diagnostics,
    ModelKind,
    MultivariateResult,
    PosteriorsNotKeptError,
    ReplicateInfo,
    UnivariateResult,
)
from chromstate.core.states import (
    StateSpace,
    StateSpaceTooLargeError,
    build_state_spaces,
    select_frequent_states,
)
