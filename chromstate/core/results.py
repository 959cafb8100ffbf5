"""
Fitted model results and the advisory channel.

Three result shapes share one set of per-sample accessors so peak
derivation and persistence can treat them alike:

    UnivariateResult   one sample, one mixture model
    MultivariateResult one jointly fitted state-space block
    CombinedResult     several blocks (or separate samples) of one analysis

Each carries an explicit ModelKind tag; callers dispatch on the tag.
"""

import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from chromstate.core.bins import SampleInfo
from chromstate.core.emission import UnivariateModel
from chromstate.core.hmm import MultivariateHMM
from chromstate.core.states import StateSpace, codes_to_bits


class ModelKind(Enum):
    UNIVARIATE = 'univariate'
    MULTIVARIATE = 'multivariate'
    COMBINED = 'combined'


class PosteriorsNotKeptError(RuntimeError):
    """Raised when an operation needs posteriors that were dropped after fitting."""


class AdvisoryWarning(UserWarning):
    """Non-fatal condition worth a manual look (poor fit, divergent replicates)."""


@dataclass(frozen=True)
class Advisory:
    code: str
    message: str
    samples: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {'code': self.code, 'message': self.message, 'samples': list(self.samples)}

    @classmethod
    def from_dict(cls, d: dict) -> 'Advisory':
        return cls(code=d['code'], message=d['message'], samples=tuple(d.get('samples', ())))


class Diagnostics:
    """Advisories collected while fitting, returned alongside the result."""

    def __init__(self, advisories: Optional[List[Advisory]] = None):
        self.advisories: List[Advisory] = list(advisories or [])

    def add(self, code: str, message: str, samples: Sequence[str] = (),
            warn: bool = True) -> Advisory:
        advisory = Advisory(code=code, message=message, samples=tuple(samples))
        self.advisories.append(advisory)
        if warn:
            prefix = f"[{', '.join(samples)}] " if samples else ""
            warnings.warn(f"{prefix}{message}", AdvisoryWarning, stacklevel=3)
        return advisory

    def extend(self, other: 'Diagnostics') -> None:
        self.advisories.extend(other.advisories)

    def codes(self) -> List[str]:
        return [a.code for a in self.advisories]

    def __iter__(self) -> Iterator[Advisory]:
        return iter(self.advisories)

    def __len__(self) -> int:
        return len(self.advisories)

    def __bool__(self) -> bool:
        return bool(self.advisories)

    def to_list(self) -> List[dict]:
        return [a.to_dict() for a in self.advisories]

    @classmethod
    def from_list(cls, items: List[dict]) -> 'Diagnostics':
        return cls([Advisory.from_dict(d) for d in items or []])


@dataclass
class ReplicateInfo:
    """
    Replicate agreement table.

    Attributes:
        info: One row per sample ID with total_count, weight_univariate,
            weight_multivariate and group
        correlation: Pearson correlation of binary calls (None for one sample)
        distance: Euclidean distance between correlation rows (None for one sample)
    """
    info: pd.DataFrame
    correlation: Optional[pd.DataFrame] = None
    distance: Optional[pd.DataFrame] = None

    @property
    def n_groups(self) -> int:
        return int(self.info['group'].nunique())

    def to_dict(self) -> dict:
        def matrix(df):
            return None if df is None else {
                'index': [str(i) for i in df.index],
                'columns': [str(c) for c in df.columns],
                'data': df.to_numpy(dtype=float).tolist(),
            }
        return {
            'info': {
                'index': [str(i) for i in self.info.index],
                'columns': {str(c): self.info[c].tolist() for c in self.info.columns},
            },
            'correlation': matrix(self.correlation),
            'distance': matrix(self.distance),
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'ReplicateInfo':
        def matrix(x):
            if x is None:
                return None
            return pd.DataFrame(x['data'], index=x['index'], columns=x['columns'])
        info = pd.DataFrame(d['info']['columns'], index=d['info']['index'])
        info['total_count'] = info['total_count'].astype(np.int64)
        info['group'] = info['group'].astype(int)
        for col in ('weight_univariate', 'weight_multivariate'):
            info[col] = info[col].astype(float)
        return cls(info=info, correlation=matrix(d.get('correlation')),
                   distance=matrix(d.get('distance')))


@dataclass
class UnivariateResult:
    """
    Mixture fit of one sample.

    Attributes:
        sample: Sample metadata
        chrom, start, end: Bin coordinates
        counts: Read counts per bin
        model: Fitted UnivariateModel
        posteriors: Posterior of 'modified' per bin (None if not kept)
        base_calls: 0/1 call per bin from the most likely component
        calls: Current 0/1 call per bin
        base_peaks: Sample ID -> peaks of the per-bin calls, before any
            per-peak cutoff, with their maximum posterior
        peaks: Sample ID -> current peaks
        post_cutoff: Sample ID -> per-bin cutoff (None = argmax calls)
        max_post_cutoff: Sample ID -> per-peak cutoff (None = keep all)
    """
    sample: SampleInfo
    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray
    counts: np.ndarray
    model: UnivariateModel
    posteriors: Optional[np.ndarray]
    base_calls: np.ndarray
    calls: np.ndarray
    base_peaks: Dict[str, pd.DataFrame]
    peaks: Dict[str, pd.DataFrame]
    post_cutoff: Optional[Dict[str, Optional[float]]] = None
    max_post_cutoff: Optional[Dict[str, Optional[float]]] = None
    config: Dict[str, Any] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    kind = ModelKind.UNIVARIATE

    @property
    def samples(self) -> List[SampleInfo]:
        return [self.sample]

    @property
    def sample_ids(self) -> List[str]:
        return [self.sample.id]

    @property
    def has_posteriors(self) -> bool:
        return self.posteriors is not None

    def sample_posteriors(self) -> Optional[np.ndarray]:
        """Posterior of modification, shape (n_bins, 1)."""
        return None if self.posteriors is None else self.posteriors.reshape(-1, 1)

    def argmax_calls(self) -> np.ndarray:
        """Default calls, shape (n_bins, 1)."""
        return self.base_calls.reshape(-1, 1)

    def sample_calls(self) -> np.ndarray:
        return self.calls.reshape(-1, 1)

    def peaks_for(self, sample_id: str) -> pd.DataFrame:
        return self.peaks[sample_id]


@dataclass
class MultivariateResult:
    """
    Joint HMM fit of one state-space block.

    Attributes:
        state_space: Combinatorial states of the block
        hmm: Fitted MultivariateHMM (transition matrix, emissions)
        chrom, start, end: Bin coordinates
        counts: Read counts, shape (n_bins, n_samples)
        state: Most likely state code per bin
        state_posteriors: Posterior per bin and state (None if not kept)
        posteriors: Posterior of modification per bin and sample (None if not kept)
        calls: Current 0/1 calls, shape (n_bins, n_samples)
        base_peaks: Sample ID -> peaks of the argmax calls
        peaks: Sample ID -> current peaks
        replicate_info: Replicate agreement, if computed
    """
    state_space: StateSpace
    hmm: MultivariateHMM
    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray
    counts: np.ndarray
    state: np.ndarray
    state_posteriors: Optional[np.ndarray]
    posteriors: Optional[np.ndarray]
    calls: np.ndarray
    base_peaks: Dict[str, pd.DataFrame]
    peaks: Dict[str, pd.DataFrame]
    post_cutoff: Optional[Dict[str, Optional[float]]] = None
    max_post_cutoff: Optional[Dict[str, Optional[float]]] = None
    replicate_info: Optional[ReplicateInfo] = None
    config: Dict[str, Any] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    kind = ModelKind.MULTIVARIATE

    @property
    def samples(self) -> List[SampleInfo]:
        return self.state_space.samples

    @property
    def sample_ids(self) -> List[str]:
        return self.state_space.sample_ids

    @property
    def has_posteriors(self) -> bool:
        return self.posteriors is not None

    @property
    def transmat(self) -> np.ndarray:
        return self.hmm.transmat_

    def sample_posteriors(self) -> Optional[np.ndarray]:
        return self.posteriors

    def argmax_calls(self) -> np.ndarray:
        """Bits of the most likely state, shape (n_bins, n_samples)."""
        return codes_to_bits(self.state, self.state_space.n_samples)

    def sample_calls(self) -> np.ndarray:
        return self.calls

    def combination(self) -> np.ndarray:
        """Combination label of the most likely state per bin."""
        labels = np.array(self.state_space.labels, dtype=object)
        idx = np.searchsorted(self.state_space.codes, self.state)
        return labels[idx]

    def peaks_for(self, sample_id: str) -> pd.DataFrame:
        return self.peaks[sample_id]


@dataclass
class CombinedResult:
    """
    Several component results over the same bins.

    Produced for the 'separate', 'combinatorial' and 'differential' modes
    (one component per sample, condition or mark) and for 'full' mode with
    a single component.
    """
    mode: str
    components: List[Any]
    config: Dict[str, Any] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    kind = ModelKind.COMBINED

    @property
    def chrom(self) -> np.ndarray:
        return self.components[0].chrom

    @property
    def start(self) -> np.ndarray:
        return self.components[0].start

    @property
    def end(self) -> np.ndarray:
        return self.components[0].end

    @property
    def samples(self) -> List[SampleInfo]:
        return [s for c in self.components for s in c.samples]

    @property
    def sample_ids(self) -> List[str]:
        return [s.id for s in self.samples]

    @property
    def has_posteriors(self) -> bool:
        return all(c.has_posteriors for c in self.components)

    @property
    def peaks(self) -> Dict[str, pd.DataFrame]:
        return {sid: c.peaks_for(sid) for c in self.components for sid in c.sample_ids}

    def peaks_for(self, sample_id: str) -> pd.DataFrame:
        for c in self.components:
            if sample_id in c.sample_ids:
                return c.peaks_for(sample_id)
        raise KeyError(f"Unknown sample: {sample_id}")

    def sample_calls(self) -> np.ndarray:
        return np.column_stack([c.sample_calls() for c in self.components])

    def component_for(self, sample_id: str):
        for c in self.components:
            if sample_id in c.sample_ids:
                return c
        raise KeyError(f"Unknown sample: {sample_id}")

    def combinations(self) -> pd.DataFrame:
        """Per-bin combination label of each component, plus coordinates."""
        df = pd.DataFrame({'chrom': self.chrom, 'start': self.start, 'end': self.end})
        for c in self.components:
            if c.kind is ModelKind.MULTIVARIATE:
                df[c.state_space.name] = c.combination()
            else:
                df[f"sample:{c.sample.id}"] = np.where(c.calls > 0, f"[{c.sample.mark}]", '[]')
        return df
