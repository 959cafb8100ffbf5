"""
Combinatorial state space construction.

A combinatorial state is an integer code whose binary expansion gives the
modified (1) / unmodified (0) call of every sample in a block, with the
first sample as the most significant bit. For two samples the codes
0, 1, 2, 3 read 00, 01, 10, 11.

Modes:
    full:          one block over all samples, every sample its own bit
                   (replicates of a mark/condition share a bit with
                   force_equal)
    combinatorial: one block per condition, replicates of a mark share a bit
    differential:  one block per mark across conditions, replicates share a bit
    separate:      one block per sample, no joint model
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from chromstate.core.bins import SampleInfo

MODES = ('separate', 'combinatorial', 'differential', 'full')

DEFAULT_MAX_STATES = 32

# Enumerating more free bits than this is never tractable as an HMM
MAX_ENUMERATED_BITS = 24


class StateSpaceTooLargeError(ValueError):
    """Raised when a state space has more states than allowed."""


def codes_to_bits(codes: Sequence[int], n_samples: int) -> np.ndarray:
    """Binary matrix (n_codes x n_samples), column 0 = most significant bit."""
    codes = np.asarray(codes, dtype=np.int64)
    shifts = np.arange(n_samples - 1, -1, -1, dtype=np.int64)
    return ((codes[:, np.newaxis] >> shifts[np.newaxis, :]) & 1).astype(np.int8)


def bits_to_codes(bits: np.ndarray) -> np.ndarray:
    """Inverse of codes_to_bits for a (n x n_samples) 0/1 matrix."""
    bits = np.asarray(bits, dtype=np.int64)
    if bits.ndim == 1:
        bits = bits.reshape(1, -1)
    n_samples = bits.shape[1]
    weights = np.left_shift(1, np.arange(n_samples - 1, -1, -1, dtype=np.int64))
    return bits @ weights


@dataclass
class StateSpace:
    """
    Ordered set of combinatorial states for one jointly fitted block.

    Attributes:
        name: Block name, e.g. 'full', 'condition:SHR', 'mark:H3K27me3'
        samples: Samples of the block (bit order)
        codes: Valid state codes, ascending
        labels: Human-readable combination label per state
        joint: False for 'separate' blocks that are never fitted jointly
    """
    name: str
    samples: List[SampleInfo]
    codes: np.ndarray
    labels: List[str] = field(default_factory=list)
    joint: bool = True

    def __post_init__(self):
        self.codes = np.asarray(self.codes, dtype=np.int64)
        if not self.labels:
            self.labels = [combination_label(self.samples, b) for b in self.bits]

    @property
    def sample_ids(self) -> List[str]:
        return [s.id for s in self.samples]

    @property
    def n_samples(self) -> int:
        return len(self.samples)

    @property
    def n_states(self) -> int:
        return len(self.codes)

    @property
    def bits(self) -> np.ndarray:
        return codes_to_bits(self.codes, self.n_samples)

    def binary_strings(self) -> List[str]:
        return [''.join(str(b) for b in row) for row in self.bits]

    def index_of(self, code: int) -> int:
        idx = int(np.searchsorted(self.codes, code))
        if idx >= len(self.codes) or self.codes[idx] != code:
            raise KeyError(f"State {code} is not part of state space '{self.name}'")
        return idx

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'samples': [s.to_dict() for s in self.samples],
            'codes': self.codes.tolist(),
            'labels': list(self.labels),
            'joint': self.joint,
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'StateSpace':
        return cls(
            name=d['name'],
            samples=[SampleInfo.from_dict(s) for s in d['samples']],
            codes=np.array(d['codes'], dtype=np.int64),
            labels=list(d.get('labels') or []),
            joint=bool(d.get('joint', True)),
        )


def combination_label(samples: Sequence[SampleInfo], bits: Sequence[int]) -> str:
    """
    Label naming the modified marks of one state, e.g. '[H3K4me3+H3K27me3]'.

    Marks are qualified with their condition when the samples span several
    conditions. Replicates that disagree with each other are listed by
    sample ID.
    """
    conditions = {s.condition for s in samples}
    groups: Dict[Tuple[str, str], List[int]] = {}
    for i, s in enumerate(samples):
        groups.setdefault((s.mark, s.condition), []).append(i)

    on = []
    for (mark, condition), idx in groups.items():
        values = [int(bits[i]) for i in idx]
        if all(values):
            on.append(mark if len(conditions) == 1 else f"{mark}-{condition}")
        elif any(values):
            on.extend(samples[i].id for i, v in zip(idx, values) if v)
    return '[' + '+'.join(on) + ']'


def _enumerate_codes(samples: Sequence[SampleInfo], keys: Sequence) -> np.ndarray:
    """
    All codes in which samples with equal keys carry equal bits.

    Returns codes sorted ascending.
    """
    unique_keys = list(dict.fromkeys(keys))
    n_groups = len(unique_keys)
    if n_groups > MAX_ENUMERATED_BITS:
        raise StateSpaceTooLargeError(
            f"{n_groups} independent samples imply 2^{n_groups} states, "
            f"which is far beyond what can be fitted"
        )
    group_of = np.array([unique_keys.index(k) for k in keys], dtype=np.int64)
    assignments = codes_to_bits(np.arange(2 ** n_groups), n_groups)
    sample_bits = assignments[:, group_of]
    return np.unique(bits_to_codes(sample_bits))


def _condition_values(samples: Sequence[SampleInfo], bits: Sequence[int]) -> Dict[str, Dict[str, Optional[int]]]:
    """mark -> condition -> bit if all replicates agree, else None."""
    values: Dict[str, Dict[str, List[int]]] = {}
    for s, b in zip(samples, bits):
        values.setdefault(s.mark, {}).setdefault(s.condition, []).append(int(b))
    out: Dict[str, Dict[str, Optional[int]]] = {}
    for mark, per_cond in values.items():
        out[mark] = {c: (v[0] if len(set(v)) == 1 else None) for c, v in per_cond.items()}
    return out


def is_common_state(samples: Sequence[SampleInfo], bits: Sequence[int]) -> bool:
    """True if, for every mark, all samples of that mark have the same bit."""
    per_mark: Dict[str, set] = {}
    for s, b in zip(samples, bits):
        per_mark.setdefault(s.mark, set()).add(int(b))
    return all(len(v) == 1 for v in per_mark.values())


def is_differential_state(samples: Sequence[SampleInfo], bits: Sequence[int]) -> bool:
    """True if some mark is consistently on in one condition and off in another."""
    for per_cond in _condition_values(samples, bits).values():
        called = {v for v in per_cond.values() if v is not None}
        if len(called) > 1:
            return True
    return False


def _filter_codes(samples: Sequence[SampleInfo], codes: np.ndarray,
                  differential_only: bool, common_only: bool) -> np.ndarray:
    if not differential_only and not common_only:
        return codes
    bits = codes_to_bits(codes, len(samples))
    keep = []
    for code, row in zip(codes, bits):
        if differential_only and is_differential_state(samples, row):
            keep.append(code)
        elif common_only and is_common_state(samples, row):
            keep.append(code)
    return np.array(keep, dtype=np.int64)


def _check_size(space: StateSpace, max_states: Optional[int]) -> StateSpace:
    if space.n_states == 0:
        raise ValueError(f"State space '{space.name}' has no states left")
    if max_states is not None and space.n_states > max_states:
        raise StateSpaceTooLargeError(
            f"State space '{space.name}' has {space.n_states} states, "
            f"more than max_states={max_states}. Use fewer samples, "
            f"force_equal=True, or raise max_states."
        )
    return space


def _ordered_unique(values: Iterable) -> list:
    return list(dict.fromkeys(values))


def build_state_spaces(samples: Sequence[SampleInfo],
                       mode: str = 'full',
                       differential_only: bool = False,
                       common_only: bool = False,
                       force_equal: bool = False,
                       max_states: Optional[int] = DEFAULT_MAX_STATES) -> List[StateSpace]:
    """
    Build the state space block(s) for an analysis mode.

    Args:
        samples: Sample metadata, in count-column order
        mode: One of 'separate', 'combinatorial', 'differential', 'full'
        differential_only: Keep only states with a between-condition difference
        common_only: Keep only states identical across conditions
        force_equal: Replicates of a mark/condition share one bit ('full' mode;
            the other joint modes always collapse replicates)
        max_states: Maximum states per block (None = no cap)

    Returns:
        List of StateSpace blocks in deterministic order

    Raises:
        StateSpaceTooLargeError: A block exceeds max_states
        ValueError: Unknown mode or inconsistent flags
    """
    samples = list(samples)
    if not samples:
        raise ValueError("No samples given")
    if mode not in MODES:
        raise ValueError(f"Unknown mode: {mode} (expected one of {', '.join(MODES)})")
    if differential_only and common_only:
        raise ValueError("differential_only and common_only are mutually exclusive")
    if (differential_only or common_only) and mode in ('separate', 'combinatorial'):
        raise ValueError(
            f"differential_only/common_only only apply to 'full' and 'differential' mode, not '{mode}'"
        )
    ids = [s.id for s in samples]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate sample IDs: {ids}")

    spaces = []
    if mode == 'separate':
        for s in samples:
            spaces.append(StateSpace(name=f"sample:{s.id}", samples=[s],
                                     codes=np.array([0, 1]), joint=False))

    elif mode == 'full':
        if force_equal:
            keys = [(s.mark, s.condition) for s in samples]
        else:
            keys = [s.id for s in samples]
        codes = _enumerate_codes(samples, keys)
        codes = _filter_codes(samples, codes, differential_only, common_only)
        spaces.append(StateSpace(name='full', samples=samples, codes=codes))

    elif mode == 'combinatorial':
        for condition in _ordered_unique(s.condition for s in samples):
            block = [s for s in samples if s.condition == condition]
            codes = _enumerate_codes(block, [s.mark for s in block])
            spaces.append(StateSpace(name=f"condition:{condition}", samples=block, codes=codes))

    else:  # differential
        for mark in _ordered_unique(s.mark for s in samples):
            block = [s for s in samples if s.mark == mark]
            codes = _enumerate_codes(block, [s.condition for s in block])
            codes = _filter_codes(block, codes, differential_only, common_only)
            spaces.append(StateSpace(name=f"mark:{mark}", samples=block, codes=codes))

    return [_check_size(space, max_states) for space in spaces]


def select_frequent_states(space: StateSpace, calls: np.ndarray,
                           max_states: int) -> StateSpace:
    """
    Reduce a state space to its most frequent states.

    Frequencies are counted over the per-bin combinations of independent
    (univariate) calls. The all-unmodified state is always kept. Ties are
    broken by ascending code.

    Args:
        space: Full state space to reduce
        calls: Binary univariate calls, shape (n_bins, n_samples) in the
            sample order of space
        max_states: Number of states to keep

    Returns:
        New StateSpace with at most max_states states
    """
    if max_states < 1:
        raise ValueError("max_states must be >= 1")
    if space.n_states <= max_states:
        return space
    observed = bits_to_codes(np.asarray(calls, dtype=np.int64))
    valid = np.isin(observed, space.codes)
    codes, counts = np.unique(observed[valid], return_counts=True)

    # Sort by count descending, then code ascending
    order = np.lexsort((codes, -counts))
    chosen = [0] if 0 in set(space.codes.tolist()) else []
    for code in codes[order]:
        if len(chosen) >= max_states:
            break
        if int(code) not in chosen:
            chosen.append(int(code))
    # Fill with the lowest unobserved codes when fewer combinations were seen
    for code in space.codes:
        if len(chosen) >= max_states:
            break
        if int(code) not in chosen:
            chosen.append(int(code))

    return StateSpace(name=space.name, samples=space.samples,
                      codes=np.sort(np.array(chosen, dtype=np.int64)),
                      joint=space.joint)
