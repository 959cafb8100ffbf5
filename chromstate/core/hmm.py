"""
chromstate multivariate HMM module

Provides:
1. Numba-compiled scaled forward-backward over an arbitrary number of states
2. MultivariateHMM: joint HMM over a combinatorial state space, with
   per-sample mixture emissions combined under conditional independence
3. Baum-Welch training of start and transition probabilities, with
   per-chromosome E-steps run concurrently

Emission parameters are fixed to the per-sample univariate fits.
"""

import itertools
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from numba import njit
from tqdm import tqdm

from chromstate.core.emission import UnivariateModel
from chromstate.core.states import StateSpace

MIN_PROB = 1e-10
DEFAULT_SELF_TRANSITION = 0.9


# =============================================================================
# Numba JIT-compiled HMM algorithms
# =============================================================================

@njit(nogil=True, cache=False)
def _forward_backward_numba(log_emission, startprob, transmat):
    """
    Scaled forward-backward for one sequence.

    Emissions are shifted by the per-bin maximum before exponentiation;
    the shift is added back into the log-likelihood.

    Args:
        log_emission: (T, K) log emission densities
        startprob: (K,) start probabilities
        transmat: (K, K) transition matrix

    Returns:
        gamma: (T, K) posterior state probabilities
        trans_counts: (K, K) expected transition counts
        log_prob: log probability of the sequence
    """
    T, K = log_emission.shape

    emission = np.empty((T, K))
    log_shift = 0.0
    for t in range(T):
        m = log_emission[t, 0]
        for k in range(1, K):
            if log_emission[t, k] > m:
                m = log_emission[t, k]
        if not math.isfinite(m):
            m = 0.0
        log_shift += m
        for k in range(K):
            emission[t, k] = math.exp(log_emission[t, k] - m)

    # Forward pass
    alpha = np.empty((T, K))
    scale = np.empty(T)
    s = 0.0
    for k in range(K):
        alpha[0, k] = startprob[k] * emission[0, k]
        s += alpha[0, k]
    if s <= 0.0:
        s = 1e-300
    scale[0] = s
    for k in range(K):
        alpha[0, k] /= s

    for t in range(1, T):
        s = 0.0
        for j in range(K):
            acc = 0.0
            for i in range(K):
                acc += alpha[t - 1, i] * transmat[i, j]
            alpha[t, j] = acc * emission[t, j]
            s += alpha[t, j]
        if s <= 0.0:
            s = 1e-300
        scale[t] = s
        for j in range(K):
            alpha[t, j] /= s

    log_prob = log_shift
    for t in range(T):
        log_prob += math.log(scale[t])

    # Backward pass
    beta = np.empty((T, K))
    for k in range(K):
        beta[T - 1, k] = 1.0
    weighted = np.empty(K)
    for t in range(T - 2, -1, -1):
        for j in range(K):
            weighted[j] = emission[t + 1, j] * beta[t + 1, j]
        for i in range(K):
            acc = 0.0
            for j in range(K):
                acc += transmat[i, j] * weighted[j]
            beta[t, i] = acc / scale[t + 1]

    # Posteriors
    gamma = np.empty((T, K))
    for t in range(T):
        s = 0.0
        for k in range(K):
            gamma[t, k] = alpha[t, k] * beta[t, k]
            s += gamma[t, k]
        if s <= 0.0:
            for k in range(K):
                gamma[t, k] = 1.0 / K
        else:
            for k in range(K):
                gamma[t, k] /= s

    # Expected transition counts
    trans_counts = np.zeros((K, K))
    for t in range(T - 1):
        for j in range(K):
            weighted[j] = emission[t + 1, j] * beta[t + 1, j] / scale[t + 1]
        for i in range(K):
            a = alpha[t, i]
            for j in range(K):
                trans_counts[i, j] += a * transmat[i, j] * weighted[j]

    return gamma, trans_counts, log_prob


def forward_backward(log_emission: np.ndarray, startprob: np.ndarray,
                     transmat: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
    """Run the compiled forward-backward on one sequence."""
    log_emission = np.ascontiguousarray(log_emission, dtype=np.float64)
    gamma, trans_counts, log_prob = _forward_backward_numba(
        log_emission,
        np.ascontiguousarray(startprob, dtype=np.float64),
        np.ascontiguousarray(transmat, dtype=np.float64),
    )
    return gamma, trans_counts, float(log_prob)


def _run_estep(log_emission: np.ndarray, sequences: Sequence[Tuple[int, int]],
               startprob: np.ndarray, transmat: np.ndarray,
               n_workers: int = 1) -> List[Tuple[np.ndarray, np.ndarray, float]]:
    """
    Forward-backward on every sequence, in sequence order.

    Sequences are independent; with n_workers > 1 they run on a thread
    pool (the compiled kernel releases the GIL). Results are only returned
    once every sequence has finished.
    """
    def work(bounds):
        lo, hi = bounds
        return forward_backward(log_emission[lo:hi], startprob, transmat)

    if n_workers <= 1 or len(sequences) <= 1:
        return [work(b) for b in sequences]
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        return list(executor.map(work, sequences))


class TrainingMonitor:
    """Tracks training progress."""
    def __init__(self):
        self.history = []


class MultivariateHMM:
    """
    Joint HMM over the combinatorial states of one StateSpace.

    The emission of state k for a bin's count vector is the product over
    samples of the sample's unmodified or modified density, chosen by the
    state's bit for that sample.
    """

    def __init__(self, state_space: StateSpace, emissions: Sequence[UnivariateModel],
                 n_iter: Optional[int] = None, tol: float = 0.01,
                 max_time: Optional[float] = None, per_chrom: bool = True,
                 n_workers: int = 1, self_transition: float = DEFAULT_SELF_TRANSITION):
        if len(emissions) != state_space.n_samples:
            raise ValueError(
                f"{len(emissions)} emission models given for {state_space.n_samples} samples"
            )
        self.state_space = state_space
        self.emissions = list(emissions)
        self.n_states = state_space.n_states
        self.n_iter = n_iter
        self.tol = tol
        self.max_time = max_time
        self.per_chrom = per_chrom
        self.n_workers = n_workers
        self.self_transition = self_transition

        self.startprob_: Optional[np.ndarray] = None
        self.transmat_: Optional[np.ndarray] = None

        self.monitor_: Optional[TrainingMonitor] = None
        self.converged_: bool = False
        self.n_iter_: int = 0
        self.loglik_: Optional[float] = None

    def init_params(self) -> None:
        """Uniform start probabilities, self-transition biased transitions."""
        K = self.n_states
        self.startprob_ = np.full(K, 1.0 / K)
        if K == 1:
            self.transmat_ = np.ones((1, 1))
            return
        off = (1.0 - self.self_transition) / (K - 1)
        transmat = np.full((K, K), off)
        np.fill_diagonal(transmat, self.self_transition)
        self.transmat_ = transmat

    def log_emission(self, counts: np.ndarray) -> np.ndarray:
        """
        Log emission density of every state, shape (n_bins, n_states).

        Args:
            counts: Read counts, shape (n_bins, n_samples) in state-space order
        """
        counts = np.asarray(counts)
        if counts.ndim == 1:
            counts = counts.reshape(-1, 1)
        if counts.shape[1] != self.state_space.n_samples:
            raise ValueError(
                f"counts have {counts.shape[1]} columns, state space has "
                f"{self.state_space.n_samples} samples"
            )
        log_unmod = np.empty(counts.shape)
        log_mod = np.empty(counts.shape)
        for s, model in enumerate(self.emissions):
            dens = model.state_log_densities(counts[:, s])
            log_unmod[:, s] = dens[:, 0]
            log_mod[:, s] = dens[:, 1]
        bits = self.state_space.bits.astype(float)
        return log_unmod.sum(axis=1)[:, np.newaxis] + (log_mod - log_unmod) @ bits.T

    def _sequences(self, n_bins: int,
                   chrom_slices: Optional[Sequence[Tuple[str, int, int]]]) -> List[Tuple[int, int]]:
        if self.per_chrom and chrom_slices:
            return [(lo, hi) for _, lo, hi in chrom_slices]
        return [(0, n_bins)]

    def fit(self, counts: np.ndarray,
            chrom_slices: Optional[Sequence[Tuple[str, int, int]]] = None,
            verbose: bool = False, desc: str = "Baum-Welch") -> 'MultivariateHMM':
        """
        Train start and transition probabilities with Baum-Welch.

        With per_chrom=True every chromosome is its own sequence: its
        forward-backward pass is independent, and expected counts and
        log-likelihoods are summed over chromosomes before each update.

        Stops when the log-likelihood improves by less than tol, after
        n_iter iterations, or once max_time seconds have passed (checked
        after each complete iteration). The best parameters seen are kept.
        n_iter=0 leaves the initial parameters unchanged.

        Args:
            counts: Read counts, shape (n_bins, n_samples)
            chrom_slices: (chrom, first_row, end_row) per chromosome
            verbose: Show progress bar
            desc: Description for progress bar

        Returns:
            self
        """
        log_emission = self.log_emission(counts)
        sequences = self._sequences(len(log_emission), chrom_slices)
        if self.startprob_ is None or self.transmat_ is None:
            self.init_params()

        self.monitor_ = TrainingMonitor()
        self.converged_ = False
        self.n_iter_ = 0
        best = (self.startprob_.copy(), self.transmat_.copy())
        best_log_prob = -np.inf
        prev_log_prob = -np.inf
        start_time = time.time()

        iterator = range(self.n_iter) if self.n_iter is not None else itertools.count()
        if verbose:
            iterator = tqdm(iterator, desc=desc, leave=False)

        for iteration in iterator:
            # E-step over all sequences, then reduce
            stats = _run_estep(log_emission, sequences, self.startprob_,
                               self.transmat_, self.n_workers)
            start_counts = np.zeros(self.n_states)
            trans_counts = np.zeros((self.n_states, self.n_states))
            log_prob_total = 0.0
            for gamma, tc, lp in stats:
                start_counts += gamma[0]
                trans_counts += tc
                log_prob_total += lp

            self.monitor_.history.append(log_prob_total)
            self.n_iter_ = iteration + 1
            if log_prob_total > best_log_prob:
                best_log_prob = log_prob_total
                best = (self.startprob_.copy(), self.transmat_.copy())

            improvement = log_prob_total - prev_log_prob
            if verbose and hasattr(iterator, 'set_postfix'):
                iterator.set_postfix({'logprob': f'{log_prob_total:.2e}',
                                      'delta': f'{improvement:.2e}'})

            if iteration > 0 and improvement < self.tol:
                self.converged_ = True
                break
            if self.max_time is not None and time.time() - start_time > self.max_time:
                break

            # M-step
            self.startprob_ = start_counts / start_counts.sum()
            self.startprob_ = np.clip(self.startprob_, MIN_PROB, 1.0)
            self.startprob_ /= self.startprob_.sum()

            trans_sums = trans_counts.sum(axis=1, keepdims=True)
            trans_sums = np.where(trans_sums == 0, 1, trans_sums)
            self.transmat_ = trans_counts / trans_sums
            self.transmat_ = np.clip(self.transmat_, MIN_PROB, 1.0)
            self.transmat_ /= self.transmat_.sum(axis=1, keepdims=True)

            prev_log_prob = log_prob_total

        if self.n_iter_ > 0:
            self.startprob_, self.transmat_ = best
            self.loglik_ = best_log_prob
        return self

    def predict_proba(self, counts: np.ndarray,
                      chrom_slices: Optional[Sequence[Tuple[str, int, int]]] = None
                      ) -> Tuple[np.ndarray, float]:
        """
        Posterior state probabilities with the current parameters.

        Returns:
            posteriors: (n_bins, n_states), rows sum to 1
            log_prob: total log-likelihood
        """
        if self.startprob_ is None or self.transmat_ is None:
            self.init_params()
        log_emission = self.log_emission(counts)
        sequences = self._sequences(len(log_emission), chrom_slices)
        stats = _run_estep(log_emission, sequences, self.startprob_,
                           self.transmat_, self.n_workers)
        posteriors = np.concatenate([gamma for gamma, _, _ in stats], axis=0)
        log_prob = float(sum(lp for _, _, lp in stats))
        return posteriors, log_prob

    def predict(self, counts: np.ndarray,
                chrom_slices: Optional[Sequence[Tuple[str, int, int]]] = None) -> np.ndarray:
        """Most likely state code per bin (maximum posterior)."""
        posteriors, _ = self.predict_proba(counts, chrom_slices)
        return self.state_space.codes[np.argmax(posteriors, axis=1)]

    def sample_posteriors(self, posteriors: np.ndarray) -> np.ndarray:
        """Posterior of modification per sample, shape (n_bins, n_samples)."""
        return posteriors @ self.state_space.bits.astype(float)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize model to dictionary."""
        return {
            'model_type': 'MultivariateHMM',
            'state_space': self.state_space.to_dict(),
            'emissions': [m.to_dict() for m in self.emissions],
            'n_iter': self.n_iter,
            'tol': self.tol,
            'max_time': self.max_time,
            'per_chrom': self.per_chrom,
            'n_workers': self.n_workers,
            'self_transition': self.self_transition,
            'startprob': self.startprob_.tolist() if self.startprob_ is not None else None,
            'transmat': self.transmat_.tolist() if self.transmat_ is not None else None,
            'converged': self.converged_,
            'n_iter_done': self.n_iter_,
            'loglik': self.loglik_,
            'history': list(self.monitor_.history) if self.monitor_ else [],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'MultivariateHMM':
        """Deserialize model from dictionary."""
        model = cls(
            state_space=StateSpace.from_dict(d['state_space']),
            emissions=[UnivariateModel.from_dict(e) for e in d['emissions']],
            n_iter=d.get('n_iter'),
            tol=d.get('tol', 0.01),
            max_time=d.get('max_time'),
            per_chrom=d.get('per_chrom', True),
            n_workers=d.get('n_workers', 1),
            self_transition=d.get('self_transition', DEFAULT_SELF_TRANSITION),
        )
        if d.get('startprob') is not None:
            model.startprob_ = np.array(d['startprob'])
        if d.get('transmat') is not None:
            model.transmat_ = np.array(d['transmat'])
        model.converged_ = bool(d.get('converged', False))
        model.n_iter_ = int(d.get('n_iter_done', 0))
        model.loglik_ = d.get('loglik')
        model.monitor_ = TrainingMonitor()
        model.monitor_.history = list(d.get('history', []))
        return model
