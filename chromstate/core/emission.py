"""
Per-sample emission model: a mixture over binned read counts.

Components:
    zero-inflation: point mass at 0 (optional)
    unmodified:     negative binomial, background reads
    modified:       negative binomial, enriched reads

The mixture is fitted by EM on the counts of one sample. Means and
variances are re-estimated by weighted moments and converted to the
negative binomial size/probability parameterization. The multivariate
engine uses the fitted components as the per-sample densities of the
"unmodified" (zero-inflation + unmodified) and "modified" states.
"""

import itertools
import time
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from scipy.special import logsumexp
from scipy.stats import nbinom
from tqdm import tqdm

COMPONENTS_ZERO_INFLATED = ('zero-inflation', 'unmodified', 'modified')
COMPONENTS_PLAIN = ('unmodified', 'modified')

MIN_MEAN = 1e-2
MIN_WEIGHT = 1e-10
# NB needs var > mean; narrow components are held just above Poisson
VAR_MARGIN = 1e-3


def nb_size_prob(mean: float, var: float) -> Tuple[float, float]:
    """Convert mean/variance to scipy's nbinom (n, p) parameters."""
    var = max(var, mean * (1.0 + VAR_MARGIN))
    size = mean * mean / (var - mean)
    prob = mean / var
    return size, prob


class UnivariateModel:
    """
    Two- or three-component count mixture for one sample.

    Components are kept in canonical order after fitting: the unmodified
    component always has the lower mean.
    """

    def __init__(self, n_components: int = 3, n_iter: Optional[int] = None,
                 tol: float = 0.01, max_time: Optional[float] = None):
        if n_components not in (2, 3):
            raise ValueError(f"n_components must be 2 or 3, got {n_components}")
        self.n_components = n_components
        self.n_iter = n_iter
        self.tol = tol
        self.max_time = max_time

        self.weights_: Optional[np.ndarray] = None
        # NB parameters for (unmodified, modified)
        self.means_: Optional[np.ndarray] = None
        self.variances_: Optional[np.ndarray] = None

        self.converged_: bool = False
        self.n_iter_: int = 0
        self.loglik_: Optional[float] = None
        self.history_: List[float] = []
        self.advisories_: List[Tuple[str, str]] = []

    @property
    def zero_inflated(self) -> bool:
        return self.n_components == 3

    @property
    def component_names(self) -> Tuple[str, ...]:
        return COMPONENTS_ZERO_INFLATED if self.zero_inflated else COMPONENTS_PLAIN

    @property
    def modified_index(self) -> int:
        return self.n_components - 1

    @property
    def modified_weight(self) -> float:
        return float(self.weights_[self.modified_index])

    # ------------------------------------------------------------------
    # Densities
    # ------------------------------------------------------------------

    def _nb_log_pmf(self, counts: np.ndarray) -> np.ndarray:
        """Log pmf of the two NB components, shape (n_bins, 2)."""
        out = np.empty((len(counts), 2))
        for j in range(2):
            size, prob = nb_size_prob(self.means_[j], self.variances_[j])
            out[:, j] = nbinom.logpmf(counts, size, prob)
        return out

    def component_log_pmf(self, counts: np.ndarray) -> np.ndarray:
        """Log pmf of every component, shape (n_bins, n_components)."""
        counts = np.asarray(counts)
        nb = self._nb_log_pmf(counts)
        if not self.zero_inflated:
            return nb
        with np.errstate(divide='ignore'):
            zero = np.where(counts == 0, 0.0, -np.inf)
        return np.column_stack([zero, nb])

    def _weighted_log_pmf(self, counts: np.ndarray) -> np.ndarray:
        with np.errstate(divide='ignore'):
            return self.component_log_pmf(counts) + np.log(self.weights_)[np.newaxis, :]

    def state_log_densities(self, counts: np.ndarray) -> np.ndarray:
        """
        Log densities of the unmodified and modified state, shape (n_bins, 2).

        The unmodified density mixes zero-inflation and the unmodified NB
        with their weights renormalized.
        """
        log_w = self._weighted_log_pmf(counts)
        unmod = log_w[:, :-1]
        unmod_total = np.log(self.weights_[:-1].sum())
        out = np.empty((len(log_w), 2))
        out[:, 0] = logsumexp(unmod, axis=1) - unmod_total
        out[:, 1] = self.component_log_pmf(counts)[:, -1]
        return out

    def predict_proba(self, counts: np.ndarray) -> np.ndarray:
        """Posterior probability of the modified component for each bin."""
        log_w = self._weighted_log_pmf(np.asarray(counts))
        log_norm = logsumexp(log_w, axis=1)
        return np.exp(log_w[:, -1] - log_norm)

    def score(self, counts: np.ndarray) -> float:
        """Log-likelihood of the counts under the mixture."""
        return float(logsumexp(self._weighted_log_pmf(np.asarray(counts)), axis=1).sum())

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def init_params(self, counts: np.ndarray) -> None:
        """
        Seed components from empirical quantiles.

        The unmodified mean starts at the median and the modified mean at
        the 95th percentile, so the low-count component starts as background.
        """
        x = np.asarray(counts, dtype=float)
        frac_zero = float(np.mean(x == 0))
        unmod_mean = max(float(np.quantile(x, 0.5)), 0.5)
        mod_mean = max(float(np.quantile(x, 0.95)), 2.0 * unmod_mean + 1.0)
        overall_var = float(x.var())

        self.means_ = np.array([unmod_mean, mod_mean])
        self.variances_ = np.array([
            2.0 * unmod_mean,
            max(overall_var, 2.0 * mod_mean),
        ])

        midpoint = 0.5 * (unmod_mean + mod_mean)
        w_mod = float(np.clip(np.mean(x > midpoint), 0.01, 0.5))
        if self.zero_inflated:
            w_zero = 0.5 * frac_zero * (1.0 - w_mod)
            weights = np.array([w_zero, 1.0 - w_mod - w_zero, w_mod])
        else:
            weights = np.array([1.0 - w_mod, w_mod])
        weights = np.clip(weights, MIN_WEIGHT, 1.0)
        self.weights_ = weights / weights.sum()

    def _m_step(self, x: np.ndarray, resp: np.ndarray) -> None:
        totals = resp.sum(axis=0)
        weights = np.clip(totals / totals.sum(), MIN_WEIGHT, 1.0)
        self.weights_ = weights / weights.sum()

        offset = 1 if self.zero_inflated else 0
        for j in range(2):
            r = resp[:, offset + j]
            total = totals[offset + j]
            if total < 1e-8:
                # Empty component keeps its previous parameters
                continue
            mean = float(np.dot(r, x) / total)
            var = float(np.dot(r, (x - mean) ** 2) / total)
            mean = max(mean, MIN_MEAN)
            self.means_[j] = mean
            self.variances_[j] = max(var, mean * (1.0 + VAR_MARGIN))

    def _snapshot(self) -> Dict[str, np.ndarray]:
        return {
            'weights': self.weights_.copy(),
            'means': self.means_.copy(),
            'variances': self.variances_.copy(),
        }

    def _restore(self, snap: Dict[str, np.ndarray]) -> None:
        self.weights_ = snap['weights']
        self.means_ = snap['means']
        self.variances_ = snap['variances']

    def fit(self, counts: np.ndarray, verbose: bool = False,
            desc: str = "EM") -> 'UnivariateModel':
        """
        Fit the mixture by EM.

        Stops when the log-likelihood improves by less than tol, or when
        n_iter iterations or max_time seconds are used up. Running out of
        budget is not an error: the best parameters seen are kept and a
        'not-converged' advisory is recorded. Degenerate fits are recorded
        as 'degenerate-fit' advisories.

        Args:
            counts: Read counts per bin
            verbose: Show progress bar for EM iterations
            desc: Description for progress bar

        Returns:
            self
        """
        x = np.asarray(counts)
        if x.ndim != 1 or len(x) == 0:
            raise ValueError("counts must be a non-empty 1-D array")
        if np.any(x < 0):
            raise ValueError("counts must be non-negative")
        x = x.astype(float)

        self.init_params(x)
        self.history_ = []
        self.advisories_ = []
        self.converged_ = False
        self.n_iter_ = 0

        best = self._snapshot()
        best_loglik = -np.inf
        prev_loglik = -np.inf
        start_time = time.time()
        budget_hit = False

        iterator = range(self.n_iter) if self.n_iter is not None else itertools.count()
        if verbose:
            iterator = tqdm(iterator, desc=desc, leave=False)

        for iteration in iterator:
            log_w = self._weighted_log_pmf(x)
            log_norm = logsumexp(log_w, axis=1)
            loglik = float(log_norm.sum())
            self.history_.append(loglik)
            self.n_iter_ = iteration + 1

            if loglik > best_loglik:
                best_loglik = loglik
                best = self._snapshot()

            improvement = loglik - prev_loglik
            if verbose and hasattr(iterator, 'set_postfix'):
                iterator.set_postfix({'loglik': f'{loglik:.2e}', 'delta': f'{improvement:.2e}'})

            if iteration > 0 and improvement < self.tol:
                self.converged_ = True
                break
            if self.max_time is not None and time.time() - start_time > self.max_time:
                budget_hit = True
                break

            resp = np.exp(log_w - log_norm[:, np.newaxis])
            self._m_step(x, resp)
            prev_loglik = loglik
        else:
            budget_hit = self.n_iter is not None and self.n_iter > 0

        self._restore(best)
        self.normalize_components()
        self.loglik_ = self.score(x)

        if budget_hit and not self.converged_:
            self.advisories_.append((
                'not-converged',
                f"EM stopped after {self.n_iter_} iterations without reaching tol={self.tol}; "
                f"best parameters kept"
            ))
        self._check_degenerate(x)
        return self

    def _check_degenerate(self, x: np.ndarray) -> None:
        reasons = []
        if not np.any(x > 0):
            reasons.append("all counts are zero")
        if self.modified_weight < 1e-6:
            reasons.append("modified component has no weight")
        post = self.predict_proba(x)
        if post.sum() > 0:
            mod_mean = float(np.dot(post, x) / post.sum())
            mod_var = float(np.dot(post, (x - mod_mean) ** 2) / post.sum())
            if mod_var < 1e-8:
                reasons.append("modified component has zero variance")
        if abs(self.means_[1] - self.means_[0]) < 1e-6:
            reasons.append("unmodified and modified components coincide")
        if reasons:
            self.advisories_.append((
                'degenerate-fit',
                "Low quality fit (" + "; ".join(reasons) + "), inspect the count histogram"
            ))

    def normalize_components(self) -> bool:
        """
        Ensure the unmodified component has the lower mean.

        EM can converge with the NB components swapped; swap them back.

        Returns:
            True if components were swapped, False otherwise
        """
        if self.means_ is None or self.means_[0] <= self.means_[1]:
            return False
        self.means_ = self.means_[::-1].copy()
        self.variances_ = self.variances_[::-1].copy()
        weights = self.weights_.copy()
        weights[-2], weights[-1] = self.weights_[-1], self.weights_[-2]
        self.weights_ = weights
        return True

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            'n_components': self.n_components,
            'n_iter': self.n_iter,
            'tol': self.tol,
            'max_time': self.max_time,
            'weights': self.weights_.tolist() if self.weights_ is not None else None,
            'means': self.means_.tolist() if self.means_ is not None else None,
            'variances': self.variances_.tolist() if self.variances_ is not None else None,
            'converged': self.converged_,
            'n_iter_done': self.n_iter_,
            'loglik': self.loglik_,
            'history': list(self.history_),
            'advisories': [list(a) for a in self.advisories_],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'UnivariateModel':
        model = cls(n_components=d.get('n_components', 3), n_iter=d.get('n_iter'),
                    tol=d.get('tol', 0.01), max_time=d.get('max_time'))
        if d.get('weights') is not None:
            model.weights_ = np.array(d['weights'])
        if d.get('means') is not None:
            model.means_ = np.array(d['means'])
        if d.get('variances') is not None:
            model.variances_ = np.array(d['variances'])
        model.converged_ = bool(d.get('converged', False))
        model.n_iter_ = int(d.get('n_iter_done', 0))
        model.loglik_ = d.get('loglik')
        model.history_ = list(d.get('history', []))
        model.advisories_ = [tuple(a) for a in d.get('advisories', [])]
        return model
