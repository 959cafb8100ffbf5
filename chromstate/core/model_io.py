"""
chromstate result I/O module

Fitted results are saved as a single JSON document holding all fitted
parameters, bins, posteriors (or null), peaks, replicate info and
diagnostics, so cutoffs can be re-derived after reloading without
refitting:

- .json:    plain JSON
- .json.gz: gzip-compressed JSON

Floats are written with full precision; a reloaded result reproduces the
same peaks for the same cutoff.
"""

import gzip
import json
import os
import warnings
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd

from chromstate.core.bins import SampleInfo
from chromstate.core.emission import UnivariateModel
from chromstate.core.hmm import MultivariateHMM
from chromstate.core.results import (
    CombinedResult,
    Diagnostics,
    ModelKind,
    MultivariateResult,
    ReplicateInfo,
    UnivariateResult,
)

MODEL_TYPE = 'chromstate'
FORMAT_VERSION = '1.0'

PathLike = Union[str, os.PathLike]


# =============================================================================
# Array / table helpers
# =============================================================================

def _array(values: Optional[np.ndarray]) -> Optional[list]:
    return None if values is None else np.asarray(values).tolist()


def _peaks_to_dict(df: pd.DataFrame) -> Dict[str, list]:
    return {
        'chrom': [str(c) for c in df['chrom']],
        'start': df['start'].astype(np.int64).tolist(),
        'end': df['end'].astype(np.int64).tolist(),
        'max_posterior': df['max_posterior'].astype(float).tolist(),
        'first_bin': df['first_bin'].astype(np.int64).tolist(),
        'end_bin': df['end_bin'].astype(np.int64).tolist(),
    }


def _peaks_from_dict(d: Dict[str, list]) -> pd.DataFrame:
    return pd.DataFrame({
        'chrom': pd.Series(d['chrom'], dtype=str),
        'start': pd.Series(d['start'], dtype=np.int64),
        'end': pd.Series(d['end'], dtype=np.int64),
        'max_posterior': pd.Series(d['max_posterior'], dtype=float),
        'first_bin': pd.Series(d['first_bin'], dtype=np.int64),
        'end_bin': pd.Series(d['end_bin'], dtype=np.int64),
    })


def _peak_sets_to_dict(peaks: Dict[str, pd.DataFrame]) -> Dict[str, Dict[str, list]]:
    return {sid: _peaks_to_dict(df) for sid, df in peaks.items()}


def _peak_sets_from_dict(d: Dict[str, Dict[str, list]]) -> Dict[str, pd.DataFrame]:
    return {sid: _peaks_from_dict(p) for sid, p in d.items()}


def _bins_to_dict(result) -> Dict[str, list]:
    return {
        'chrom': [str(c) for c in result.chrom],
        'start': np.asarray(result.start, dtype=np.int64).tolist(),
        'end': np.asarray(result.end, dtype=np.int64).tolist(),
    }


def _optional_array(values, dtype=float) -> Optional[np.ndarray]:
    return None if values is None else np.array(values, dtype=dtype)


# =============================================================================
# Per-kind conversion
# =============================================================================

def result_to_dict(result) -> Dict[str, Any]:
    """Serialize any result to a JSON-compatible dictionary."""
    kind = result.kind
    if kind is ModelKind.UNIVARIATE:
        return {
            'kind': kind.value,
            'sample': result.sample.to_dict(),
            'bins': _bins_to_dict(result),
            'counts': _array(result.counts),
            'model': result.model.to_dict(),
            'posteriors': _array(result.posteriors),
            'base_calls': _array(result.base_calls),
            'calls': _array(result.calls),
            'base_peaks': _peak_sets_to_dict(result.base_peaks),
            'peaks': _peak_sets_to_dict(result.peaks),
            'post_cutoff': result.post_cutoff,
            'max_post_cutoff': result.max_post_cutoff,
            'config': result.config,
            'diagnostics': result.diagnostics.to_list(),
        }
    if kind is ModelKind.MULTIVARIATE:
        return {
            'kind': kind.value,
            'hmm': result.hmm.to_dict(),
            'bins': _bins_to_dict(result),
            'counts': _array(result.counts),
            'state': _array(result.state),
            'state_posteriors': _array(result.state_posteriors),
            'posteriors': _array(result.posteriors),
            'calls': _array(result.calls),
            'base_peaks': _peak_sets_to_dict(result.base_peaks),
            'peaks': _peak_sets_to_dict(result.peaks),
            'post_cutoff': result.post_cutoff,
            'max_post_cutoff': result.max_post_cutoff,
            'replicate_info': (result.replicate_info.to_dict()
                               if result.replicate_info is not None else None),
            'config': result.config,
            'diagnostics': result.diagnostics.to_list(),
        }
    if kind is ModelKind.COMBINED:
        return {
            'kind': kind.value,
            'mode': result.mode,
            'components': [result_to_dict(c) for c in result.components],
            'config': result.config,
            'diagnostics': result.diagnostics.to_list(),
        }
    raise ValueError(f"Unknown result kind: {kind}")


def result_from_dict(d: Dict[str, Any]):
    """Rebuild a result from result_to_dict() output."""
    try:
        kind = ModelKind(d.get('kind'))
    except ValueError:
        raise ValueError(f"Unknown result kind: {d.get('kind')!r}")

    if kind is ModelKind.COMBINED:
        return CombinedResult(
            mode=d['mode'],
            components=[result_from_dict(c) for c in d['components']],
            config=dict(d.get('config') or {}),
            diagnostics=Diagnostics.from_list(d.get('diagnostics')),
        )

    bins = d['bins']
    common = dict(
        chrom=np.array(bins['chrom'], dtype=str),
        start=np.array(bins['start'], dtype=np.int64),
        end=np.array(bins['end'], dtype=np.int64),
        base_peaks=_peak_sets_from_dict(d['base_peaks']),
        peaks=_peak_sets_from_dict(d['peaks']),
        post_cutoff=d.get('post_cutoff'),
        max_post_cutoff=d.get('max_post_cutoff'),
        config=dict(d.get('config') or {}),
        diagnostics=Diagnostics.from_list(d.get('diagnostics')),
    )

    if kind is ModelKind.UNIVARIATE:
        return UnivariateResult(
            sample=SampleInfo.from_dict(d['sample']),
            counts=np.array(d['counts'], dtype=np.int64),
            model=UnivariateModel.from_dict(d['model']),
            posteriors=_optional_array(d.get('posteriors')),
            base_calls=np.array(d['base_calls'], dtype=np.int8),
            calls=np.array(d['calls'], dtype=np.int8),
            **common,
        )

    hmm = MultivariateHMM.from_dict(d['hmm'])
    n_samples = hmm.state_space.n_samples
    replicate_info = d.get('replicate_info')
    return MultivariateResult(
        state_space=hmm.state_space,
        hmm=hmm,
        counts=np.array(d['counts'], dtype=np.int64).reshape(-1, n_samples),
        state=np.array(d['state'], dtype=np.int64),
        state_posteriors=_optional_array(d.get('state_posteriors')),
        posteriors=_optional_array(d.get('posteriors')),
        calls=np.array(d['calls'], dtype=np.int8).reshape(-1, n_samples),
        replicate_info=(ReplicateInfo.from_dict(replicate_info)
                        if replicate_info is not None else None),
        **common,
    )


# =============================================================================
# Saving / loading
# =============================================================================

def _is_compressed(filepath: str) -> bool:
    return filepath.endswith('.json.gz')


def save_result(result, filepath: PathLike) -> str:
    """
    Save a fitted result to JSON.

    If the filepath ends in neither .json nor .json.gz, the extension is
    replaced with .json and a warning is issued.

    Args:
        result: Univariate, multivariate or combined result
        filepath: Output path

    Returns:
        Path actually written
    """
    filepath = os.fspath(filepath)
    if not (filepath.endswith('.json') or _is_compressed(filepath)):
        old_path = filepath
        base, _ = os.path.splitext(filepath)
        filepath = base + '.json'
        warnings.warn(
            f"Results are saved as JSON. "
            f"Saving to '{filepath}' instead of '{old_path}'."
        )

    data = {
        'model_type': MODEL_TYPE,
        'version': FORMAT_VERSION,
    }
    data.update(result_to_dict(result))

    if _is_compressed(filepath):
        with gzip.open(filepath, 'wt') as f:
            json.dump(data, f)
    else:
        with open(filepath, 'w') as f:
            json.dump(data, f)
    return filepath


def load_result(filepath: PathLike):
    """
    Load a result saved with save_result().

    Args:
        filepath: Path to .json or .json.gz file

    Returns:
        UnivariateResult, MultivariateResult or CombinedResult
        (check the kind attribute)

    Raises:
        ValueError: Unknown file type, model type or result kind
    """
    filepath = os.fspath(filepath)
    if _is_compressed(filepath):
        with gzip.open(filepath, 'rt') as f:
            data = json.load(f)
    elif filepath.endswith('.json'):
        with open(filepath, 'r') as f:
            data = json.load(f)
    else:
        raise ValueError(f"Unknown result file type: {filepath} (expected .json or .json.gz)")

    if data.get('model_type') != MODEL_TYPE:
        raise ValueError(
            f"{filepath} is not a chromstate result (model_type={data.get('model_type')!r})"
        )
    return result_from_dict(data)


def resolve_univariate(item: Union[PathLike, UnivariateResult]) -> UnivariateResult:
    """
    Turn a path or an in-memory univariate result into a UnivariateResult.

    Raises:
        TypeError: item is neither
        ValueError: the file holds another kind of result
    """
    if isinstance(item, (str, os.PathLike)):
        result = load_result(item)
        if result.kind is not ModelKind.UNIVARIATE:
            raise ValueError(
                f"{os.fspath(item)} holds a {result.kind.value} result, expected univariate"
            )
        return result
    if getattr(item, 'kind', None) is ModelKind.UNIVARIATE:
        return item
    raise TypeError(
        f"Expected a path or a univariate result, got {type(item).__name__}"
    )
