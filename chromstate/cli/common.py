"""Shared argparse argument factories for chromstate CLI tools.

Each function adds a group of related arguments to an ArgumentParser.
Default values can be overridden per-script where needed.
"""

import argparse
from typing import Dict, List, Optional, Union

from chromstate.core.states import DEFAULT_MAX_STATES, MODES


def add_mode_args(parser: argparse.ArgumentParser,
                  default: str = 'full') -> None:
    """Add --mode and the state-space flags."""
    parser.add_argument(
        '--mode', choices=list(MODES), default=default,
        help=f"Analysis mode (default: {default})"
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        '--differential-only', action='store_true',
        help="Only states with a difference between conditions"
    )
    group.add_argument(
        '--common-only', action='store_true',
        help="Only states that are equal across conditions"
    )
    parser.add_argument(
        '--force-equal', action='store_true',
        help="Replicates of a mark/condition share one call"
    )
    parser.add_argument(
        '--max-states', type=int, default=DEFAULT_MAX_STATES,
        help=f"Maximum number of states per block (default: {DEFAULT_MAX_STATES})"
    )
    parser.add_argument(
        '--select-states', action='store_true',
        help="Keep only the most frequent states of oversized blocks instead of failing"
    )


def add_convergence_args(parser: argparse.ArgumentParser,
                         tol: float = 0.01) -> None:
    """Add fitting budget arguments (--tol, --max-iter, --max-time)."""
    parser.add_argument(
        '--tol', type=float, default=tol,
        help=f"Log-likelihood improvement at which fitting stops (default: {tol})"
    )
    parser.add_argument(
        '--max-iter', type=int, default=None,
        help="Maximum iterations (default: no limit)"
    )
    parser.add_argument(
        '--max-time', type=float, default=None,
        help="Maximum fitting time in seconds (default: no limit)"
    )


def add_parallel_args(parser: argparse.ArgumentParser,
                      default_cores: int = 1) -> None:
    """Add parallelization arguments (--cores, --no-per-chrom)."""
    parser.add_argument(
        '--cores', '-c', type=int, default=default_cores,
        help=f"Number of CPU cores (0=auto, default: {default_cores})"
    )
    parser.add_argument(
        '--no-per-chrom', dest='per_chrom', action='store_false',
        help="Concatenate chromosomes into one HMM sequence"
    )


def add_cutoff_args(parser: argparse.ArgumentParser) -> None:
    """Add --post-cutoff and --max-post-cutoff."""
    parser.add_argument(
        '--post-cutoff', nargs='+', default=None, metavar='[SAMPLE=]VALUE',
        help="Per-bin posterior cutoff, one value or SAMPLE=VALUE pairs"
    )
    parser.add_argument(
        '--max-post-cutoff', nargs='+', default=None, metavar='[SAMPLE=]VALUE',
        help="Per-peak maximum posterior cutoff, one value or SAMPLE=VALUE pairs"
    )


def parse_cutoff(values: Optional[List[str]]) -> Union[None, float, Dict[str, float]]:
    """
    Turn --post-cutoff style values into a cutoff.

    ['0.9'] -> 0.9, ['H3K4me3-SHR-rep1=0.9', ...] -> {sample: 0.9, ...}
    """
    if not values:
        return None
    if len(values) == 1 and '=' not in values[0]:
        return float(values[0])
    cutoffs = {}
    for item in values:
        if '=' not in item:
            raise ValueError(f"Expected SAMPLE=VALUE, got '{item}'")
        sample_id, value = item.rsplit('=', 1)
        cutoffs[sample_id] = float(value)
    return cutoffs


def add_posterior_args(parser: argparse.ArgumentParser) -> None:
    """Add --drop-posteriors flag."""
    parser.add_argument(
        '--drop-posteriors', dest='keep_posteriors', action='store_false',
        help="Do not keep per-bin posteriors (smaller output, no --post-cutoff later)"
    )


def add_output_args(parser: argparse.ArgumentParser,
                    required: bool = True,
                    help_text: str = "Output prefix") -> None:
    """Add -o/--output argument."""
    parser.add_argument(
        '-o', '--output', required=required,
        help=help_text
    )


def add_verbose_args(parser: argparse.ArgumentParser) -> None:
    """Add --verbose flag."""
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Verbose output"
    )


def add_version_args(parser: argparse.ArgumentParser) -> None:
    """Add --version flag."""
    from chromstate import __version__
    parser.add_argument(
        '--version', action='version',
        version=f'%(prog)s {__version__}'
    )


def resolve_cores(cores: int) -> int:
    """0 means all available cores."""
    if cores == 0:
        import multiprocessing
        n_cores = multiprocessing.cpu_count()
        print(f"Auto-detected {n_cores} CPU cores")
        return n_cores
    return cores
