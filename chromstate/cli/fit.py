#!/usr/bin/env python3
"""
chromstate fit CLI entry point.
Fits univariate and multivariate HMMs to a binned read-count table.
"""

import argparse
import os
import sys

import pandas as pd

from chromstate.core.bins import BinnedCounts
from chromstate.core.model_io import save_result
from chromstate.core.results import PosteriorsNotKeptError
from chromstate.core.states import StateSpaceTooLargeError
from chromstate.inference.calling import call_peaks_by_mode
from chromstate.inference.peaks import apply_max_post_cutoff, apply_post_cutoff, peaks_table
from chromstate.cli.common import (
    add_convergence_args, add_cutoff_args, add_mode_args, add_output_args,
    add_parallel_args, add_posterior_args, add_verbose_args, add_version_args,
    parse_cutoff, resolve_cores,
)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Fit chromatin-state HMMs to binned ChIP-seq read counts',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Input:
  Tab-separated table with columns chrom, start, end and one read-count
  column per sample, named <mark>-<condition>-rep<N>.

Output:
  <output>.json.gz     fitted result (reload with chromstate-cutoff)
  <output>_peaks.tsv   peaks of every sample

Examples:
  # Combinatorial states per condition
  chromstate-fit -i counts.tsv -o results/run --mode combinatorial

  # Differential states only, 4 cores
  chromstate-fit -i counts.tsv -o results/run --mode differential --differential-only -c 4
'''
    )

    add_version_args(parser)

    parser.add_argument('-i', '--input', required=True,
                        help='Binned read-count table (.tsv, optionally gzipped)')
    add_output_args(parser, help_text='Output prefix')
    parser.add_argument('--n-components', type=int, choices=[2, 3], default=3,
                        help='Univariate mixture components, 3 adds zero-inflation (default: 3)')
    parser.add_argument('--uncompressed', action='store_true',
                        help='Write plain .json instead of .json.gz')

    add_mode_args(parser)
    add_convergence_args(parser)
    add_parallel_args(parser)
    add_posterior_args(parser)
    add_cutoff_args(parser)
    add_verbose_args(parser)

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    n_cores = resolve_cores(args.cores)

    outdir = os.path.dirname(args.output)
    if outdir:
        os.makedirs(outdir, exist_ok=True)

    print(f"Reading counts from {args.input}")
    table = pd.read_csv(args.input, sep='\t')
    binned = BinnedCounts.from_frame(table)
    print(f"  {binned.n_bins:,} bins, {binned.n_samples} samples, "
          f"{len(binned.chromosome_slices())} chromosomes")

    try:
        result = call_peaks_by_mode(
            binned,
            mode=args.mode,
            differential_only=args.differential_only,
            common_only=args.common_only,
            force_equal=args.force_equal,
            max_states=args.max_states,
            select_states=args.select_states,
            n_components=args.n_components,
            tol=args.tol,
            n_iter=args.max_iter,
            max_time=args.max_time,
            per_chrom=args.per_chrom,
            n_workers=n_cores,
            keep_posteriors=args.keep_posteriors,
            verbose=args.verbose,
        )
    except StateSpaceTooLargeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    post_cutoff = parse_cutoff(args.post_cutoff)
    if post_cutoff is not None:
        try:
            result = apply_post_cutoff(result, post_cutoff)
        except PosteriorsNotKeptError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    max_post_cutoff = parse_cutoff(args.max_post_cutoff)
    if max_post_cutoff is not None:
        result = apply_max_post_cutoff(result, max_post_cutoff)

    suffix = '.json' if args.uncompressed else '.json.gz'
    model_path = save_result(result, args.output + suffix)
    print(f"Saved result to {model_path}")

    peaks = peaks_table(result)
    peaks_path = args.output + '_peaks.tsv'
    peaks.to_csv(peaks_path, sep='\t', index=False)
    print(f"Wrote {len(peaks):,} peaks to {peaks_path}")

    if result.diagnostics:
        print(f"\n{len(result.diagnostics)} advisories:")
        for advisory in result.diagnostics:
            print(f"  [{advisory.code}] {advisory.message}")


if __name__ == '__main__':
    main()
