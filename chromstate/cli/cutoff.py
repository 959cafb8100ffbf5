#!/usr/bin/env python3
"""
chromstate cutoff CLI entry point.
Re-derives peaks from a saved result with new posterior cutoffs, without refitting.
"""

import argparse
import sys

from chromstate.core.model_io import load_result, save_result
from chromstate.core.results import PosteriorsNotKeptError
from chromstate.inference.peaks import apply_max_post_cutoff, apply_post_cutoff, peaks_table
from chromstate.cli.common import (
    add_cutoff_args, add_output_args, add_version_args, parse_cutoff,
)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Re-derive peaks from a saved chromstate result',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Stricter per-bin cutoff for all samples
  chromstate-cutoff -m run.json.gz -o run_strict --post-cutoff 0.99

  # Keep peaks with a strong core, per sample
  chromstate-cutoff -m run.json.gz -o run_core \\
      --max-post-cutoff H3K27me3-SHR-rep1=0.999 H3K4me3-SHR-rep1=0.9
'''
    )

    add_version_args(parser)
    parser.add_argument('-m', '--model', required=True,
                        help='Saved result (.json or .json.gz)')
    add_output_args(parser, help_text='Output prefix')
    add_cutoff_args(parser)
    parser.add_argument('--save-result', action='store_true',
                        help='Also save the result with the new cutoffs')

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    print(f"Loading result from {args.model}")
    result = load_result(args.model)
    print(f"  {result.kind.value} result, {len(result.sample_ids)} samples")

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

    peaks = peaks_table(result)
    peaks_path = args.output + '_peaks.tsv'
    peaks.to_csv(peaks_path, sep='\t', index=False)
    print(f"Wrote {len(peaks):,} peaks to {peaks_path}")

    if args.save_result:
        model_path = save_result(result, args.output + '.json.gz')
        print(f"Saved result to {model_path}")


if __name__ == '__main__':
    main()
