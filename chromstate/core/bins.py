"""
Binned read-count container and sample metadata.

Binning itself happens upstream; this module only holds the aligned
per-sample counts and checks that they are usable as HMM sequences:
one contiguous, sorted, non-overlapping run of equal-width bins per
chromosome (the final bin of a chromosome may be shorter).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


class BinAlignmentError(ValueError):
    """Raised when per-sample bins do not describe the same genome partition."""


def chromosome_runs(chrom: np.ndarray) -> List[Tuple[str, int, int]]:
    """(chrom, first_row, end_row) for each run of equal chromosome names."""
    chrom = np.asarray(chrom)
    if len(chrom) == 0:
        return []
    change = np.flatnonzero(chrom[1:] != chrom[:-1]) + 1
    bounds = np.concatenate([[0], change, [len(chrom)]])
    return [(str(chrom[lo]), int(lo), int(hi))
            for lo, hi in zip(bounds[:-1], bounds[1:])]


@dataclass
class SampleInfo:
    """One ChIP-seq sample (mark, condition, replicate)."""
    mark: str
    condition: str
    replicate: int
    paired_end: bool = False
    chip_file: Optional[str] = None
    control_file: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.mark}-{self.condition}-rep{self.replicate}"

    def to_dict(self) -> dict:
        return {
            'mark': self.mark,
            'condition': self.condition,
            'replicate': self.replicate,
            'paired_end': self.paired_end,
            'chip_file': self.chip_file,
            'control_file': self.control_file,
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'SampleInfo':
        return cls(
            mark=d['mark'],
            condition=d['condition'],
            replicate=int(d['replicate']),
            paired_end=bool(d.get('paired_end', False)),
            chip_file=d.get('chip_file'),
            control_file=d.get('control_file'),
        )

    @classmethod
    def from_id(cls, sample_id: str) -> 'SampleInfo':
        """
        Parse a '<mark>-<condition>-rep<N>' identifier.

        Marks may contain dashes; the condition and replicate are taken
        from the last two fields.
        """
        parts = sample_id.split('-')
        if len(parts) < 3 or not parts[-1].startswith('rep'):
            raise ValueError(
                f"Cannot parse sample ID '{sample_id}', expected <mark>-<condition>-rep<N>"
            )
        try:
            replicate = int(parts[-1][3:])
        except ValueError:
            raise ValueError(f"Invalid replicate number in sample ID '{sample_id}'")
        return cls(mark='-'.join(parts[:-2]), condition=parts[-2], replicate=replicate)


@dataclass
class BinnedCounts:
    """
    Read counts for a set of samples over one shared set of genomic bins.

    Attributes:
        chrom: Chromosome name per bin, shape (n_bins,)
        start: Bin start coordinate, shape (n_bins,)
        end: Bin end coordinate, shape (n_bins,)
        counts: Integer read counts, shape (n_bins, n_samples)
        samples: Sample metadata, one per counts column
    """
    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray
    counts: np.ndarray
    samples: List[SampleInfo] = field(default_factory=list)

    def __post_init__(self):
        self.chrom = np.asarray(self.chrom).astype(str)
        self.start = np.asarray(self.start, dtype=np.int64)
        self.end = np.asarray(self.end, dtype=np.int64)
        counts = np.asarray(self.counts)
        if counts.ndim == 1:
            counts = counts.reshape(-1, 1)
        self.counts = counts.astype(np.int64)
        self.validate()

    @property
    def n_bins(self) -> int:
        return len(self.chrom)

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def sample_ids(self) -> List[str]:
        return [s.id for s in self.samples]

    def validate(self) -> None:
        """Check shapes, counts and per-chromosome bin layout."""
        n = len(self.chrom)
        if n == 0:
            raise BinAlignmentError("No bins given")
        if len(self.start) != n or len(self.end) != n or self.counts.shape[0] != n:
            raise BinAlignmentError(
                f"Coordinate and count lengths differ: chrom={n}, start={len(self.start)}, "
                f"end={len(self.end)}, counts={self.counts.shape[0]}"
            )
        if len(self.samples) != self.counts.shape[1]:
            raise BinAlignmentError(
                f"{len(self.samples)} samples given for {self.counts.shape[1]} count columns"
            )
        ids = self.sample_ids
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate sample IDs: {ids}")
        if np.any(self.counts < 0):
            raise ValueError("Read counts must be non-negative")
        if np.any(self.end <= self.start):
            raise BinAlignmentError("Every bin must have end > start")

        seen = set()
        for chrom, lo, hi in self.chromosome_slices():
            if chrom in seen:
                raise BinAlignmentError(
                    f"Bins of chromosome {chrom} are not a single contiguous block"
                )
            seen.add(chrom)
            starts = self.start[lo:hi]
            ends = self.end[lo:hi]
            if hi - lo > 1:
                if np.any(starts[1:] < ends[:-1]):
                    raise BinAlignmentError(
                        f"Bins on {chrom} are unsorted or overlapping"
                    )
                if np.any(starts[1:] != ends[:-1]):
                    raise BinAlignmentError(f"Bins on {chrom} leave gaps")
                widths = ends[:-1] - starts[:-1]
                if np.any(widths != widths[0]) or (ends[-1] - starts[-1]) > widths[0]:
                    raise BinAlignmentError(f"Bins on {chrom} do not share one width")

    def chromosome_slices(self) -> List[Tuple[str, int, int]]:
        """Return (chrom, first_row, end_row) for each run of equal chromosome names."""
        return chromosome_runs(self.chrom)

    def column(self, sample_id: str) -> np.ndarray:
        return self.counts[:, self._index(sample_id)]

    def subset(self, sample_ids: Sequence[str]) -> 'BinnedCounts':
        """New container restricted to the given samples (in the given order)."""
        idx = [self._index(s) for s in sample_ids]
        return BinnedCounts(
            chrom=self.chrom, start=self.start, end=self.end,
            counts=self.counts[:, idx],
            samples=[self.samples[i] for i in idx],
        )

    def _index(self, sample_id: str) -> int:
        try:
            return self.sample_ids.index(sample_id)
        except ValueError:
            raise KeyError(f"Unknown sample: {sample_id}")

    def to_frame(self) -> pd.DataFrame:
        """Wide table: chrom, start, end and one count column per sample."""
        df = pd.DataFrame({'chrom': self.chrom, 'start': self.start, 'end': self.end})
        for i, sid in enumerate(self.sample_ids):
            df[sid] = self.counts[:, i]
        return df

    @classmethod
    def from_frame(cls, df: pd.DataFrame,
                   samples: Optional[List[SampleInfo]] = None) -> 'BinnedCounts':
        """
        Build from a wide table with columns chrom, start, end, <sample>...

        If samples is None, column names are parsed as sample IDs.
        """
        for col in ('chrom', 'start', 'end'):
            if col not in df.columns:
                raise BinAlignmentError(f"Missing column '{col}'")
        count_cols = [c for c in df.columns if c not in ('chrom', 'start', 'end')]
        if samples is None:
            samples = [SampleInfo.from_id(str(c)) for c in count_cols]
        return cls(
            chrom=df['chrom'].to_numpy(),
            start=df['start'].to_numpy(),
            end=df['end'].to_numpy(),
            counts=df[count_cols].to_numpy(),
            samples=list(samples),
        )

    @classmethod
    def from_tracks(cls, tracks: Dict[str, pd.DataFrame],
                    samples: Optional[List[SampleInfo]] = None) -> 'BinnedCounts':
        """
        Align per-sample tables (chrom, start, end, counts) into one container.

        All tables must cover the same chromosomes with identical bin
        coordinates in the same order.

        Args:
            tracks: Sample ID -> per-sample bin table
            samples: Metadata in the same order as tracks (parsed from the
                keys if omitted)
        """
        if not tracks:
            raise BinAlignmentError("No sample tracks given")
        ids = list(tracks.keys())
        if samples is None:
            samples = [SampleInfo.from_id(sid) for sid in ids]
        if len(samples) != len(ids):
            raise BinAlignmentError("Number of samples does not match number of tracks")

        ref_id = ids[0]
        ref = tracks[ref_id]
        ref_chroms = set(ref['chrom'].astype(str))
        columns = []
        for sid in ids:
            track = tracks[sid]
            chroms = set(track['chrom'].astype(str))
            if chroms != ref_chroms:
                missing = sorted(ref_chroms ^ chroms)
                raise BinAlignmentError(
                    f"Chromosome sets of {sid} and {ref_id} differ: {missing}"
                )
            if len(track) != len(ref):
                raise BinAlignmentError(
                    f"{sid} has {len(track)} bins but {ref_id} has {len(ref)}"
                )
            same = (
                np.array_equal(track['chrom'].astype(str).to_numpy(),
                               ref['chrom'].astype(str).to_numpy())
                and np.array_equal(track['start'].to_numpy(), ref['start'].to_numpy())
                and np.array_equal(track['end'].to_numpy(), ref['end'].to_numpy())
            )
            if not same:
                raise BinAlignmentError(f"Bin coordinates of {sid} and {ref_id} differ")
            columns.append(track['counts'].to_numpy())

        return cls(
            chrom=ref['chrom'].to_numpy(),
            start=ref['start'].to_numpy(),
            end=ref['end'].to_numpy(),
            counts=np.column_stack(columns),
            samples=list(samples),
        )
