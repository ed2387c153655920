"""
Genomic interval primitives for EnhancerLink.

Provides the interval types used throughout the package and the three
operations everything else is built on:
- overlap detection between two collections (NCLS index, all pairs)
- merging ("reduce") of overlapping/abutting intervals
- trimming to chromosome bounds

Coordinates are 1-based and inclusive on both ends. NCLS works on half-open
intervals, so ends are shifted by one when an index is built or queried.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from ncls import NCLS

from .exceptions import (
    MalformedIntervalError,
    ValidationError,
    validate_dataframe,
)
from .genome import GenomeInfo
from .qc import QCReport

logger = logging.getLogger(__name__)

STRANDS = ("+", "-", "*")
CORE_COLUMNS = ["chrom", "start", "end", "strand"]
OVERLAP_COLUMNS = ["query_idx", "subject_idx", "overlap_bp"]


def _normalize_strand(strand) -> str:
    if strand is None or strand == ".":
        return "*"
    return str(strand)


# ============================================================================
# Interval types
# ============================================================================


@dataclass(frozen=True)
class GenomicInterval:
    """A single closed interval on one chromosome strand."""

    chrom: str
    start: int
    end: int
    strand: str = "*"

    def __post_init__(self):
        object.__setattr__(self, "strand", _normalize_strand(self.strand))
        if self.strand not in STRANDS:
            raise ValidationError(f"Invalid strand {self.strand!r}; expected one of {STRANDS}")
        if self.start > self.end:
            raise MalformedIntervalError(self.chrom, self.start, self.end)

    @property
    def width(self) -> int:
        return self.end - self.start + 1

    @property
    def midpoint(self) -> int:
        return (self.start + self.end) // 2

    def overlaps(self, other: "GenomicInterval") -> bool:
        """True if both intervals share at least one base on a compatible strand."""
        if self.chrom != other.chrom:
            return False
        if "*" not in (self.strand, other.strand) and self.strand != other.strand:
            return False
        return max(self.start, other.start) <= min(self.end, other.end)

    def __str__(self) -> str:
        return f"{self.chrom}:{self.start}-{self.end}:{self.strand}"


class IntervalCollection:
    """
    Ordered intervals plus parallel metadata columns.

    Backed by a DataFrame with columns chrom, start, end, strand followed by
    any metadata. Rows are positionally indexed (0..n-1) and every operation
    returns a new collection, carrying metadata along with its interval.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        genome: Optional[GenomeInfo] = None,
        name: str = "intervals",
    ):
        """
        Validate and wrap interval data.

        Args:
            data: DataFrame with chrom, start, end and optionally strand columns
            genome: If given, every chromosome must be in the genome table
            name: Label used in error messages

        Raises:
            MissingColumnError: chrom/start/end absent
            MalformedIntervalError: a row has start > end
            UnknownChromosomeError: a chromosome is absent from ``genome``
        """
        validate_dataframe(data, name, required_columns=["chrom", "start", "end"])
        df = data.copy().reset_index(drop=True)

        if "strand" not in df.columns:
            df["strand"] = "*"
        df["strand"] = df["strand"].map(_normalize_strand)
        bad_strand = ~df["strand"].isin(STRANDS)
        if bad_strand.any():
            raise ValidationError(
                f"Invalid strand {df.loc[bad_strand, 'strand'].iloc[0]!r} in {name}; "
                f"expected one of {STRANDS}"
            )

        df["chrom"] = df["chrom"].astype(str)
        for col in ("start", "end"):
            try:
                numeric = pd.to_numeric(df[col])
                coords = numeric.astype(np.int64)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Non-integer {col} coordinate in {name}: {e}") from e
            fractional = (numeric != coords).to_numpy()
            if fractional.any():
                raise ValidationError(
                    f"Non-integer {col} coordinate in {name}: {numeric[fractional].iloc[0]!r}"
                )
            df[col] = coords

        malformed = df["start"] > df["end"]
        if malformed.any():
            row = df[malformed].iloc[0]
            raise MalformedIntervalError(row["chrom"], int(row["start"]), int(row["end"]))

        if genome is not None:
            genome.validate_chromosomes(df["chrom"])

        meta = [c for c in df.columns if c not in CORE_COLUMNS]
        self._df = df[CORE_COLUMNS + meta]
        self.name = name

    @classmethod
    def _from_validated(cls, df: pd.DataFrame, name: str = "intervals") -> "IntervalCollection":
        obj = cls.__new__(cls)
        obj._df = df.reset_index(drop=True)
        obj.name = name
        return obj

    @classmethod
    def from_intervals(
        cls,
        intervals: Iterable[GenomicInterval],
        genome: Optional[GenomeInfo] = None,
        name: str = "intervals",
        **metadata: Sequence,
    ) -> "IntervalCollection":
        """Build from GenomicInterval objects and keyword metadata columns."""
        intervals = list(intervals)
        df = pd.DataFrame(
            {
                "chrom": [iv.chrom for iv in intervals],
                "start": [iv.start for iv in intervals],
                "end": [iv.end for iv in intervals],
                "strand": [iv.strand for iv in intervals],
            }
        )
        for key, values in metadata.items():
            values = list(values)
            if len(values) != len(intervals):
                raise ValidationError(
                    f"Metadata column '{key}' has {len(values)} values for {len(intervals)} intervals"
                )
            df[key] = values
        return cls(df, genome=genome, name=name)

    @classmethod
    def empty(cls, metadata_columns: Sequence[str] = (), name: str = "intervals") -> "IntervalCollection":
        df = pd.DataFrame(
            {
                "chrom": pd.Series(dtype=object),
                "start": pd.Series(dtype=np.int64),
                "end": pd.Series(dtype=np.int64),
                "strand": pd.Series(dtype=object),
            }
        )
        for col in metadata_columns:
            df[col] = pd.Series(dtype=object)
        return cls._from_validated(df, name=name)

    # -- accessors ---------------------------------------------------------

    @property
    def df(self) -> pd.DataFrame:
        """Underlying frame. Treat as read-only; use with_columns() to add data."""
        return self._df

    @property
    def columns(self) -> List[str]:
        return list(self._df.columns)

    @property
    def metadata_columns(self) -> List[str]:
        return [c for c in self._df.columns if c not in CORE_COLUMNS]

    def __len__(self) -> int:
        return len(self._df)

    def __getitem__(self, column: str) -> pd.Series:
        return self._df[column]

    def __iter__(self) -> Iterator[GenomicInterval]:
        return self.intervals()

    def __eq__(self, other) -> bool:
        if not isinstance(other, IntervalCollection):
            return NotImplemented
        return self._df.equals(other._df)

    def __repr__(self) -> str:
        return f"IntervalCollection(name={self.name!r}, n={len(self)}, metadata={self.metadata_columns})"

    def intervals(self) -> Iterator[GenomicInterval]:
        for chrom, start, end, strand in self._df[CORE_COLUMNS].itertuples(index=False):
            yield GenomicInterval(chrom, int(start), int(end), strand)

    def midpoints(self) -> np.ndarray:
        return ((self._df["start"].to_numpy() + self._df["end"].to_numpy()) // 2).astype(np.int64)

    def widths(self) -> np.ndarray:
        return (self._df["end"].to_numpy() - self._df["start"].to_numpy() + 1).astype(np.int64)

    def to_dataframe(self) -> pd.DataFrame:
        return self._df.copy()

    # -- derived collections -----------------------------------------------

    def subset(self, rows) -> "IntervalCollection":
        """Select rows by boolean mask or positional indices."""
        rows = np.asarray(rows)
        if rows.dtype == bool:
            df = self._df[rows]
        else:
            df = self._df.iloc[rows.astype(np.int64)]
        return self._from_validated(df, name=self.name)

    def with_columns(self, **columns) -> "IntervalCollection":
        """Return a copy with metadata columns added or replaced."""
        df = self._df.copy()
        for key, values in columns.items():
            if key in ("chrom", "start", "end", "strand"):
                raise ValidationError(f"Cannot overwrite core column '{key}' with with_columns()")
            values = values.to_numpy() if isinstance(values, pd.Series) else np.asarray(values)
            # Object columns stay object so missing values remain None
            df[key] = pd.Series(values, index=df.index, dtype=object) if values.dtype == object else values
        return self._from_validated(df, name=self.name)

    def sort(self, genome: Optional[GenomeInfo] = None) -> "IntervalCollection":
        """Sort by chromosome, start, end and strand, carrying metadata along."""
        if len(self) == 0:
            return self
        df = self._df.copy()
        df["_rank"] = chromosome_ranks(df["chrom"], genome)
        df = df.sort_values(["_rank", "start", "end", "strand"], kind="mergesort")
        return self._from_validated(df.drop(columns="_rank"), name=self.name)


# ============================================================================
# Chromosome utilities
# ============================================================================

_CHROM_ORDER = {f"chr{i}": i for i in range(1, 23)}
_CHROM_ORDER.update({"chrX": 23, "chrY": 24, "chrM": 25, "chrMT": 25})


def sort_chromosomes(chroms: Iterable[str], genome: Optional[GenomeInfo] = None) -> List[str]:
    """Sort chromosome names in genome-table order, or naturally (1,2,...,22,X,Y,M)."""
    if genome is not None:
        return sorted(chroms, key=lambda c: (genome.sort_key(c), c))

    def _sort_key(c: str) -> Tuple[int, str]:
        c_stripped = c.replace("chr", "") if c.startswith("chr") else c
        if c in _CHROM_ORDER:
            return (_CHROM_ORDER[c], c)
        try:
            return (int(c_stripped), c)
        except ValueError:
            return (100, c)

    return sorted(chroms, key=_sort_key)


def chromosome_ranks(chroms: pd.Series, genome: Optional[GenomeInfo] = None) -> np.ndarray:
    """Integer sort rank per row, consistent with sort_chromosomes()."""
    order = sort_chromosomes(pd.unique(chroms), genome)
    rank = {c: i for i, c in enumerate(order)}
    return chroms.map(rank).to_numpy(dtype=np.int64)


# ============================================================================
# Core overlap functions
# ============================================================================


def _build_ncls_index(starts: np.ndarray, ends: np.ndarray, ids: np.ndarray) -> NCLS:
    """Build an NCLS index over closed intervals."""
    return NCLS(
        np.ascontiguousarray(starts, dtype=np.int64),
        np.ascontiguousarray(ends + 1, dtype=np.int64),
        np.ascontiguousarray(ids, dtype=np.int64),
    )


def _empty_overlaps() -> pd.DataFrame:
    return pd.DataFrame({col: pd.Series(dtype=np.int64) for col in OVERLAP_COLUMNS})


def find_overlaps(
    query: IntervalCollection,
    subject: IntervalCollection,
    ignore_strand: bool = False,
) -> pd.DataFrame:
    """Find every overlapping pair between two interval collections.

    Intervals overlap when they share at least one base on the same
    chromosome. Strand must agree only when both intervals are stranded.
    A per-chromosome NCLS index over ``subject`` keeps this at
    O((n + m) log m + k) rather than O(n*m).

    Parameters
    ----------
    query, subject : IntervalCollection
    ignore_strand : bool
        Treat every interval as unstranded.

    Returns
    -------
    pd.DataFrame
        Columns [query_idx, subject_idx, overlap_bp], one row per pair,
        sorted by (query_idx, subject_idx). Empty when nothing overlaps.
    """
    if len(query) == 0 or len(subject) == 0:
        return _empty_overlaps()

    q = query.df
    s = subject.df
    q_starts, q_ends = q["start"].to_numpy(np.int64), q["end"].to_numpy(np.int64)
    s_starts, s_ends = s["start"].to_numpy(np.int64), s["end"].to_numpy(np.int64)

    subject_groups = s.groupby("chrom", sort=False).indices

    q_hits: List[np.ndarray] = []
    s_hits: List[np.ndarray] = []
    for chrom, q_idx in q.groupby("chrom", sort=False).indices.items():
        s_idx = subject_groups.get(chrom)
        if s_idx is None:
            continue
        index = _build_ncls_index(s_starts[s_idx], s_ends[s_idx], s_idx)
        qi, si = index.all_overlaps_both(
            np.ascontiguousarray(q_starts[q_idx], dtype=np.int64),
            np.ascontiguousarray(q_ends[q_idx] + 1, dtype=np.int64),
            np.ascontiguousarray(q_idx, dtype=np.int64),
        )
        q_hits.append(np.asarray(qi, dtype=np.int64))
        s_hits.append(np.asarray(si, dtype=np.int64))

    if not q_hits:
        return _empty_overlaps()

    qi = np.concatenate(q_hits)
    si = np.concatenate(s_hits)

    if not ignore_strand:
        q_strand = q["strand"].to_numpy()[qi]
        s_strand = s["strand"].to_numpy()[si]
        keep = (q_strand == "*") | (s_strand == "*") | (q_strand == s_strand)
        qi, si = qi[keep], si[keep]

    overlap_bp = np.minimum(q_ends[qi], s_ends[si]) - np.maximum(q_starts[qi], s_starts[si]) + 1
    order = np.lexsort((si, qi))
    return pd.DataFrame(
        {
            "query_idx": qi[order],
            "subject_idx": si[order],
            "overlap_bp": overlap_bp[order].astype(np.int64),
        }
    )


# ============================================================================
# Convenience wrappers
# ============================================================================


def count_overlaps(
    query: IntervalCollection,
    subject: IntervalCollection,
    ignore_strand: bool = False,
) -> np.ndarray:
    """Number of subject intervals overlapping each query interval."""
    hits = find_overlaps(query, subject, ignore_strand=ignore_strand)
    return np.bincount(hits["query_idx"].to_numpy(np.int64), minlength=len(query)).astype(np.int64)


def overlapping_mask(
    query: IntervalCollection,
    subject: IntervalCollection,
    ignore_strand: bool = False,
) -> np.ndarray:
    """Boolean mask of query intervals overlapping at least one subject interval."""
    return count_overlaps(query, subject, ignore_strand=ignore_strand) > 0


def exclude_overlapping(
    intervals: IntervalCollection,
    exclusion_regions: IntervalCollection,
    ignore_strand: bool = False,
) -> IntervalCollection:
    """Remove intervals that overlap any exclusion region."""
    mask = overlapping_mask(intervals, exclusion_regions, ignore_strand=ignore_strand)
    return intervals.subset(~mask)


# ============================================================================
# Merge and trim
# ============================================================================


def region_ids(chroms, starts, ends) -> List[str]:
    return [f"{c}:{s}-{e}" for c, s, e in zip(chroms, starts, ends)]


def merge_intervals(
    intervals: IntervalCollection,
    genome: Optional[GenomeInfo] = None,
) -> IntervalCollection:
    """Coalesce overlapping or abutting intervals ("reduce").

    Per chromosome, intervals are sorted by start and merged whenever the gap
    to the running region is zero (``start <= current_end + 1``). Strand is
    dropped; every merged region is unstranded. The result carries a
    ``region_id`` column (``chrom:start-end``) and is sorted by chromosome
    and start, so merging twice gives the same collection as merging once.
    """
    if len(intervals) == 0:
        return IntervalCollection.empty(metadata_columns=["region_id"], name="merged")

    df = intervals.df[["chrom", "start", "end"]].copy()
    df["_rank"] = chromosome_ranks(df["chrom"], genome)
    df = df.sort_values(["_rank", "start", "end"], kind="mergesort").reset_index(drop=True)

    running_end = df.groupby("_rank", sort=False)["end"].cummax()
    prev_end = running_end.groupby(df["_rank"], sort=False).shift(1)
    new_chrom = df["_rank"].ne(df["_rank"].shift(1))
    breaks = new_chrom | (df["start"] > prev_end + 1)
    group = breaks.cumsum()

    merged = (
        df.groupby(group, sort=False)
        .agg(chrom=("chrom", "first"), start=("start", "min"), end=("end", "max"))
        .reset_index(drop=True)
    )
    merged["strand"] = "*"
    merged["region_id"] = region_ids(merged["chrom"], merged["start"], merged["end"])

    logger.debug(f"Merged {len(intervals)} intervals into {len(merged)} regions")
    return IntervalCollection._from_validated(merged[CORE_COLUMNS + ["region_id"]], name="merged")


def trim_intervals(
    intervals: IntervalCollection,
    genome: GenomeInfo,
    report: Optional[QCReport] = None,
    stage: str = "trim",
) -> IntervalCollection:
    """Clip intervals to [1, chromosome length].

    Intervals lying entirely outside their chromosome, and intervals on
    chromosomes absent from ``genome``, are dropped. Clipped and dropped
    counts are logged and, when ``report`` is given, recorded under ``stage``.
    """
    n = len(intervals)
    if n == 0:
        if report is not None:
            report.record(stage, 0, 0)
        return intervals

    df = intervals.df
    known = df["chrom"].isin(genome.chromosomes).to_numpy()
    lengths = df["chrom"].map(genome.lengths()).fillna(0).to_numpy(np.int64)
    starts = df["start"].to_numpy(np.int64)
    ends = df["end"].to_numpy(np.int64)

    outside = known & ((ends < 1) | (starts > lengths))
    keep = known & ~outside

    new_starts = np.maximum(starts, 1)
    new_ends = np.minimum(ends, lengths)
    clipped = keep & ((new_starts != starts) | (new_ends != ends))

    n_unknown = int((~known).sum())
    n_outside = int(outside.sum())
    if n_unknown:
        logger.warning(f"{stage}: dropped {n_unknown} intervals on chromosomes absent from the genome")

    out = df.copy()
    out["start"] = new_starts
    out["end"] = new_ends
    out = out[keep]

    if report is not None:
        warning = f"{n_unknown} on unknown chromosomes" if n_unknown else None
        report.record(
            stage,
            input_records=n,
            kept=int(keep.sum()),
            clipped=int(clipped.sum()),
            dropped=n_unknown + n_outside,
            warning=warning,
        )
    elif n_outside or clipped.any():
        logger.info(f"{stage}: clipped {int(clipped.sum())}, dropped {n_outside} out-of-bounds intervals")

    return IntervalCollection._from_validated(out, name=intervals.name)
