"""
Signal Clustering Module

Converts pooled, base-pair-resolution signal into discrete regions:
1. Unidirectional clustering: same-strand positions within ``merge_dist``
   of each other are grouped into tag clusters (candidate TSSs)
2. Bidirectional clustering: windows with balanced divergent signal
   (minus strand upstream, plus strand downstream) are merged into
   candidate enhancers
3. Post-filtering: tag clusters overlapping a bidirectional cluster are
   removed

Each chromosome is scanned independently; chromosomes run in parallel.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..workers.executor import parallel_map
from .exceptions import ClusteringError, validate_numeric_param
from .genome import GenomeInfo
from .intervals import (
    CORE_COLUMNS,
    IntervalCollection,
    chromosome_ranks,
    exclude_overlapping,
    merge_intervals,
    region_ids,
    trim_intervals,
)
from .qc import QCReport
from .signal import ExpressionMatrix

logger = logging.getLogger(__name__)

TAG_CLUSTER_COLUMNS = ["cluster_id", "score", "peak", "n_positions"]
BIDIRECTIONAL_COLUMNS = ["cluster_id", "score", "plus_score", "minus_score", "balance", "peak"]


def balance_score(plus, minus) -> Union[float, np.ndarray]:
    """Ratio of minor to major strand signal, in [0, 1].

    1 means perfectly symmetric divergent signal; 0 if either side is empty.
    """
    plus = np.asarray(plus, dtype=np.float64)
    minus = np.asarray(minus, dtype=np.float64)
    major = np.maximum(plus, minus)
    minor = np.minimum(plus, minus)
    both = (plus > 0) & (minus > 0)
    score = np.where(both, minor / np.where(major > 0, major, 1.0), 0.0)
    if score.ndim == 0:
        return float(score)
    return score


def _pooled_signal(positions: ExpressionMatrix) -> pd.DataFrame:
    """Positions with positive pooled signal as chrom/pos/strand/pooled."""
    if positions.pooled is None:
        raise ClusteringError("Signal matrix has no pooled values; run calc_pooled() first")
    rows = positions.rows.df
    signal = pd.DataFrame(
        {
            "chrom": rows["chrom"].to_numpy(),
            "pos": rows["start"].to_numpy(np.int64),
            "strand": rows["strand"].to_numpy(),
            "pooled": positions.pooled.to_numpy(np.float64),
        }
    )
    if (rows["start"] != rows["end"]).any():
        raise ClusteringError("Clustering requires single base-pair signal positions")
    return signal[signal["pooled"] > 0]


def _window_sums(pos: np.ndarray, cumsum: np.ndarray, lo: np.ndarray, hi: np.ndarray) -> np.ndarray:
    """Sum of signal at sorted positions inside each closed window [lo, hi]."""
    i = np.searchsorted(pos, lo, side="left")
    j = np.searchsorted(pos, hi, side="right")
    return cumsum[j] - cumsum[i]


# ============================================================================
# Unidirectional clustering
# ============================================================================


def _cluster_strand(
    chrom: str,
    strand: str,
    pos: np.ndarray,
    values: np.ndarray,
    merge_dist: int,
    pooled_cutoff: float,
) -> List[dict]:
    """Group sorted same-strand positions into tag clusters."""
    if len(pos) == 0:
        return []

    breaks = np.flatnonzero(np.diff(pos) > merge_dist) + 1
    first = np.concatenate([[0], breaks])
    last = np.concatenate([breaks - 1, [len(pos) - 1]])
    scores = np.add.reduceat(values, first)

    clusters = []
    for f, l, score in zip(first, last, scores):
        if score < pooled_cutoff:
            continue
        peak = pos[f + int(np.argmax(values[f:l + 1]))]
        clusters.append(
            {
                "chrom": chrom,
                "start": int(pos[f]),
                "end": int(pos[l]),
                "strand": strand,
                "score": float(score),
                "peak": int(peak),
                "n_positions": int(l - f + 1),
            }
        )
    return clusters


def _unidirectional_chrom(args: Tuple[str, pd.DataFrame, int, float]) -> List[dict]:
    chrom, signal, merge_dist, pooled_cutoff = args
    clusters = []
    for strand in ("+", "-"):
        sub = signal[signal["strand"] == strand].sort_values("pos", kind="mergesort")
        clusters.extend(
            _cluster_strand(
                chrom,
                strand,
                sub["pos"].to_numpy(np.int64),
                sub["pooled"].to_numpy(np.float64),
                merge_dist,
                pooled_cutoff,
            )
        )
    return clusters


def _to_collection(records: List[dict], columns: List[str], genome: Optional[GenomeInfo], name: str) -> IntervalCollection:
    if not records:
        return IntervalCollection.empty(metadata_columns=columns, name=name)
    df = pd.DataFrame(records)
    df["_rank"] = chromosome_ranks(df["chrom"], genome)
    df = df.sort_values(["_rank", "start", "end", "strand"], kind="mergesort").drop(columns="_rank")
    return IntervalCollection(df[CORE_COLUMNS + columns], name=name)


def cluster_unidirectionally(
    positions: ExpressionMatrix,
    merge_dist: int = 20,
    pooled_cutoff: float = 3.0,
    genome: Optional[GenomeInfo] = None,
    max_workers: int = 1,
) -> IntervalCollection:
    """Cluster same-strand pooled signal into tag clusters.

    Positions are scanned in coordinate order per chromosome and strand; a
    position at most ``merge_dist`` bp after the previous one joins the
    growing cluster. A cluster is emitted only if its summed pooled signal
    is at least ``pooled_cutoff``.

    Returns:
        IntervalCollection with cluster_id, score, peak and n_positions
    """
    validate_numeric_param(merge_dist, "merge_dist", min_val=0)
    validate_numeric_param(pooled_cutoff, "pooled_cutoff", min_val=0)

    signal = _pooled_signal(positions)
    tasks = [(chrom, grp, merge_dist, pooled_cutoff) for chrom, grp in signal.groupby("chrom", sort=False)]
    per_chrom = parallel_map(_unidirectional_chrom, tasks, max_workers=max_workers, label="chromosome")

    records = [c for clusters in per_chrom for c in clusters]
    for rec in records:
        rec["cluster_id"] = f"{rec['chrom']}:{rec['start']}-{rec['end']};{rec['strand']}"

    clusters = _to_collection(records, TAG_CLUSTER_COLUMNS, genome, "tag_clusters")
    logger.info(f"Unidirectional clustering: {len(clusters)} tag clusters from {len(signal)} positions")
    return clusters


# ============================================================================
# Bidirectional clustering
# ============================================================================


def _bidirectional_chrom(args: Tuple[str, pd.DataFrame, int, float, Optional[int]]) -> List[dict]:
    chrom, signal, window, balance_threshold, chrom_length = args

    plus = signal[signal["strand"] == "+"].sort_values("pos", kind="mergesort")
    minus = signal[signal["strand"] == "-"].sort_values("pos", kind="mergesort")
    if plus.empty or minus.empty:
        return []

    plus_pos = plus["pos"].to_numpy(np.int64)
    minus_pos = minus["pos"].to_numpy(np.int64)
    plus_cum = np.concatenate([[0.0], np.cumsum(plus["pooled"].to_numpy(np.float64))])
    minus_cum = np.concatenate([[0.0], np.cumsum(minus["pooled"].to_numpy(np.float64))])

    # Divergent signal: minus strand upstream of the centre, plus strand downstream
    centres = np.unique(np.concatenate([plus_pos, minus_pos]))
    upstream = _window_sums(minus_pos, minus_cum, centres - window, centres)
    downstream = _window_sums(plus_pos, plus_cum, centres, centres + window)
    balance = balance_score(downstream, upstream)
    qualifies = (upstream > 0) & (downstream > 0) & (balance >= balance_threshold)
    if not qualifies.any():
        return []

    centres = centres[qualifies]
    centre_signal = (upstream + downstream)[qualifies]
    starts = np.maximum(centres - window, 1)
    ends = centres + window
    if chrom_length is not None:
        ends = np.minimum(ends, chrom_length)

    windows = IntervalCollection._from_validated(
        pd.DataFrame({"chrom": chrom, "start": starts, "end": ends, "strand": "*"})
    )
    spans = merge_intervals(windows).df
    span_starts = spans["start"].to_numpy(np.int64)
    span_ends = spans["end"].to_numpy(np.int64)

    plus_score = _window_sums(plus_pos, plus_cum, span_starts, span_ends)
    minus_score = _window_sums(minus_pos, minus_cum, span_starts, span_ends)
    span_balance = balance_score(plus_score, minus_score)

    owner = np.searchsorted(span_starts, centres, side="right") - 1

    clusters = []
    for k in range(len(spans)):
        members = np.flatnonzero(owner == k)
        peak = centres[members[int(np.argmax(centre_signal[members]))]]
        clusters.append(
            {
                "chrom": chrom,
                "start": int(span_starts[k]),
                "end": int(span_ends[k]),
                "strand": "*",
                "score": float(plus_score[k] + minus_score[k]),
                "plus_score": float(plus_score[k]),
                "minus_score": float(minus_score[k]),
                "balance": float(span_balance[k]),
                "peak": int(peak),
            }
        )
    return clusters


def cluster_bidirectionally(
    positions: ExpressionMatrix,
    window: int = 199,
    balance_threshold: float = 0.9,
    genome: Optional[GenomeInfo] = None,
    max_workers: int = 1,
    report: Optional[QCReport] = None,
) -> IntervalCollection:
    """Call bidirectional clusters (candidate enhancers) from pooled signal.

    Every observed position is a candidate centre. Minus-strand signal in
    ``[centre - window, centre]`` and plus-strand signal in
    ``[centre, centre + window]`` give a balance score; centres with both
    sides non-zero and balance >= ``balance_threshold`` contribute the span
    ``[centre - window, centre + window]``. Spans are coalesced with
    merge_intervals(), and strand sums and balance are recomputed over each
    merged span.

    Returns:
        Unstranded IntervalCollection with cluster_id, score, plus_score,
        minus_score, balance and peak
    """
    validate_numeric_param(window, "window", min_val=1)
    validate_numeric_param(balance_threshold, "balance_threshold", min_val=0, max_val=1)

    signal = _pooled_signal(positions)
    tasks = [
        (chrom, grp, window, balance_threshold, genome.length(chrom) if genome is not None else None)
        for chrom, grp in signal.groupby("chrom", sort=False)
    ]
    per_chrom = parallel_map(_bidirectional_chrom, tasks, max_workers=max_workers, label="chromosome")

    records = [c for clusters in per_chrom for c in clusters]
    clusters = _to_collection(records, BIDIRECTIONAL_COLUMNS[1:], genome, "bidirectional_clusters")
    if genome is not None:
        clusters = trim_intervals(clusters, genome, report=report, stage="bidirectional_trim")
    df = clusters.to_dataframe()
    df.insert(4, "cluster_id", region_ids(df["chrom"], df["start"], df["end"]))
    clusters = IntervalCollection._from_validated(df, name="bidirectional_clusters")

    logger.info(f"Bidirectional clustering: {len(clusters)} clusters (balance >= {balance_threshold})")
    return clusters


# ============================================================================
# Post-filtering
# ============================================================================


def remove_overlapping_clusters(
    unidirectional: IntervalCollection,
    bidirectional: IntervalCollection,
) -> IntervalCollection:
    """Drop tag clusters that overlap any retained bidirectional cluster."""
    kept = exclude_overlapping(unidirectional, bidirectional)
    logger.info(
        f"Removed {len(unidirectional) - len(kept)} tag clusters overlapping bidirectional clusters"
    )
    return kept


# ============================================================================
# Engine
# ============================================================================


@dataclass
class ClusterEngine:
    """Clustering parameters bound to one reference genome."""

    genome: GenomeInfo
    merge_dist: int = 20
    pooled_cutoff: float = 3.0
    window: int = 199
    balance_threshold: float = 0.9
    max_workers: int = 1

    @classmethod
    def from_settings(cls, genome: GenomeInfo, settings) -> "ClusterEngine":
        return cls(
            genome=genome,
            merge_dist=settings.merge_dist,
            pooled_cutoff=settings.pooled_cutoff,
            window=settings.bidirectional_window,
            balance_threshold=settings.balance_threshold,
            max_workers=settings.max_workers,
        )

    def unidirectional(self, positions: ExpressionMatrix, report: Optional[QCReport] = None) -> IntervalCollection:
        clusters = cluster_unidirectionally(
            positions,
            merge_dist=self.merge_dist,
            pooled_cutoff=self.pooled_cutoff,
            genome=self.genome,
            max_workers=self.max_workers,
        )
        return trim_intervals(clusters, self.genome, report=report, stage="unidirectional_trim")

    def bidirectional(self, positions: ExpressionMatrix, report: Optional[QCReport] = None) -> IntervalCollection:
        return cluster_bidirectionally(
            positions,
            window=self.window,
            balance_threshold=self.balance_threshold,
            genome=self.genome,
            max_workers=self.max_workers,
            report=report,
        )

    def remove_overlapping(
        self, unidirectional: IntervalCollection, bidirectional: IntervalCollection
    ) -> IntervalCollection:
        return remove_overlapping_clusters(unidirectional, bidirectional)
