"""
Transcript-Type Annotation Module

Classifies called regions against a transcript model using the overlap
engine:
- promoter (TSS +/- tss_window), 5'UTR, 3'UTR, exon, intron, intergenic
- whole-region and peak-position labels as two independent fields
- removal of candidate enhancers overlapping promoter/UTR/exon features

When a region overlaps several feature types the label is chosen by a
fixed priority, never by the order of records in the transcript model.
"""

import logging
from typing import Dict, Iterable, Sequence

import numpy as np
import pandas as pd

from .exceptions import (
    AnnotationError,
    MalformedIntervalError,
    TranscriptModelError,
    ValidationError,
    validate_dataframe,
    validate_numeric_param,
)
from .genome import GenomeInfo
from .intervals import IntervalCollection, find_overlaps, overlapping_mask, trim_intervals

logger = logging.getLogger(__name__)

FEATURE_TYPES = ("transcript", "exon", "fiveUTR", "threeUTR")

# GTF/GFF spellings accepted for the model's feature types
FEATURE_ALIASES = {
    "mRNA": "transcript",
    "5UTR": "fiveUTR",
    "five_prime_utr": "fiveUTR",
    "five_prime_UTR": "fiveUTR",
    "3UTR": "threeUTR",
    "three_prime_utr": "threeUTR",
    "three_prime_UTR": "threeUTR",
}

# Present in annotation files but not used for classification
IGNORED_FEATURES = {"gene", "CDS", "start_codon", "stop_codon", "UTR", "Selenocysteine"}

# Highest priority first
TX_TYPE_PRIORITY = ("promoter", "fiveUTR", "threeUTR", "exon", "intron", "intergenic")

# Candidate enhancers overlapping these are most likely canonical promoters
ENHANCER_EXCLUDED_TYPES = ("promoter", "fiveUTR", "threeUTR", "exon")

MODEL_COLUMNS = ["chrom", "start", "end", "strand", "feature_type", "transcript_id"]


class TranscriptModel:
    """
    Transcript structures used for annotation.

    Holds transcript, exon and UTR records as one IntervalCollection with
    ``feature_type`` and ``transcript_id`` columns. Built once and shared
    read-only between annotation calls.
    """

    def __init__(self, features: IntervalCollection, genome: GenomeInfo):
        self.features_all = features
        self.genome = genome
        self._by_type: Dict[str, IntervalCollection] = {
            ftype: features.subset((features["feature_type"] == ftype).to_numpy())
            for ftype in FEATURE_TYPES
        }
        tx = self._by_type["transcript"].df
        gene_col = "gene_id" if "gene_id" in tx.columns else "transcript_id"
        self.gene_by_transcript: Dict[str, str] = dict(zip(tx["transcript_id"], tx[gene_col]))
        self.tss_by_transcript: Dict[str, int] = dict(zip(tx["transcript_id"], self.tss()))
        logger.info(
            f"Transcript model: {len(self._by_type['transcript'])} transcripts, "
            f"{len(self._by_type['exon'])} exons"
        )

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, genome: GenomeInfo) -> "TranscriptModel":
        """
        Validate transcript records and build the model.

        Args:
            df: DataFrame with chrom, start, end, strand, feature_type, transcript_id
                and optionally gene_id
            genome: Reference genome every chromosome must belong to

        Raises:
            TranscriptModelError: unknown feature types, malformed or unstranded transcripts
            UnknownChromosomeError: chromosome absent from the genome
        """
        try:
            validate_dataframe(df, "transcript model", required_columns=MODEL_COLUMNS)
        except ValidationError as e:
            raise TranscriptModelError(str(e)) from e

        df = df[MODEL_COLUMNS + (["gene_id"] if "gene_id" in df.columns else [])].reset_index(drop=True)
        df["feature_type"] = df["feature_type"].replace(FEATURE_ALIASES)
        ignored = df["feature_type"].isin(IGNORED_FEATURES)
        if ignored.any():
            logger.debug(f"Ignoring {int(ignored.sum())} records of unused feature types")
            df = df[~ignored]

        unknown = ~df["feature_type"].isin(FEATURE_TYPES)
        if unknown.any():
            raise TranscriptModelError(
                f"Unknown feature types in transcript model: {sorted(df.loc[unknown, 'feature_type'].unique())}"
            )

        try:
            features = IntervalCollection(df, genome=genome, name="transcript model")
        except MalformedIntervalError as e:
            raise TranscriptModelError(f"Malformed transcript model record: {e}") from e

        unstranded = (features["feature_type"] == "transcript") & (features["strand"] == "*")
        if unstranded.any():
            tx = features["transcript_id"][unstranded].iloc[0]
            raise TranscriptModelError(f"Transcript {tx} has no strand; its TSS is undefined")

        return cls(features, genome)

    def features(self, feature_type: str) -> IntervalCollection:
        if feature_type not in self._by_type:
            raise TranscriptModelError(f"Unknown feature type: {feature_type}")
        return self._by_type[feature_type]

    @property
    def transcripts(self) -> IntervalCollection:
        return self._by_type["transcript"]

    def tss(self) -> np.ndarray:
        """Transcription start site of every transcript (strand-aware)."""
        tx = self.transcripts.df
        return np.where(tx["strand"] == "+", tx["start"], tx["end"]).astype(np.int64)

    def promoters(self, tss_window: int = 100) -> IntervalCollection:
        """TSS +/- tss_window for every transcript, trimmed to the genome."""
        validate_numeric_param(tss_window, "tss_window", min_val=0)
        tx = self.transcripts.df
        tss = self.tss()
        promoters = IntervalCollection._from_validated(
            pd.DataFrame(
                {
                    "chrom": tx["chrom"].to_numpy(),
                    "start": tss - tss_window,
                    "end": tss + tss_window,
                    "strand": tx["strand"].to_numpy(),
                    "transcript_id": tx["transcript_id"].to_numpy(),
                }
            ),
            name="promoters",
        )
        return trim_intervals(promoters, self.genome, stage="promoter_trim")


class AnnotationOverlay:
    """
    Assign transcript types to regions.

    Labels follow TX_TYPE_PRIORITY: a region overlapping a promoter and an
    exon is a promoter; a region inside a transcript body touching no
    promoter, UTR or exon is intronic; anything else is intergenic.
    """

    def __init__(
        self,
        model: TranscriptModel,
        tss_window: int = 100,
        priority: Sequence[str] = TX_TYPE_PRIORITY,
    ):
        if list(priority)[-1] != "intergenic" or set(priority) != set(TX_TYPE_PRIORITY):
            raise AnnotationError(f"Priority must order {TX_TYPE_PRIORITY} and end with 'intergenic'")
        self.model = model
        self.tss_window = tss_window
        self.priority = tuple(priority)
        self._layers: Dict[str, IntervalCollection] = {
            "promoter": model.promoters(tss_window),
            "fiveUTR": model.features("fiveUTR"),
            "threeUTR": model.features("threeUTR"),
            "exon": model.features("exon"),
            "intron": model.transcripts,
        }

    @classmethod
    def from_settings(cls, model: TranscriptModel, settings) -> "AnnotationOverlay":
        return cls(model, tss_window=settings.tss_window)

    def _peak_positions(self, regions: IntervalCollection) -> IntervalCollection:
        if "peak" not in regions.columns:
            raise AnnotationError("Regions have no 'peak' column for peak-level annotation")
        df = regions.df[["chrom", "strand"]].copy()
        df["start"] = regions["peak"].to_numpy(np.int64)
        df["end"] = df["start"]
        return IntervalCollection._from_validated(df[["chrom", "start", "end", "strand"]], name="peaks")

    def overlaps_by_type(self, regions: IntervalCollection) -> pd.DataFrame:
        """Boolean overlap table, one column per feature layer."""
        return pd.DataFrame(
            {label: overlapping_mask(regions, layer) for label, layer in self._layers.items()}
        )

    def classify(self, regions: IntervalCollection, use_peak: bool = False) -> pd.Series:
        """
        Label each region with its highest-priority overlapping feature type.

        Args:
            regions: Regions to classify
            use_peak: Classify the single ``peak`` position instead of the whole region

        Returns:
            Series of labels aligned with the regions
        """
        query = self._peak_positions(regions) if use_peak else regions
        labels = np.full(len(query), "intergenic", dtype=object)
        assigned = np.zeros(len(query), dtype=bool)

        for label in self.priority[:-1]:
            hit = overlapping_mask(query, self._layers[label]) & ~assigned
            labels[hit] = label
            assigned |= hit

        return pd.Series(labels, name="peak_tx_type" if use_peak else "tx_type")

    def annotate(self, regions: IntervalCollection) -> IntervalCollection:
        """Add ``tx_type`` (whole region) and, when a peak is known, ``peak_tx_type``."""
        columns = {"tx_type": self.classify(regions).to_numpy()}
        if "peak" in regions.columns:
            columns["peak_tx_type"] = self.classify(regions, use_peak=True).to_numpy()
        annotated = regions.with_columns(**columns)
        counts = pd.Series(columns["tx_type"]).value_counts().to_dict() if len(regions) else {}
        logger.info(f"Annotated {len(regions)} regions: {counts}")
        return annotated

    def assign_gene_ids(self, regions: IntervalCollection) -> IntervalCollection:
        """
        Attach the gene of the nearest overlapping transcript.

        A region is linked to every transcript whose promoter or body it
        overlaps on a compatible strand; the transcript whose TSS is closest
        to the region's peak (or midpoint) wins. Regions with no such
        transcript get ``None``.
        """
        anchor = (
            regions["peak"].to_numpy(np.int64) if "peak" in regions.columns else regions.midpoints()
        )
        frames = []
        for layer in (self._layers["promoter"], self._layers["intron"]):
            hits = find_overlaps(regions, layer)
            frames.append(
                pd.DataFrame(
                    {
                        "query_idx": hits["query_idx"].to_numpy(),
                        "transcript_id": layer["transcript_id"].to_numpy()[hits["subject_idx"].to_numpy()],
                    }
                )
            )
        hits = pd.concat(frames, ignore_index=True)

        genes = np.full(len(regions), None, dtype=object)
        if len(hits):
            tss = hits["transcript_id"].map(self.model.tss_by_transcript).to_numpy(np.int64)
            hits["distance"] = np.abs(anchor[hits["query_idx"].to_numpy()] - tss)
            best = hits.sort_values(["query_idx", "distance", "transcript_id"], kind="mergesort")
            best = best.drop_duplicates("query_idx")
            genes[best["query_idx"].to_numpy()] = best["transcript_id"].map(self.model.gene_by_transcript).to_numpy()

        n_assigned = int(sum(g is not None for g in genes))
        logger.info(f"Assigned genes to {n_assigned} of {len(regions)} regions")
        return regions.with_columns(gene_id=genes)

    def filter_candidate_enhancers(
        self,
        clusters: IntervalCollection,
        excluded: Iterable[str] = ENHANCER_EXCLUDED_TYPES,
    ) -> IntervalCollection:
        """Drop clusters whose span overlaps any excluded feature type."""
        excluded = list(excluded)
        unknown = [e for e in excluded if e not in self._layers]
        if unknown:
            raise AnnotationError(f"Cannot exclude unknown feature types: {unknown}")

        drop = np.zeros(len(clusters), dtype=bool)
        for label in excluded:
            drop |= overlapping_mask(clusters, self._layers[label])

        kept = clusters.subset(~drop)
        logger.info(f"Candidate enhancers: kept {len(kept)} of {len(clusters)} (excluded {excluded})")
        return kept


def annotate_regions(
    regions: IntervalCollection,
    model: TranscriptModel,
    tss_window: int = 100,
) -> IntervalCollection:
    """
    Convenience function to annotate regions in one call.

    Args:
        regions: Called regions (optionally with a ``peak`` column)
        model: Transcript model
        tss_window: Promoter half-width around each TSS

    Returns:
        Regions with tx_type (and peak_tx_type) columns
    """
    return AnnotationOverlay(model, tss_window=tss_window).annotate(regions)
