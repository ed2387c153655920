"""
Region calling workflow.

Runs the signal -> clusters -> annotated expression matrices path:
1. TPM-normalise and pool the position matrix
2. Enhancer tier: bidirectional clusters, annotated, with promoter/UTR/exon
   overlaps removed
3. TSS tier: tag clusters not overlapping a retained enhancer, annotated and
   linked to genes
4. Quantify both region sets into expression matrices with TPM and pooled
   assays
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..config import Settings, get_settings
from .annotation import AnnotationOverlay, TranscriptModel
from .clustering import ClusterEngine
from .genome import GenomeInfo
from .intervals import IntervalCollection
from .qc import QCReport
from .signal import (
    ExpressionMatrix,
    SupportTier,
    calc_pooled,
    calc_support,
    normalize_tpm,
    quantify,
)

logger = logging.getLogger(__name__)


@dataclass
class CalledRegions:
    """Enhancer and TSS expression matrices from one calling run."""

    enhancers: ExpressionMatrix
    tss: ExpressionMatrix
    positions: ExpressionMatrix
    report: QCReport = field(default_factory=QCReport)

    def summary(self) -> dict:
        return {
            "positions": len(self.positions),
            "enhancers": len(self.enhancers),
            "tss": len(self.tss),
            "dropped": self.report.total_dropped,
            "clipped": self.report.total_clipped,
        }


def quantify_regions(regions: IntervalCollection, positions: ExpressionMatrix) -> ExpressionMatrix:
    """Quantify regions and attach TPM, pooled TPM and a per-row support count."""
    matrix = calc_pooled(normalize_tpm(quantify(regions, positions)))
    support = calc_support(matrix, min_count=0)
    return matrix.with_rows(matrix.rows.with_columns(support=support.to_numpy()))


def call_regions(
    positions: ExpressionMatrix,
    genome: GenomeInfo,
    transcript_model: TranscriptModel,
    settings: Optional[Settings] = None,
    report: Optional[QCReport] = None,
) -> CalledRegions:
    """
    Call candidate enhancers and TSSs from a position x sample count matrix.

    Args:
        positions: Output of build_signal_matrix()
        genome: Reference genome
        transcript_model: Transcript structures for annotation
        settings: Thresholds; defaults to the environment settings
        report: QC ledger to extend

    Returns:
        CalledRegions with enhancer and TSS matrices
    """
    settings = settings or get_settings()
    report = report or QCReport(name="call_regions")

    positions = calc_pooled(normalize_tpm(positions))
    engine = ClusterEngine.from_settings(genome, settings)
    overlay = AnnotationOverlay.from_settings(transcript_model, settings)

    # Enhancers: loose support, balanced divergent signal outside promoters/exons
    enhancer_positions = SupportTier(*settings.enhancer_support).apply(positions)
    bidirectional = overlay.annotate(engine.bidirectional(enhancer_positions, report=report))
    enhancers = overlay.filter_candidate_enhancers(bidirectional)
    report.record(
        "candidate_enhancers", len(bidirectional), len(enhancers), dropped=len(bidirectional) - len(enhancers)
    )

    # TSSs: stricter support, tag clusters not explained by an enhancer
    tss_positions = SupportTier(*settings.tss_support).apply(positions)
    tag_clusters = engine.unidirectional(tss_positions, report=report)
    tag_clusters = engine.remove_overlapping(tag_clusters, enhancers)
    tag_clusters = overlay.assign_gene_ids(overlay.annotate(tag_clusters))

    called = CalledRegions(
        enhancers=quantify_regions(enhancers, positions),
        tss=quantify_regions(tag_clusters, positions),
        positions=positions,
        report=report,
    )
    logger.info(f"Region calling finished: {called.summary()}")
    return called
