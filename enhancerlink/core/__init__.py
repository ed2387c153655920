"""
Core analysis modules for EnhancerLink.

Includes:
- Genomic intervals (NCLS overlap, merge, trim)
- Signal quantification (TPM, pooling, support filters)
- Unidirectional and bidirectional clustering
- Transcript-type annotation
- Contact/enhancer interaction join
"""

# Reference data and intervals
from .genome import GenomeInfo
from .intervals import (
    GenomicInterval,
    IntervalCollection,
    find_overlaps,
    count_overlaps,
    overlapping_mask,
    exclude_overlapping,
    merge_intervals,
    trim_intervals,
    sort_chromosomes,
)

# Signal quantification
from .signal import (
    ExpressionMatrix,
    SupportTier,
    ENHANCER_SUPPORT,
    TSS_SUPPORT,
    build_signal_matrix,
    sample_metadata,
    quantify,
    calc_support,
    support_filter,
    normalize_tpm,
    pool,
    calc_pooled,
)

# Clustering
from .clustering import (
    ClusterEngine,
    balance_score,
    cluster_unidirectionally,
    cluster_bidirectionally,
    remove_overlapping_clusters,
)

# Annotation
from .annotation import AnnotationOverlay, TranscriptModel, annotate_regions

# Contacts and interactions
from .contacts import ContactRecord, ContactTable, build_contacts
from .interactions import (
    InteractionJoinPipeline,
    InteractionResults,
    JoinedInteraction,
    summarize_results,
)

# Workflow
from .calling import CalledRegions, call_regions

# Quality control
from .qc import QCReport, StageCounts

__all__ = [
    # Intervals
    "GenomeInfo",
    "GenomicInterval",
    "IntervalCollection",
    "find_overlaps",
    "count_overlaps",
    "overlapping_mask",
    "exclude_overlapping",
    "merge_intervals",
    "trim_intervals",
    "sort_chromosomes",

    # Signal
    "ExpressionMatrix",
    "SupportTier",
    "ENHANCER_SUPPORT",
    "TSS_SUPPORT",
    "build_signal_matrix",
    "sample_metadata",
    "quantify",
    "calc_support",
    "support_filter",
    "normalize_tpm",
    "pool",
    "calc_pooled",

    # Clustering
    "ClusterEngine",
    "balance_score",
    "cluster_unidirectionally",
    "cluster_bidirectionally",
    "remove_overlapping_clusters",

    # Annotation
    "AnnotationOverlay",
    "TranscriptModel",
    "annotate_regions",

    # Interactions
    "ContactRecord",
    "ContactTable",
    "build_contacts",
    "InteractionJoinPipeline",
    "InteractionResults",
    "JoinedInteraction",
    "summarize_results",

    # Workflow
    "CalledRegions",
    "call_regions",

    # Quality control
    "QCReport",
    "StageCounts",
]
