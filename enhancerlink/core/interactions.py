"""
Contact-Enhancer Interaction Join

Joins RNA-DNA contacts to candidate enhancers, one (cell_type, treatment)
group at a time:
1. Trim contact anchors to chromosome bounds
2. Overlap DNA anchors with enhancers (one row per contact/enhancer pair)
3. Merge the matched DNA anchors into DNA regions and map contacts onto them
4. Flag contacts whose enhancer and RNA gene are both expressed in the
   group's cell type
5. Count distinct DNA regions and genes per enhancer, and distinct
   enhancers per DNA region, over expressed contacts
6. Collect RNA-to-DNA-region distances for enhancer contacts and for the
   non-enhancer comparison set; trans contacts (RNA and DNA on different
   chromosomes) have no distance

Groups share only read-only inputs and run in parallel.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Set, Tuple

import numpy as np
import pandas as pd

from ..workers.executor import parallel_map_dict
from .contacts import ContactRecord, ContactTable, contact_record
from .exceptions import InteractionJoinError, MissingColumnError, validate_numeric_param
from .genome import GenomeInfo
from .intervals import IntervalCollection, find_overlaps, merge_intervals
from .qc import QCReport
from .signal import ExpressionMatrix, calc_support

logger = logging.getLogger(__name__)

JOIN_COLUMNS = [
    "enhancer_id",
    "enhancer_midpoint",
    "dna_region_id",
    "dna_region_midpoint",
    "rna_midpoint",
    "distance",
    "expressed",
]

ENHANCER_STATS_COLUMNS = ["enhancer_id", "n_dna_regions", "n_genes", "n_contacts"]
REGION_STATS_COLUMNS = ["dna_region_id", "n_enhancers"]

GroupKey = Tuple[str, str]


@dataclass(frozen=True)
class JoinedInteraction:
    """A contact matched to one enhancer, with its merged DNA region."""

    contact: ContactRecord
    enhancer_id: str
    enhancer_midpoint: int
    dna_region_id: str
    dna_region_midpoint: int
    rna_midpoint: int
    distance: Optional[int]
    expressed: bool


@dataclass
class InteractionResults:
    """Everything computed for one (cell_type, treatment) group."""

    group: GroupKey
    joined: pd.DataFrame
    enhancer_stats: pd.DataFrame
    region_stats: pd.DataFrame
    enhancer_distances: np.ndarray
    non_enhancer_distances: np.ndarray
    non_enhancer_regions: IntervalCollection
    report: QCReport = field(default_factory=QCReport)

    @property
    def expressed(self) -> pd.DataFrame:
        return self.joined[self.joined["expressed"]]

    @property
    def is_empty(self) -> bool:
        return self.enhancer_stats.empty

    def joined_records(self) -> Iterator[JoinedInteraction]:
        for row in self.joined.itertuples(index=False):
            yield JoinedInteraction(
                contact=contact_record(row),
                enhancer_id=row.enhancer_id,
                enhancer_midpoint=int(row.enhancer_midpoint),
                dna_region_id=row.dna_region_id,
                dna_region_midpoint=int(row.dna_region_midpoint),
                rna_midpoint=int(row.rna_midpoint),
                distance=None if pd.isna(row.distance) else int(row.distance),
                expressed=bool(row.expressed),
            )

    def summary(self) -> Dict:
        return {
            "cell_type": self.group[0],
            "treatment": self.group[1],
            "joined": len(self.joined),
            "expressed": int(self.joined["expressed"].sum()),
            "enhancers": len(self.enhancer_stats),
            "dna_regions": len(self.region_stats),
            "non_enhancer_regions": len(self.non_enhancer_regions),
        }


def _region_index(anchors: IntervalCollection, merged: IntervalCollection) -> np.ndarray:
    """Index of the merged region containing each anchor."""
    hits = find_overlaps(anchors, merged, ignore_strand=True)
    if len(hits) != len(anchors):
        raise InteractionJoinError(
            f"{len(anchors)} anchors mapped to {len(hits)} merged regions; expected one each"
        )
    index = np.empty(len(anchors), dtype=np.int64)
    index[hits["query_idx"].to_numpy()] = hits["subject_idx"].to_numpy()
    return index


def _cis_distances(rna_chroms, dna_chroms, rna_mids, dna_mids) -> pd.Series:
    """|rna_mid - dna_mid| for same-chromosome pairs; missing (NA) for trans pairs."""
    distance = np.abs(np.asarray(rna_mids, dtype=np.int64) - np.asarray(dna_mids, dtype=np.int64))
    trans = np.asarray(rna_chroms) != np.asarray(dna_chroms)
    return pd.Series(pd.arrays.IntegerArray(distance, trans), dtype="Int64")


class InteractionJoinPipeline:
    """
    Join contacts to candidate enhancers and summarise the interactions.

    Args:
        genome: Reference genome used to trim anchors
        enhancers: Enhancer expression matrix; ``row_id`` is the enhancer id
        tss: TSS expression matrix whose rows carry a ``gene_id`` column
        min_tpm: Minimum TPM per replicate column for expression
        min_samples: Minimum number of the cell type's columns passing ``min_tpm``
        assay: Assay used for the expression filter
        max_workers: Groups processed concurrently
    """

    def __init__(
        self,
        genome: GenomeInfo,
        enhancers: ExpressionMatrix,
        tss: ExpressionMatrix,
        min_tpm: float = 1.0,
        min_samples: int = 2,
        assay: str = "TPM",
        max_workers: int = 1,
    ):
        validate_numeric_param(min_tpm, "min_tpm", min_val=0)
        validate_numeric_param(min_samples, "min_samples", min_val=1)
        if "gene_id" not in tss.rows.columns:
            raise MissingColumnError("gene_id", "TSS expression rows", available=tss.rows.columns)

        self.genome = genome
        self.enhancers = enhancers
        self.tss = tss
        self.min_tpm = min_tpm
        self.min_samples = min_samples
        self.assay = assay
        self.max_workers = max_workers

        rows = enhancers.rows.df
        self._enhancer_regions = enhancers.rows
        self._enhancer_ids = rows["row_id"].astype(str).to_numpy()
        self._enhancer_mids = enhancers.rows.midpoints()

    @classmethod
    def from_settings(
        cls,
        genome: GenomeInfo,
        enhancers: ExpressionMatrix,
        tss: ExpressionMatrix,
        settings,
    ) -> "InteractionJoinPipeline":
        return cls(
            genome,
            enhancers,
            tss,
            min_tpm=settings.expression_min_tpm,
            min_samples=settings.expression_min_samples,
            max_workers=settings.max_workers,
        )

    # ------------------------------------------------------------------
    # Expression filter
    # ------------------------------------------------------------------

    def _passing(self, matrix: ExpressionMatrix, cell_type: str) -> np.ndarray:
        samples = matrix.samples_for(cell_type)
        if not samples:
            return np.zeros(len(matrix), dtype=bool)
        support = calc_support(matrix, min_count=self.min_tpm, assay=self.assay, samples=samples)
        return (support >= self.min_samples).to_numpy()

    def expressed_enhancers(self, cell_type: str) -> Set[str]:
        return set(self._enhancer_ids[self._passing(self.enhancers, cell_type)])

    def expressed_genes(self, cell_type: str) -> Set[str]:
        """Genes with at least one expressed TSS in the cell type."""
        genes = self.tss.rows["gene_id"]
        passing = self._passing(self.tss, cell_type) & genes.notna().to_numpy()
        return set(genes.to_numpy()[passing].astype(str))

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------

    def run_group(self, contacts: ContactTable) -> InteractionResults:
        """Join one (cell_type, treatment) group of contacts to the enhancers."""
        keys = contacts.group_keys()
        if len(keys) > 1:
            raise InteractionJoinError(f"run_group() expects a single group, got {keys}")
        group = keys[0] if keys else ("", "")
        cell_type = group[0]
        report = QCReport(name=f"{cell_type}/{group[1]}")

        # 1. trim
        contacts = contacts.trim(self.genome, report=report)
        dna = contacts.dna_anchors
        rna_mids = contacts.rna_anchors.midpoints()

        # 2. overlap DNA anchors with enhancers
        hits = find_overlaps(dna, self._enhancer_regions, ignore_strand=True)
        contact_idx = hits["query_idx"].to_numpy(np.int64)
        enhancer_idx = hits["subject_idx"].to_numpy(np.int64)
        matched = np.unique(contact_idx)
        report.record("enhancer_overlap", len(contacts), len(matched))

        # 3. merge matched anchors into DNA regions
        matched_anchors = dna.subset(matched)
        regions = merge_intervals(matched_anchors, self.genome)
        region_of = np.full(len(contacts), -1, dtype=np.int64)
        region_of[matched] = _region_index(matched_anchors, regions)
        region_ids = regions["region_id"].to_numpy()
        region_mids = regions.midpoints()

        # 4. expression flag
        expressed_enhancers = self.expressed_enhancers(cell_type)
        expressed_genes = self.expressed_genes(cell_type)
        if not self.enhancers.samples_for(cell_type):
            logger.warning(f"No expression columns for cell type {cell_type!r}; no contact is expressed")

        joined = contacts.df.iloc[contact_idx].reset_index(drop=True)
        joined["enhancer_id"] = self._enhancer_ids[enhancer_idx]
        joined["enhancer_midpoint"] = self._enhancer_mids[enhancer_idx]
        joined["dna_region_id"] = region_ids[region_of[contact_idx]]
        joined["dna_region_midpoint"] = region_mids[region_of[contact_idx]]
        joined["rna_midpoint"] = rna_mids[contact_idx]
        joined["distance"] = _cis_distances(
            joined["rna_chrom"].to_numpy(),
            joined["dna_chrom"].to_numpy(),
            joined["rna_midpoint"].to_numpy(np.int64),
            joined["dna_region_midpoint"].to_numpy(np.int64),
        )
        joined["expressed"] = (
            joined["enhancer_id"].isin(expressed_enhancers) & joined["rna_gene_id"].isin(expressed_genes)
        ).astype(bool)

        # 5. aggregate over expressed contacts
        expressed = joined[joined["expressed"]]
        enhancer_stats = (
            expressed.groupby("enhancer_id", sort=True)
            .agg(
                n_dna_regions=("dna_region_id", "nunique"),
                n_genes=("rna_gene_id", "nunique"),
                n_contacts=("contact_id", "size"),
            )
            .reset_index()
            .reindex(columns=ENHANCER_STATS_COLUMNS)
        )
        region_stats = (
            expressed.groupby("dna_region_id", sort=True)
            .agg(n_enhancers=("enhancer_id", "nunique"))
            .reset_index()
            .reindex(columns=REGION_STATS_COLUMNS)
        )

        # 6. distances, including the non-enhancer comparison set
        unmatched = np.setdiff1d(np.arange(len(contacts), dtype=np.int64), matched)
        other_anchors = dna.subset(unmatched)
        other_regions = merge_intervals(other_anchors, self.genome)
        other_mids = other_regions.midpoints()[_region_index(other_anchors, other_regions)]
        other_distances = _cis_distances(
            contacts.df["rna_chrom"].to_numpy()[unmatched],
            contacts.df["dna_chrom"].to_numpy()[unmatched],
            rna_mids[unmatched],
            other_mids,
        )
        non_enhancer_distances = other_distances.dropna().to_numpy(np.int64)

        logger.info(
            f"[{cell_type}/{group[1]}] {len(matched)} of {len(contacts)} contacts hit enhancers; "
            f"{int(joined['expressed'].sum())} expressed pairs over {len(enhancer_stats)} enhancers"
        )
        return InteractionResults(
            group=group,
            joined=joined[list(contacts.df.columns) + JOIN_COLUMNS],
            enhancer_stats=enhancer_stats,
            region_stats=region_stats,
            enhancer_distances=expressed["distance"].dropna().to_numpy(np.int64),
            non_enhancer_distances=non_enhancer_distances,
            non_enhancer_regions=other_regions,
            report=report,
        )

    def run(self, contacts: ContactTable) -> Dict[GroupKey, InteractionResults]:
        """Run every (cell_type, treatment) group, in parallel."""
        groups = contacts.groups()
        if not groups:
            logger.warning("No contacts to join")
            return {}
        results = parallel_map_dict(self.run_group, groups, max_workers=self.max_workers, label="group")
        logger.info(f"Interaction join finished for {len(results)} groups")
        return results


def summarize_results(results: Dict[GroupKey, InteractionResults]) -> pd.DataFrame:
    """One row of headline counts per group."""
    return pd.DataFrame([r.summary() for r in results.values()])
