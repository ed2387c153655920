"""
Signal quantification module.

Turns sparse, base-pair-resolution transcription signal into region x sample
expression matrices:
- assembly of per-sample position counts into one position matrix
- quantification of regions (strand-aware summing of position counts)
- support filtering (minimum count in a minimum number of samples)
- TPM normalisation and pooling across samples

Pooling is the per-row *mean* of the chosen assay across sample columns.
For TPM this keeps the pooled vector on the same 1e6 scale as one sample.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from pydantic import ValidationError as SchemaError

from ..models.schemas import SampleInfo
from .exceptions import (
    InvalidParameterError,
    MissingColumnError,
    ValidationError,
    validate_dataframe,
    validate_numeric_param,
)
from .genome import GenomeInfo
from .intervals import IntervalCollection, chromosome_ranks, find_overlaps
from .qc import QCReport

logger = logging.getLogger(__name__)

TPM_SCALE = 1e6


@dataclass
class ExpressionMatrix:
    """Region x sample assays with row intervals and sample metadata.

    ``rows`` carries a unique ``row_id`` column; every assay is a DataFrame
    indexed by those ids with one column per sample in ``col_data.index``.
    """

    rows: IntervalCollection
    assays: Dict[str, pd.DataFrame]
    col_data: pd.DataFrame
    pooled: Optional[pd.Series] = None
    metadata: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self):
        if "row_id" not in self.rows.columns:
            raise MissingColumnError("row_id", "ExpressionMatrix rows", available=self.rows.columns)
        ids = self.rows["row_id"]
        if ids.duplicated().any():
            raise ValidationError(f"Duplicate row ids, e.g. {ids[ids.duplicated()].iloc[0]!r}")
        samples = list(self.col_data.index)
        for name, assay in self.assays.items():
            if assay.shape != (len(self.rows), len(samples)):
                raise ValidationError(
                    f"Assay '{name}' has shape {assay.shape}, expected {(len(self.rows), len(samples))}"
                )
            if list(assay.columns) != samples:
                raise ValidationError(f"Assay '{name}' columns do not match sample metadata")

    @property
    def samples(self) -> List[str]:
        return list(self.col_data.index)

    @property
    def row_ids(self) -> pd.Index:
        return pd.Index(self.rows["row_id"])

    def __len__(self) -> int:
        return len(self.rows)

    def assay(self, name: str) -> pd.DataFrame:
        if name not in self.assays:
            raise ValidationError(f"Unknown assay '{name}'. Available: {list(self.assays)}")
        return self.assays[name]

    def samples_for(self, cell_type: str) -> List[str]:
        """Sample columns belonging to one cell type."""
        if "cell_type" not in self.col_data.columns:
            raise MissingColumnError("cell_type", "sample metadata", available=list(self.col_data.columns))
        return list(self.col_data.index[self.col_data["cell_type"] == cell_type])

    def with_assay(self, name: str, values: pd.DataFrame) -> "ExpressionMatrix":
        assays = dict(self.assays)
        assays[name] = values
        return ExpressionMatrix(self.rows, assays, self.col_data, self.pooled, dict(self.metadata))

    def with_pooled(self, pooled: pd.Series) -> "ExpressionMatrix":
        return ExpressionMatrix(self.rows, dict(self.assays), self.col_data, pooled, dict(self.metadata))

    def with_rows(self, rows: IntervalCollection) -> "ExpressionMatrix":
        """Replace row metadata (same row ids, same order)."""
        if list(rows["row_id"]) != list(self.rows["row_id"]):
            raise ValidationError("Replacement rows must keep row ids and order")
        return ExpressionMatrix(rows, dict(self.assays), self.col_data, self.pooled, dict(self.metadata))

    def subset_rows(self, mask) -> "ExpressionMatrix":
        """Keep rows selected by a boolean mask, carrying every assay along."""
        mask = np.asarray(mask, dtype=bool)
        rows = self.rows.subset(mask)
        assays = {name: a[mask] for name, a in self.assays.items()}
        pooled = self.pooled[mask] if self.pooled is not None else None
        return ExpressionMatrix(rows, assays, self.col_data, pooled, dict(self.metadata))


# ============================================================================
# Position matrix assembly
# ============================================================================

SIGNAL_COLUMNS = ["chrom", "pos", "strand", "count"]


def position_ids(chroms, positions, strands) -> List[str]:
    return [f"{c}:{p};{s}" for c, p, s in zip(chroms, positions, strands)]


def build_signal_matrix(
    samples: Mapping[str, pd.DataFrame],
    genome: GenomeInfo,
    col_data: Optional[pd.DataFrame] = None,
    report: Optional[QCReport] = None,
) -> ExpressionMatrix:
    """Assemble per-sample sparse signal into one position x sample count matrix.

    Args:
        samples: Sample name -> DataFrame with chrom, pos, strand, count
        genome: Reference table every chromosome must belong to
        col_data: Optional sample metadata indexed by sample name
        report: QC ledger receiving out-of-bounds drop counts

    Raises:
        UnknownChromosomeError: a chromosome is absent from ``genome``
        ValidationError: unstranded or negative signal
    """
    if not samples:
        raise ValidationError("At least one sample signal table is required")

    frames = []
    for sample, df in samples.items():
        validate_dataframe(df, f"signal[{sample}]", required_columns=SIGNAL_COLUMNS)
        df = df[SIGNAL_COLUMNS].copy()
        df["chrom"] = df["chrom"].astype(str)
        genome.validate_chromosomes(df["chrom"])

        if not df["strand"].isin(["+", "-"]).all():
            raise ValidationError(f"Signal for sample {sample} must be stranded (+/-)")
        if (df["count"] < 0).any():
            raise ValidationError(f"Negative signal counts in sample {sample}")

        lengths = df["chrom"].map(genome.lengths())
        in_bounds = (df["pos"] >= 1) & (df["pos"] <= lengths)
        n_out = int((~in_bounds).sum())
        if report is not None:
            report.record("signal_bounds", len(df), int(in_bounds.sum()), dropped=n_out)
        elif n_out:
            logger.warning(f"Sample {sample}: dropped {n_out} positions outside chromosome bounds")

        frames.append(df[in_bounds & (df["count"] > 0)].assign(sample=sample))

    long = pd.concat(frames, ignore_index=True)
    sample_names = list(samples.keys())
    if long.empty:
        logger.warning("No positions with signal in any sample")
        wide = pd.DataFrame(columns=["chrom", "pos", "strand"] + sample_names)
    else:
        wide = long.pivot_table(
            index=["chrom", "pos", "strand"],
            columns="sample",
            values="count",
            aggfunc="sum",
            fill_value=0,
        )
        wide = wide.reindex(columns=sample_names, fill_value=0).reset_index()
        wide.columns.name = None
    wide["_rank"] = chromosome_ranks(wide["chrom"], genome)
    wide = wide.sort_values(["_rank", "pos", "strand"], kind="mergesort").reset_index(drop=True)

    ids = position_ids(wide["chrom"], wide["pos"], wide["strand"])
    rows = IntervalCollection(
        pd.DataFrame(
            {
                "chrom": wide["chrom"],
                "start": wide["pos"],
                "end": wide["pos"],
                "strand": wide["strand"],
                "row_id": ids,
            }
        ),
        name="signal",
    )
    values = wide[sample_names].to_numpy()
    if long.empty:
        values = values.astype(np.int64)
    counts = pd.DataFrame(values, index=pd.Index(ids, name="row_id"), columns=sample_names)

    col_data = _prepare_col_data(col_data, sample_names)
    logger.info(f"Built signal matrix: {len(rows)} positions x {len(sample_names)} samples")
    return ExpressionMatrix(rows=rows, assays={"counts": counts}, col_data=col_data)


def sample_metadata(samples: Sequence[Mapping]) -> pd.DataFrame:
    """Build ``col_data`` from sample descriptions.

    Each record needs ``name`` and ``cell_type``; ``treatment`` and
    ``replicate`` are optional.

    Raises:
        ValidationError: a record fails validation or a name repeats
    """
    infos = []
    for record in samples:
        try:
            infos.append(SampleInfo(**record))
        except SchemaError as e:
            raise ValidationError(f"Invalid sample description {dict(record)!r}: {e}") from e

    names = [info.name for info in infos]
    if len(set(names)) != len(names):
        raise ValidationError(f"Duplicate sample names: {names}")

    return pd.DataFrame(
        {
            "cell_type": [info.cell_type for info in infos],
            "treatment": [info.treatment for info in infos],
            "replicate": [info.replicate for info in infos],
        },
        index=pd.Index(names, name="sample"),
    )


def _prepare_col_data(col_data: Optional[pd.DataFrame], sample_names: Sequence[str]) -> pd.DataFrame:
    if col_data is None:
        return pd.DataFrame(index=pd.Index(list(sample_names), name="sample"))
    missing = [s for s in sample_names if s not in col_data.index]
    if missing:
        raise ValidationError(f"Sample metadata is missing samples: {missing}")
    return col_data.loc[list(sample_names)].copy()


# ============================================================================
# Quantification
# ============================================================================


def quantify(
    regions: IntervalCollection,
    positions: ExpressionMatrix,
    id_column: str = "cluster_id",
    assay: str = "counts",
) -> ExpressionMatrix:
    """Sum position signal inside each region, per sample.

    Stranded regions accumulate only same-strand positions; unstranded
    regions accumulate both strands.

    Returns:
        ExpressionMatrix with a "counts" assay and the region metadata as rows
    """
    if id_column not in regions.columns:
        raise MissingColumnError(id_column, "regions", available=regions.columns)

    ids = regions[id_column].astype(str).to_numpy()
    values = positions.assay(assay).to_numpy()
    out = np.zeros((len(regions), len(positions.samples)), dtype=values.dtype)

    hits = find_overlaps(regions, positions.rows)
    if len(hits):
        np.add.at(out, hits["query_idx"].to_numpy(), values[hits["subject_idx"].to_numpy()])

    rows = regions.with_columns(row_id=ids)
    counts = pd.DataFrame(out, index=pd.Index(ids, name="row_id"), columns=positions.samples)
    logger.debug(f"Quantified {len(regions)} regions from {len(hits)} position hits")
    return ExpressionMatrix(rows=rows, assays={"counts": counts}, col_data=positions.col_data.copy())


# ============================================================================
# Support filtering
# ============================================================================


@dataclass(frozen=True)
class SupportTier:
    """Minimum count that must be reached in a minimum number of samples."""

    min_count: float
    min_samples: int

    def apply(self, matrix: ExpressionMatrix, assay: str = "counts") -> ExpressionMatrix:
        return support_filter(matrix, self.min_count, self.min_samples, assay=assay)


# Observed at all in one sample: feeds bidirectional (enhancer) calling
ENHANCER_SUPPORT = SupportTier(min_count=0, min_samples=1)
# At least one count in two samples: feeds TSS calling
TSS_SUPPORT = SupportTier(min_count=1, min_samples=2)


def calc_support(
    matrix: ExpressionMatrix,
    min_count: float = 0,
    assay: str = "counts",
    samples: Optional[Sequence[str]] = None,
) -> pd.Series:
    """Number of samples in which each row has signal >= min_count.

    A zero is never support, so ``min_count=0`` means "observed".
    """
    values = matrix.assay(assay)
    if samples is not None:
        values = values[list(samples)]
    supported = (values >= min_count) & (values > 0)
    return supported.sum(axis=1).astype(np.int64).rename("support")


def support_filter(
    matrix: ExpressionMatrix,
    min_count: float,
    min_samples: int,
    assay: str = "counts",
    samples: Optional[Sequence[str]] = None,
) -> ExpressionMatrix:
    """Keep rows with signal >= min_count in at least min_samples samples."""
    validate_numeric_param(min_count, "min_count", min_val=0)
    validate_numeric_param(min_samples, "min_samples", min_val=1)

    support = calc_support(matrix, min_count=min_count, assay=assay, samples=samples)
    keep = (support >= min_samples).to_numpy()
    logger.info(
        f"Support filter (>= {min_count} in >= {min_samples} samples): "
        f"kept {int(keep.sum())} of {len(matrix)} rows"
    )
    return matrix.subset_rows(keep)


# ============================================================================
# Normalisation and pooling
# ============================================================================


def normalize_tpm(
    matrix: ExpressionMatrix,
    input_assay: str = "counts",
    output_assay: str = "TPM",
) -> ExpressionMatrix:
    """Scale every sample column to sum to one million.

    A sample whose total signal is zero gets an all-zero TPM column.
    """
    counts = matrix.assay(input_assay).astype(np.float64)
    totals = counts.sum(axis=0)
    zero = totals == 0
    if zero.any():
        logger.warning(f"Samples with zero total signal get zero TPM: {list(totals.index[zero])}")
    scale = np.where(zero, 0.0, TPM_SCALE / totals.where(~zero, 1.0))
    tpm = counts * scale
    return matrix.with_assay(output_assay, tpm)


def pool(matrix: ExpressionMatrix, assay: str = "TPM") -> pd.Series:
    """Per-row mean of ``assay`` across all sample columns."""
    values = matrix.assay(assay)
    if values.shape[1] == 0:
        raise InvalidParameterError("samples", 0, "at least one sample column")
    return values.mean(axis=1).astype(np.float64).rename("pooled")


def calc_pooled(matrix: ExpressionMatrix, assay: str = "TPM") -> ExpressionMatrix:
    """Attach pooled values (see pool()) to the matrix."""
    return matrix.with_pooled(pool(matrix, assay=assay))
