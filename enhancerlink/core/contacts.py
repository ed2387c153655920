"""
RNA-DNA contact records.

Contact rows arrive pre-parsed from the ingestion layer with a reported
midpoint for each side. Each row is validated with the ContactRow schema,
and both midpoints are flanked by the same symmetric window to give the RNA
and DNA anchors. Bad rows are counted and skipped, never fatal.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from pydantic import ValidationError as SchemaError

from ..models.schemas import ContactRow
from .exceptions import InteractionJoinError, validate_numeric_param
from .genome import GenomeInfo
from .intervals import GenomicInterval, IntervalCollection, trim_intervals
from .qc import QCReport

logger = logging.getLogger(__name__)

DEFAULT_FLANK = 1000

CONTACT_COLUMNS = [
    "contact_id",
    "cell_type",
    "treatment",
    "rna_chrom",
    "rna_start",
    "rna_end",
    "rna_strand",
    "rna_gene_id",
    "rna_class",
    "rna_feature_type",
    "dna_chrom",
    "dna_start",
    "dna_end",
    "dna_bin_id",
    "p_value",
    "p_adj",
]


@dataclass(frozen=True)
class ContactRecord:
    """A single RNA-DNA spatial contact with its two anchors."""

    cell_type: str
    treatment: str
    rna_anchor: GenomicInterval
    dna_anchor: GenomicInterval
    rna_strand: str
    rna_gene_id: str
    rna_class: Optional[str] = None
    rna_feature_type: Optional[str] = None
    dna_bin_id: Optional[str] = None
    p_value: Optional[float] = None
    p_adj: Optional[float] = None

    @property
    def group(self) -> Tuple[str, str]:
        return (self.cell_type, self.treatment)


def _optional(value):
    if value is None:
        return None
    try:
        return None if pd.isna(value) else value
    except (TypeError, ValueError):
        return value


def contact_record(row) -> ContactRecord:
    """Build a ContactRecord from one row (namedtuple or Series) of a contact table."""
    return ContactRecord(
        cell_type=row.cell_type,
        treatment=row.treatment,
        rna_anchor=GenomicInterval(row.rna_chrom, int(row.rna_start), int(row.rna_end), row.rna_strand),
        dna_anchor=GenomicInterval(row.dna_chrom, int(row.dna_start), int(row.dna_end), "*"),
        rna_strand=row.rna_strand,
        rna_gene_id=row.rna_gene_id,
        rna_class=_optional(row.rna_class),
        rna_feature_type=_optional(row.rna_feature_type),
        dna_bin_id=_optional(row.dna_bin_id),
        p_value=_optional(row.p_value),
        p_adj=_optional(row.p_adj),
    )


class ContactTable:
    """
    Validated contacts, one row per contact.

    ``contact_id`` is assigned at construction and survives trimming,
    grouping and joining, so every derived row can be traced back.
    """

    def __init__(self, df: pd.DataFrame, flank: int = DEFAULT_FLANK):
        missing = [c for c in CONTACT_COLUMNS if c not in df.columns]
        if missing:
            raise InteractionJoinError(f"Contact table is missing columns: {missing}")
        self._df = df[CONTACT_COLUMNS].reset_index(drop=True)
        self.flank = flank

    @classmethod
    def empty(cls, flank: int = DEFAULT_FLANK) -> "ContactTable":
        df = pd.DataFrame({col: pd.Series(dtype=object) for col in CONTACT_COLUMNS})
        for col in ("contact_id", "rna_start", "rna_end", "dna_start", "dna_end"):
            df[col] = df[col].astype(np.int64)
        return cls(df, flank=flank)

    @property
    def df(self) -> pd.DataFrame:
        return self._df

    def __len__(self) -> int:
        return len(self._df)

    def __repr__(self) -> str:
        return f"ContactTable(n={len(self)}, groups={len(self.group_keys())})"

    @property
    def rna_anchors(self) -> IntervalCollection:
        return self._anchors("rna", stranded=True)

    @property
    def dna_anchors(self) -> IntervalCollection:
        return self._anchors("dna", stranded=False)

    def _anchors(self, side: str, stranded: bool) -> IntervalCollection:
        df = pd.DataFrame(
            {
                "chrom": self._df[f"{side}_chrom"].to_numpy(),
                "start": self._df[f"{side}_start"].to_numpy(np.int64),
                "end": self._df[f"{side}_end"].to_numpy(np.int64),
                "strand": self._df["rna_strand"].to_numpy() if stranded else "*",
                "contact_id": self._df["contact_id"].to_numpy(np.int64),
            }
        )
        return IntervalCollection._from_validated(df, name=f"{side}_anchors")

    def records(self) -> Iterator[ContactRecord]:
        for row in self._df.itertuples(index=False):
            yield contact_record(row)

    def subset(self, rows) -> "ContactTable":
        rows = np.asarray(rows)
        df = self._df[rows] if rows.dtype == bool else self._df.iloc[rows.astype(np.int64)]
        return ContactTable(df, flank=self.flank)

    def group_keys(self) -> List[Tuple[str, str]]:
        keys = self._df[["cell_type", "treatment"]].drop_duplicates()
        return sorted(map(tuple, keys.itertuples(index=False)))

    def groups(self) -> Dict[Tuple[str, str], "ContactTable"]:
        """Split into one table per (cell_type, treatment) group."""
        return {
            key: ContactTable(grp, flank=self.flank)
            for key, grp in self._df.groupby(["cell_type", "treatment"], sort=True)
        }

    def trim(self, genome: GenomeInfo, report: Optional[QCReport] = None) -> "ContactTable":
        """Clip both anchors to chromosome bounds.

        A contact is dropped when either anchor lies entirely outside its
        chromosome; the counts are recorded per side.
        """
        rna = trim_intervals(self.rna_anchors, genome, report=report, stage="rna_anchor_trim")
        dna = trim_intervals(self.dna_anchors, genome, report=report, stage="dna_anchor_trim")

        df = self._df.set_index("contact_id", drop=False)
        keep = df.index.isin(rna["contact_id"]) & df.index.isin(dna["contact_id"])
        df = df[keep].copy()

        rna_df = rna.df.set_index("contact_id")
        dna_df = dna.df.set_index("contact_id")
        df["rna_start"] = rna_df.loc[df.index, "start"].to_numpy(np.int64)
        df["rna_end"] = rna_df.loc[df.index, "end"].to_numpy(np.int64)
        df["dna_start"] = dna_df.loc[df.index, "start"].to_numpy(np.int64)
        df["dna_end"] = dna_df.loc[df.index, "end"].to_numpy(np.int64)
        return ContactTable(df.reset_index(drop=True), flank=self.flank)


def _row_dicts(rows: Union[pd.DataFrame, Iterable[Mapping]]) -> List[dict]:
    if isinstance(rows, pd.DataFrame):
        # Missing values become None so optional schema fields validate
        rows = rows.astype(object).where(rows.notna(), None).to_dict("records")
    # Absent fields fall back to the schema defaults
    return [{k: v for k, v in dict(r).items() if v is not None} for r in rows]


def build_contacts(
    rows: Union[pd.DataFrame, Iterable[Mapping]],
    genome: GenomeInfo,
    flank: int = DEFAULT_FLANK,
    report: Optional[QCReport] = None,
) -> ContactTable:
    """
    Validate contact rows and derive their anchors.

    Args:
        rows: DataFrame or mappings with the ContactRow fields
        genome: Reference genome; contacts on other chromosomes are dropped
        flank: Half-width applied to both reported midpoints
        report: QC ledger for the parse and chromosome stages

    Returns:
        ContactTable with anchors ``[midpoint - flank, midpoint + flank]``
        (not yet trimmed to chromosome bounds)
    """
    validate_numeric_param(flank, "flank", min_val=0)
    raw = _row_dicts(rows)

    parsed: List[ContactRow] = []
    n_invalid = 0
    for i, row in enumerate(raw):
        try:
            parsed.append(ContactRow.model_validate(row))
        except SchemaError as e:
            n_invalid += 1
            logger.debug(f"Contact row {i} rejected: {e.errors()[0]['msg']}")

    known = [c for c in parsed if c.rna_chrom in genome and c.dna_chrom in genome]
    n_unknown = len(parsed) - len(known)

    if report is not None:
        report.record("contact_parse", len(raw), len(parsed), dropped=n_invalid)
        report.record(
            "contact_chromosomes",
            len(parsed),
            len(known),
            dropped=n_unknown,
            warning=f"{n_unknown} contacts on chromosomes absent from the genome" if n_unknown else None,
        )
    elif n_invalid or n_unknown:
        logger.warning(f"Dropped {n_invalid} unparseable contacts and {n_unknown} on unknown chromosomes")

    if not known:
        logger.warning("No valid contacts")
        return ContactTable.empty(flank=flank)

    df = pd.DataFrame(
        {
            "contact_id": np.arange(len(known), dtype=np.int64),
            "cell_type": [c.cell_type for c in known],
            "treatment": [c.treatment for c in known],
            "rna_chrom": [c.rna_chrom for c in known],
            "rna_start": [c.rna_midpoint - flank for c in known],
            "rna_end": [c.rna_midpoint + flank for c in known],
            "rna_strand": [c.rna_strand.value for c in known],
            "rna_gene_id": [c.rna_gene_id for c in known],
            "rna_class": [c.rna_class for c in known],
            "rna_feature_type": [c.rna_feature_type for c in known],
            "dna_chrom": [c.dna_chrom for c in known],
            "dna_start": [c.dna_midpoint - flank for c in known],
            "dna_end": [c.dna_midpoint + flank for c in known],
            "dna_bin_id": [c.dna_bin_id for c in known],
            "p_value": [c.p_value for c in known],
            "p_adj": [c.p_adj for c in known],
        }
    )
    table = ContactTable(df, flank=flank)
    logger.info(f"Built {len(table)} contacts in {len(table.group_keys())} groups (flank={flank})")
    return table
