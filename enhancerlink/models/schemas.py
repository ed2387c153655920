"""
Pydantic schemas for validating records handed over by the ingestion layer.

Defines schemas for:
- RNA-DNA contact rows (midpoints, strand, gene and bin identifiers)
- Sample descriptions (cell type, treatment, replicate)
"""

from typing import Optional
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StrandEnum(str, Enum):
    PLUS = "+"
    MINUS = "-"
    UNSTRANDED = "*"


# ============================================================================
# Contact Schemas
# ============================================================================


class ContactRow(BaseModel):
    """One pre-parsed RNA-DNA contact as reported by the ingestion layer.

    Positions are reported as midpoints; anchors are derived later by
    flanking them symmetrically.
    """

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    cell_type: str = Field(..., min_length=1, description="Cell type of the experiment")
    treatment: str = Field(default="none", description="Treatment/condition group")
    rna_chrom: str = Field(..., min_length=1)
    rna_midpoint: int = Field(..., ge=0, description="Reported RNA-side position")
    rna_strand: StrandEnum = StrandEnum.UNSTRANDED
    rna_gene_id: str = Field(..., min_length=1)
    rna_class: Optional[str] = None
    rna_feature_type: Optional[str] = None
    dna_chrom: str = Field(..., min_length=1)
    dna_midpoint: int = Field(..., ge=0, description="Reported DNA-side position")
    dna_bin_id: Optional[str] = None
    p_value: Optional[float] = Field(default=None, ge=0, le=1)
    p_adj: Optional[float] = Field(default=None, ge=0, le=1)

    @field_validator("rna_strand", mode="before")
    @classmethod
    def _normalize_strand(cls, value):
        if value is None or value == ".":
            return StrandEnum.UNSTRANDED
        return value

    @field_validator(
        "cell_type",
        "treatment",
        "rna_chrom",
        "rna_gene_id",
        "rna_class",
        "rna_feature_type",
        "dna_chrom",
        "dna_bin_id",
        mode="before",
    )
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)


# ============================================================================
# Sample Schemas
# ============================================================================


class SampleInfo(BaseModel):
    """Description of one sample column in an expression matrix."""

    name: str = Field(..., min_length=1, description="Sample name/identifier")
    cell_type: str = Field(..., min_length=1)
    treatment: str = Field(default="none")
    replicate: int = Field(default=1, ge=1, description="Replicate number")
