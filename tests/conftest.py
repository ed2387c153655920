"""
Shared test fixtures for the EnhancerLink test suite.
"""

import numpy as np
import pandas as pd
import pytest

from enhancerlink.core.annotation import TranscriptModel
from enhancerlink.core.genome import GenomeInfo
from enhancerlink.core.intervals import IntervalCollection
from enhancerlink.core.signal import ExpressionMatrix, build_signal_matrix, calc_pooled

# ============================================================================
# Reference data
# ============================================================================


@pytest.fixture
def genome():
    """A small genome with room for the contact scenarios on chr5."""
    return GenomeInfo.from_pairs(
        [("chr1", 1_000_000), ("chr2", 500_000), ("chr5", 10_000_000)],
        name="test",
    )


@pytest.fixture
def transcript_df():
    """One plus-strand transcript on chr1 and one minus-strand transcript on chr2."""
    return pd.DataFrame(
        [
            ("chr1", 10_000, 20_000, "+", "transcript", "T1", "G1"),
            ("chr1", 10_000, 10_100, "+", "fiveUTR", "T1", "G1"),
            ("chr1", 10_000, 10_500, "+", "exon", "T1", "G1"),
            ("chr1", 15_000, 15_500, "+", "exon", "T1", "G1"),
            ("chr1", 19_500, 20_000, "+", "exon", "T1", "G1"),
            ("chr1", 19_800, 20_000, "+", "threeUTR", "T1", "G1"),
            ("chr2", 50_000, 60_000, "-", "transcript", "T2", "G2"),
            ("chr2", 59_000, 60_000, "-", "exon", "T2", "G2"),
            ("chr2", 59_900, 60_000, "-", "fiveUTR", "T2", "G2"),
            ("chr2", 50_000, 50_400, "-", "exon", "T2", "G2"),
            ("chr2", 50_000, 50_100, "-", "threeUTR", "T2", "G2"),
        ],
        columns=["chrom", "start", "end", "strand", "feature_type", "transcript_id", "gene_id"],
    )


@pytest.fixture
def transcript_model(transcript_df, genome):
    return TranscriptModel.from_dataframe(transcript_df, genome)


# ============================================================================
# Signal
# ============================================================================


@pytest.fixture
def make_positions(genome):
    """Factory for pooled position matrices.

    ``records`` are (chrom, pos, strand, count) tuples; ``count`` is an int
    shared by every sample or a tuple with one value per sample. Pooling
    uses raw counts by default so scores equal summed counts.
    """

    def _make(records, samples=("s1",), pooled_assay="counts"):
        tables = {}
        for k, sample in enumerate(samples):
            rows = [
                (chrom, pos, strand, count if isinstance(count, int) else count[k])
                for chrom, pos, strand, count in records
            ]
            tables[sample] = pd.DataFrame(rows, columns=["chrom", "pos", "strand", "count"])
        return calc_pooled(build_signal_matrix(tables, genome), assay=pooled_assay)

    return _make


@pytest.fixture
def count_matrix():
    """Three single-bp rows over two samples; s2 has no signal at all."""
    rows = IntervalCollection(
        pd.DataFrame(
            {
                "chrom": ["chr1", "chr1", "chr1"],
                "start": [100, 200, 300],
                "end": [100, 200, 300],
                "strand": ["+", "+", "-"],
                "row_id": ["a", "b", "c"],
            }
        )
    )
    counts = pd.DataFrame(
        {"s1": [1, 3, 6], "s2": [0, 0, 0]},
        index=pd.Index(["a", "b", "c"], name="row_id"),
    )
    col_data = pd.DataFrame(index=pd.Index(["s1", "s2"], name="sample"))
    return ExpressionMatrix(rows=rows, assays={"counts": counts}, col_data=col_data)


# ============================================================================
# Contacts and called regions
# ============================================================================


def _contact(cell_type, rna_mid, gene, dna_mid, rna_strand="+", treatment="none"):
    return {
        "cell_type": cell_type,
        "treatment": treatment,
        "rna_chrom": "chr5",
        "rna_midpoint": rna_mid,
        "rna_strand": rna_strand,
        "rna_gene_id": gene,
        "rna_class": "protein_coding",
        "rna_feature_type": "exon",
        "dna_chrom": "chr5",
        "dna_midpoint": dna_mid,
        "dna_bin_id": f"bin_{dna_mid // 1000}",
        "p_value": 0.001,
        "p_adj": 0.01,
    }


@pytest.fixture
def contact_rows():
    """K562 contacts hitting two enhancers plus two non-enhancer contacts; one HeLa contact."""
    return [
        _contact("K562", 5_000_000, "G1", 5_010_000),
        _contact("K562", 5_000_000, "G2", 5_010_800),
        _contact("K562", 2_000_000, "G1", 3_000_000),
        _contact("K562", 2_000_000, "G1", 3_001_500),
        _contact("HeLa", 5_000_000, "G2", 5_010_000),
    ]


@pytest.fixture
def sample_col_data():
    return pd.DataFrame(
        {"cell_type": ["K562", "K562", "HeLa"]},
        index=pd.Index(["K1", "K2", "H1"], name="sample"),
    )


@pytest.fixture
def enhancer_matrix(sample_col_data):
    """E1 expressed in K562, E2 in one K562 replicate only, E3 everywhere."""
    rows = IntervalCollection(
        pd.DataFrame(
            {
                "chrom": ["chr5", "chr5", "chr5"],
                "start": [5_009_500, 5_010_500, 8_000_000],
                "end": [5_009_800, 5_010_700, 8_000_300],
                "strand": ["*", "*", "*"],
                "row_id": ["E1", "E2", "E3"],
            }
        )
    )
    tpm = pd.DataFrame(
        np.array([[5.0, 5.0, 0.0], [5.0, 0.0, 0.0], [10.0, 10.0, 10.0]]),
        index=pd.Index(["E1", "E2", "E3"], name="row_id"),
        columns=list(sample_col_data.index),
    )
    return ExpressionMatrix(rows=rows, assays={"TPM": tpm}, col_data=sample_col_data)


@pytest.fixture
def tss_matrix(sample_col_data):
    """G1 expressed in K562, G2 only in HeLa."""
    rows = IntervalCollection(
        pd.DataFrame(
            {
                "chrom": ["chr5", "chr5"],
                "start": [4_999_990, 1_000_000],
                "end": [5_000_010, 1_000_010],
                "strand": ["+", "-"],
                "row_id": ["T1", "T2"],
                "gene_id": ["G1", "G2"],
            }
        )
    )
    tpm = pd.DataFrame(
        np.array([[2.0, 2.0, 0.0], [0.0, 0.0, 5.0]]),
        index=pd.Index(["T1", "T2"], name="row_id"),
        columns=list(sample_col_data.index),
    )
    return ExpressionMatrix(rows=rows, assays={"TPM": tpm}, col_data=sample_col_data)
