"""
Tests for contact ingestion and the contact-enhancer interaction join.

Tests cover:
- Contact validation, anchor flanking and trimming
- Enhancer matching with multiplicity
- DNA region merging, expression flags and per-enhancer aggregates
- Enhancer and non-enhancer distance sets
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest

from enhancerlink.config import Settings
from enhancerlink.core.contacts import ContactRecord, build_contacts
from enhancerlink.core.exceptions import InteractionJoinError, MissingColumnError
from enhancerlink.core.intervals import GenomicInterval, overlapping_mask
from enhancerlink.core.interactions import (
    InteractionJoinPipeline,
    JoinedInteraction,
    summarize_results,
)
from enhancerlink.core.qc import QCReport


@pytest.fixture
def contacts(contact_rows, genome):
    return build_contacts(contact_rows, genome)


@pytest.fixture
def pipeline(genome, enhancer_matrix, tss_matrix):
    return InteractionJoinPipeline(genome, enhancer_matrix, tss_matrix, min_tpm=1.0, min_samples=2)


@pytest.fixture
def k562(pipeline, contacts):
    return pipeline.run_group(contacts.groups()[("K562", "none")])


# ============================================================================
# Contacts
# ============================================================================


class TestBuildContacts:
    def test_anchors_flank_midpoints(self, contacts):
        record = next(contacts.records())
        assert record.rna_anchor == GenomicInterval("chr5", 4_999_000, 5_001_000, "+")
        assert record.dna_anchor == GenomicInterval("chr5", 5_009_000, 5_011_000, "*")

    def test_custom_flank(self, contact_rows, genome):
        record = next(build_contacts(contact_rows, genome, flank=500).records())
        assert (record.dna_anchor.start, record.dna_anchor.end) == (5_009_500, 5_010_500)

    def test_record_fields(self):
        names = [f.name for f in dataclasses.fields(ContactRecord)]
        assert names == [
            "cell_type",
            "treatment",
            "rna_anchor",
            "dna_anchor",
            "rna_strand",
            "rna_gene_id",
            "rna_class",
            "rna_feature_type",
            "dna_bin_id",
            "p_value",
            "p_adj",
        ]

    def test_bad_rows_counted_not_fatal(self, contact_rows, genome):
        bad = [
            dict(contact_rows[0], rna_midpoint=-5),
            dict(contact_rows[0], dna_midpoint="not a number"),
            {k: v for k, v in contact_rows[0].items() if k != "rna_gene_id"},
        ]
        report = QCReport()
        table = build_contacts(contact_rows + bad, genome, report=report)
        assert len(table) == len(contact_rows)
        assert report.get("contact_parse").dropped == 3

    def test_unknown_chromosome_dropped(self, contact_rows, genome):
        report = QCReport()
        table = build_contacts(contact_rows + [dict(contact_rows[0], dna_chrom="chrUn")], genome, report=report)
        assert len(table) == len(contact_rows)
        assert report.get("contact_chromosomes").dropped == 1

    def test_dataframe_with_missing_values(self, contact_rows, genome):
        df = pd.DataFrame(contact_rows)
        df.loc[0, "p_value"] = np.nan
        df.loc[1, "treatment"] = np.nan
        df.loc[2, "rna_strand"] = "."
        records = list(build_contacts(df, genome).records())
        assert len(records) == len(contact_rows)
        by_gene_mid = {(r.rna_gene_id, r.dna_anchor.midpoint): r for r in records}
        assert by_gene_mid[("G1", 5_010_000)].p_value is None
        assert by_gene_mid[("G2", 5_010_800)].treatment == "none"
        assert by_gene_mid[("G1", 3_000_000)].rna_strand == "*"

    def test_numeric_identifiers_are_strings(self, contact_rows, genome):
        df = pd.DataFrame([dict(contact_rows[0], rna_gene_id=7157, dna_bin_id=5010)])
        report = QCReport()
        records = list(build_contacts(df, genome, report=report).records())
        assert report.get("contact_parse").dropped == 0
        assert records[0].rna_gene_id == "7157"
        assert records[0].dna_bin_id == "5010"

    def test_groups(self, contacts):
        groups = contacts.groups()
        assert sorted(groups) == [("HeLa", "none"), ("K562", "none")]
        assert len(groups[("K562", "none")]) == 4

    def test_trim_clips_anchors(self, genome):
        row = {
            "cell_type": "K562",
            "rna_chrom": "chr2",
            "rna_midpoint": 400,
            "rna_gene_id": "G9",
            "dna_chrom": "chr2",
            "dna_midpoint": 499_500,
        }
        report = QCReport()
        trimmed = build_contacts([row], genome).trim(genome, report=report)
        record = next(trimmed.records())
        assert (record.rna_anchor.start, record.rna_anchor.end) == (1, 1_400)
        assert (record.dna_anchor.start, record.dna_anchor.end) == (498_500, 500_000)
        assert report.get("rna_anchor_trim").clipped == 1
        assert report.get("dna_anchor_trim").clipped == 1

    def test_no_valid_contacts(self, genome):
        table = build_contacts([{"cell_type": "K562"}], genome)
        assert len(table) == 0
        assert table.groups() == {}


# ============================================================================
# Interaction join
# ============================================================================


class TestRunGroup:
    def test_scenario_contact_matches_enhancer(self, genome, enhancer_matrix, tss_matrix):
        row = {
            "cell_type": "K562",
            "rna_chrom": "chr5",
            "rna_midpoint": 5_000_000,
            "rna_gene_id": "G1",
            "dna_chrom": "chr5",
            "dna_midpoint": 5_010_000,
        }
        contacts = build_contacts([row], genome, flank=1000)
        record = next(contacts.records())
        assert record.rna_anchor == GenomicInterval("chr5", 4_999_000, 5_001_000)
        assert record.dna_anchor == GenomicInterval("chr5", 5_009_000, 5_011_000)

        results = InteractionJoinPipeline(genome, enhancer_matrix, tss_matrix).run_group(contacts)
        assert "E1" in set(results.joined["enhancer_id"])

    def test_multiplicity_preserved(self, k562):
        pairs = sorted(zip(k562.joined["contact_id"], k562.joined["enhancer_id"]))
        assert pairs == [(0, "E1"), (0, "E2"), (1, "E1"), (1, "E2")]

    def test_matched_anchors_merged(self, k562):
        assert set(k562.joined["dna_region_id"]) == {"chr5:5009000-5011800"}
        assert set(k562.joined["dna_region_midpoint"]) == {5_010_400}

    def test_expression_flag(self, k562):
        expressed = k562.expressed
        assert list(zip(expressed["contact_id"], expressed["enhancer_id"])) == [(0, "E1")]

    def test_enhancer_stats(self, k562):
        stats = k562.enhancer_stats
        assert list(stats.columns) == ["enhancer_id", "n_dna_regions", "n_genes", "n_contacts"]
        assert stats.to_dict("records") == [
            {"enhancer_id": "E1", "n_dna_regions": 1, "n_genes": 1, "n_contacts": 1}
        ]

    def test_region_stats(self, k562):
        assert k562.region_stats.to_dict("records") == [
            {"dna_region_id": "chr5:5009000-5011800", "n_enhancers": 1}
        ]

    def test_enhancer_distances(self, k562):
        assert k562.enhancer_distances.tolist() == [10_400]

    def test_non_enhancer_set(self, k562):
        regions = k562.non_enhancer_regions
        assert list(zip(regions["start"], regions["end"])) == [(2_999_000, 3_002_500)]
        assert k562.non_enhancer_distances.tolist() == [1_000_750, 1_000_750]

    def test_non_enhancer_set_excludes_enhancers(self, k562, enhancer_matrix):
        assert not overlapping_mask(k562.non_enhancer_regions, enhancer_matrix.rows).any()

    def test_joined_records(self, k562):
        records = list(k562.joined_records())
        assert len(records) == 4
        first = records[0]
        assert isinstance(first, JoinedInteraction)
        assert first.contact.rna_gene_id == "G1"
        assert first.contact.p_adj == pytest.approx(0.01)
        assert first.enhancer_midpoint == (5_009_500 + 5_009_800) // 2
        assert first.rna_midpoint == 5_000_000
        assert first.distance == 10_400

    def test_trans_contacts_have_no_distance(self, pipeline, contact_rows, genome):
        trans = [
            dict(contact_rows[0], rna_chrom="chr2", rna_midpoint=400_000),
            dict(contact_rows[2], rna_chrom="chr2", rna_midpoint=100_000),
        ]
        contacts = build_contacts(contact_rows[:4] + trans, genome)
        results = pipeline.run_group(contacts)

        joined = results.joined
        trans_rows = joined[joined["rna_chrom"] == "chr2"]
        assert len(trans_rows) == 2
        assert trans_rows["distance"].isna().all()
        assert trans_rows["expressed"].any()
        assert joined.loc[joined["rna_chrom"] == "chr5", "distance"].notna().all()

        assert results.enhancer_distances.tolist() == [10_400]
        assert results.non_enhancer_distances.tolist() == [1_000_750, 1_000_750]
        assert [r.distance for r in results.joined_records() if r.contact.rna_anchor.chrom == "chr2"] == [None, None]

    def test_unexpressed_group_is_empty_aggregate(self, pipeline, contacts):
        hela = pipeline.run_group(contacts.groups()[("HeLa", "none")])
        assert len(hela.joined) == 2
        assert not hela.joined["expressed"].any()
        assert hela.is_empty
        assert len(hela.enhancer_distances) == 0

    def test_cell_type_without_columns(self, pipeline, contact_rows, genome):
        rows = [dict(r, cell_type="GM12878") for r in contact_rows[:2]]
        results = pipeline.run_group(build_contacts(rows, genome))
        assert results.is_empty
        assert len(results.joined) == 4

    def test_single_group_required(self, pipeline, contacts):
        with pytest.raises(InteractionJoinError):
            pipeline.run_group(contacts)

    def test_tss_rows_need_gene_ids(self, genome, enhancer_matrix):
        with pytest.raises(MissingColumnError):
            InteractionJoinPipeline(genome, enhancer_matrix, enhancer_matrix)


class TestRun:
    def test_all_groups(self, pipeline, contacts):
        results = pipeline.run(contacts)
        assert sorted(results) == [("HeLa", "none"), ("K562", "none")]
        assert results[("K562", "none")].enhancer_distances.tolist() == [10_400]

    def test_parallel_matches_sequential(self, genome, enhancer_matrix, tss_matrix, contacts):
        parallel = InteractionJoinPipeline(genome, enhancer_matrix, tss_matrix, max_workers=4).run(contacts)
        sequential = InteractionJoinPipeline(genome, enhancer_matrix, tss_matrix, max_workers=1).run(contacts)
        for key in sequential:
            pd.testing.assert_frame_equal(parallel[key].joined, sequential[key].joined)

    def test_from_settings(self, genome, enhancer_matrix, tss_matrix):
        pipeline = InteractionJoinPipeline.from_settings(
            genome, enhancer_matrix, tss_matrix, Settings(expression_min_samples=3)
        )
        assert pipeline.min_samples == 3

    def test_summary(self, pipeline, contacts):
        summary = summarize_results(pipeline.run(contacts))
        k562 = summary[summary["cell_type"] == "K562"].iloc[0]
        assert k562["joined"] == 4
        assert k562["expressed"] == 1
        assert k562["non_enhancer_regions"] == 1

    def test_empty_contacts(self, pipeline, genome):
        assert pipeline.run(build_contacts([], genome)) == {}
