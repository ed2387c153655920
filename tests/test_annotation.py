"""Tests for the transcript model and transcript-type annotation."""

import pandas as pd
import pytest

from enhancerlink.config import Settings
from enhancerlink.core.annotation import (
    AnnotationOverlay,
    TranscriptModel,
    annotate_regions,
)
from enhancerlink.core.exceptions import (
    AnnotationError,
    TranscriptModelError,
    UnknownChromosomeError,
)
from enhancerlink.core.intervals import IntervalCollection


def _regions(rows, peaks=None):
    df = pd.DataFrame(rows, columns=["chrom", "start", "end", "strand"])
    if peaks is not None:
        df["peak"] = peaks
    return IntervalCollection(df)


@pytest.fixture
def overlay(transcript_model):
    return AnnotationOverlay(transcript_model, tss_window=100)


class TestTranscriptModel:
    def test_feature_counts(self, transcript_model):
        assert len(transcript_model.transcripts) == 2
        assert len(transcript_model.features("exon")) == 5
        assert len(transcript_model.features("fiveUTR")) == 2

    def test_promoters_follow_strand(self, transcript_model):
        promoters = transcript_model.promoters(100)
        assert list(zip(promoters["chrom"], promoters["start"], promoters["end"])) == [
            ("chr1", 9_900, 10_100),
            ("chr2", 59_900, 60_100),
        ]

    def test_promoter_clipped_to_chromosome(self, genome):
        df = pd.DataFrame(
            [("chr1", 50, 500, "+", "transcript", "T9")],
            columns=["chrom", "start", "end", "strand", "feature_type", "transcript_id"],
        )
        promoters = TranscriptModel.from_dataframe(df, genome).promoters(100)
        assert promoters.df.iloc[0]["start"] == 1

    def test_feature_aliases(self, transcript_df, genome):
        df = transcript_df.copy()
        df["feature_type"] = df["feature_type"].replace({"fiveUTR": "five_prime_utr", "threeUTR": "3UTR"})
        model = TranscriptModel.from_dataframe(df, genome)
        assert len(model.features("fiveUTR")) == 2
        assert len(model.features("threeUTR")) == 2

    def test_ignored_features(self, transcript_df, genome):
        cds = pd.DataFrame(
            [("chr1", 10_101, 10_500, "+", "CDS", "T1", "G1")], columns=transcript_df.columns
        )
        model = TranscriptModel.from_dataframe(pd.concat([transcript_df, cds]), genome)
        assert len(model.features_all) == len(transcript_df)

    def test_unknown_feature_type(self, transcript_df, genome):
        df = transcript_df.copy()
        df.loc[0, "feature_type"] = "enhancer"
        with pytest.raises(TranscriptModelError):
            TranscriptModel.from_dataframe(df, genome)

    def test_malformed_record(self, transcript_df, genome):
        df = transcript_df.copy()
        df.loc[1, "start"] = 20_000
        with pytest.raises(TranscriptModelError):
            TranscriptModel.from_dataframe(df, genome)

    def test_unstranded_transcript(self, transcript_df, genome):
        df = transcript_df.copy()
        df.loc[0, "strand"] = "."
        with pytest.raises(TranscriptModelError):
            TranscriptModel.from_dataframe(df, genome)

    def test_missing_column(self, transcript_df, genome):
        with pytest.raises(TranscriptModelError):
            TranscriptModel.from_dataframe(transcript_df.drop(columns="transcript_id"), genome)

    def test_unknown_chromosome_is_fatal(self, transcript_df, genome):
        df = transcript_df.copy()
        df.loc[0, "chrom"] = "chrUn"
        with pytest.raises(UnknownChromosomeError):
            TranscriptModel.from_dataframe(df, genome)

    def test_gene_lookup(self, transcript_model):
        assert transcript_model.gene_by_transcript == {"T1": "G1", "T2": "G2"}
        assert transcript_model.tss_by_transcript == {"T1": 10_000, "T2": 60_000}


class TestClassify:
    @pytest.mark.parametrize(
        "region,expected",
        [
            (("chr1", 9_950, 9_960, "+"), "promoter"),
            (("chr1", 10_050, 10_060, "+"), "promoter"),
            (("chr1", 10_200, 10_300, "+"), "exon"),
            (("chr1", 19_900, 19_950, "+"), "threeUTR"),
            (("chr1", 12_000, 12_100, "+"), "intron"),
            (("chr1", 12_000, 12_100, "*"), "intron"),
            (("chr1", 12_000, 12_100, "-"), "intergenic"),
            (("chr1", 500_000, 500_100, "*"), "intergenic"),
            (("chr2", 59_950, 59_960, "-"), "promoter"),
            (("chr2", 59_000, 59_100, "-"), "exon"),
            (("chr2", 50_050, 50_060, "-"), "threeUTR"),
        ],
    )
    def test_labels(self, overlay, region, expected):
        assert overlay.classify(_regions([region])).tolist() == [expected]

    def test_five_utr_beats_exon(self, genome):
        df = pd.DataFrame(
            [
                ("chr1", 10_000, 20_000, "+", "transcript", "T1"),
                ("chr1", 10_000, 11_000, "+", "exon", "T1"),
                ("chr1", 10_000, 10_800, "+", "fiveUTR", "T1"),
            ],
            columns=["chrom", "start", "end", "strand", "feature_type", "transcript_id"],
        )
        overlay = AnnotationOverlay(TranscriptModel.from_dataframe(df, genome), tss_window=100)
        assert overlay.classify(_regions([("chr1", 10_500, 10_600, "+")])).tolist() == ["fiveUTR"]

    def test_priority_independent_of_record_order(self, transcript_df, genome, overlay):
        shuffled = transcript_df.sample(frac=1.0, random_state=5).reset_index(drop=True)
        other = AnnotationOverlay(TranscriptModel.from_dataframe(shuffled, genome), tss_window=100)
        regions = _regions(
            [
                ("chr1", 10_050, 10_060, "+"),
                ("chr1", 19_900, 19_950, "+"),
                ("chr1", 10_400, 10_600, "*"),
            ]
        )
        assert other.classify(regions).tolist() == overlay.classify(regions).tolist()

    def test_tss_window_changes_promoter(self, transcript_model):
        region = _regions([("chr1", 9_700, 9_750, "+")])
        assert AnnotationOverlay(transcript_model, tss_window=100).classify(region).tolist() == ["intergenic"]
        assert AnnotationOverlay(transcript_model, tss_window=300).classify(region).tolist() == ["promoter"]

    def test_peak_requires_peak_column(self, overlay):
        with pytest.raises(AnnotationError):
            overlay.classify(_regions([("chr1", 1, 10, "*")]), use_peak=True)

    def test_invalid_priority(self, transcript_model):
        with pytest.raises(AnnotationError):
            AnnotationOverlay(transcript_model, priority=("exon", "promoter"))


class TestAnnotate:
    def test_region_and_peak_labels(self, overlay):
        regions = _regions([("chr1", 10_400, 12_000, "*"), ("chr1", 12_000, 12_400, "*")], peaks=[11_000, 12_100])
        annotated = overlay.annotate(regions)
        assert annotated["tx_type"].tolist() == ["exon", "intron"]
        assert annotated["peak_tx_type"].tolist() == ["intron", "intron"]

    def test_without_peak(self, overlay):
        annotated = overlay.annotate(_regions([("chr1", 12_000, 12_400, "*")]))
        assert "tx_type" in annotated.columns
        assert "peak_tx_type" not in annotated.columns

    def test_convenience_function(self, transcript_model):
        annotated = annotate_regions(_regions([("chr1", 9_950, 9_960, "+")]), transcript_model)
        assert annotated["tx_type"].tolist() == ["promoter"]

    def test_from_settings(self, transcript_model):
        overlay = AnnotationOverlay.from_settings(transcript_model, Settings(tss_window=250))
        assert overlay.tss_window == 250

    def test_empty_regions(self, overlay):
        annotated = overlay.annotate(IntervalCollection.empty(metadata_columns=["peak"]))
        assert len(annotated) == 0


class TestCandidateEnhancers:
    def test_filter(self, overlay):
        clusters = _regions(
            [
                ("chr1", 12_000, 12_400, "*"),
                ("chr1", 10_200, 10_300, "*"),
                ("chr1", 9_000, 9_950, "*"),
                ("chr1", 19_850, 19_900, "*"),
                ("chr1", 600_000, 600_400, "*"),
            ]
        ).with_columns(cluster_id=["intron", "exon", "promoter", "utr", "intergenic"])
        kept = overlay.filter_candidate_enhancers(clusters)
        assert kept["cluster_id"].tolist() == ["intron", "intergenic"]

    def test_custom_exclusion(self, overlay):
        clusters = _regions([("chr1", 10_200, 10_300, "*")])
        assert len(overlay.filter_candidate_enhancers(clusters, excluded=("promoter",))) == 1

    def test_unknown_exclusion(self, overlay):
        with pytest.raises(AnnotationError):
            overlay.filter_candidate_enhancers(_regions([("chr1", 1, 10, "*")]), excluded=("enhancer",))


class TestAssignGeneIds:
    def test_nearest_transcript_gene(self, overlay):
        regions = _regions(
            [
                ("chr1", 10_000, 10_010, "+"),
                ("chr2", 60_050, 60_060, "-"),
                ("chr1", 700_000, 700_010, "+"),
                ("chr1", 12_000, 12_010, "-"),
            ],
            peaks=[10_005, 60_055, 700_005, 12_005],
        )
        genes = overlay.assign_gene_ids(regions)["gene_id"].tolist()
        assert genes == ["G1", "G2", None, None]
