"""End-to-end tests for region calling."""

import pytest

from enhancerlink.config import Settings
from enhancerlink.core.calling import call_regions
from enhancerlink.core.qc import QCReport


@pytest.fixture
def positions(make_positions):
    """Divergent signal at an intergenic site and at the T1 promoter, plus one unreplicated position."""
    return make_positions(
        [
            ("chr1", 9_990, "-", (3, 3)),
            ("chr1", 10_000, "+", (3, 3)),
            ("chr1", 300_000, "-", (3, 3)),
            ("chr1", 300_010, "+", (3, 3)),
            ("chr2", 200_000, "+", (5, 0)),
        ],
        samples=("s1", "s2"),
    )


@pytest.fixture
def called(positions, genome, transcript_model):
    return call_regions(positions, genome, transcript_model, settings=Settings(max_workers=1), report=QCReport())


class TestCallRegions:
    def test_enhancers_exclude_promoters(self, called):
        enhancers = called.enhancers.rows
        assert list(enhancers["cluster_id"]) == ["chr1:299801-300209"]
        assert list(enhancers["tx_type"]) == ["intergenic"]
        assert called.report.get("candidate_enhancers").dropped == 1
        assert called.report.get("candidate_enhancers").input_records == 2

    def test_enhancer_quantification(self, called):
        assert called.enhancers.assay("counts").loc["chr1:299801-300209"].tolist() == [6, 6]
        assert called.enhancers.assay("TPM").loc["chr1:299801-300209"].tolist() == pytest.approx([1e6, 1e6])
        assert called.enhancers.rows["support"].tolist() == [2]

    def test_tss_clusters(self, called):
        tss = called.tss.rows
        assert list(tss["cluster_id"]) == ["chr1:9990-9990;-", "chr1:10000-10000;+"]
        assert list(tss["tx_type"]) == ["intergenic", "promoter"]
        assert list(tss["gene_id"]) == [None, "G1"]

    def test_tss_excludes_enhancer_overlaps(self, called):
        assert not any(cid.startswith("chr1:3000") for cid in called.tss.rows["cluster_id"])

    def test_positions_pooled_on_tpm(self, called):
        assert "TPM" in called.positions.assays
        assert called.positions.pooled is not None

    def test_summary(self, called):
        summary = called.summary()
        assert summary["positions"] == 5
        assert summary["enhancers"] == 1
        assert summary["tss"] == 2
