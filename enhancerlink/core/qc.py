"""
Quality-control bookkeeping for EnhancerLink runs.

Every stage that can clip or drop records reports its counts here so that
data loss is always observable:
- records in / kept
- records clipped to chromosome bounds
- records dropped (out of bounds, unknown chromosome, unparseable)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class StageCounts:
    """Record counts for one processing stage."""

    stage: str
    input_records: int = 0
    kept: int = 0
    clipped: int = 0
    dropped: int = 0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            "stage": self.stage,
            "input_records": self.input_records,
            "kept": self.kept,
            "clipped": self.clipped,
            "dropped": self.dropped,
            "warnings": "; ".join(self.warnings),
        }


class QCReport:
    """Per-stage ledger of clipped and dropped records."""

    def __init__(self, name: str = "run"):
        self.name = name
        self.stages: Dict[str, StageCounts] = {}

    def record(
        self,
        stage: str,
        input_records: int,
        kept: int,
        clipped: int = 0,
        dropped: int = 0,
        warning: Optional[str] = None,
    ) -> StageCounts:
        """Add counts for a stage, accumulating if the stage was seen before."""
        counts = self.stages.setdefault(stage, StageCounts(stage=stage))
        counts.input_records += int(input_records)
        counts.kept += int(kept)
        counts.clipped += int(clipped)
        counts.dropped += int(dropped)
        if warning:
            counts.warnings.append(warning)

        if dropped or clipped:
            logger.warning(
                f"[{self.name}] {stage}: {dropped} dropped, {clipped} clipped "
                f"of {input_records} records"
            )
        else:
            logger.debug(f"[{self.name}] {stage}: kept {kept} of {input_records} records")
        return counts

    def merge(self, other: "QCReport") -> "QCReport":
        """Fold another report's counts into this one."""
        for counts in other.stages.values():
            target = self.stages.setdefault(counts.stage, StageCounts(stage=counts.stage))
            target.input_records += counts.input_records
            target.kept += counts.kept
            target.clipped += counts.clipped
            target.dropped += counts.dropped
            target.warnings.extend(counts.warnings)
        return self

    def get(self, stage: str) -> StageCounts:
        return self.stages.get(stage, StageCounts(stage=stage))

    @property
    def total_dropped(self) -> int:
        return sum(c.dropped for c in self.stages.values())

    @property
    def total_clipped(self) -> int:
        return sum(c.clipped for c in self.stages.values())

    def to_frame(self) -> pd.DataFrame:
        """Tabulate the ledger, one row per stage in recording order."""
        rows = [c.to_dict() for c in self.stages.values()]
        return pd.DataFrame(
            rows,
            columns=["stage", "input_records", "kept", "clipped", "dropped", "warnings"],
        )
