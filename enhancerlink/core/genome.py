"""
Reference genome table.

A GenomeInfo is the ordered chromosome-length table every other component
validates against. It is built once, before any parallel stage, and never
mutated afterwards.
"""

import logging
from typing import Dict, Iterable, Iterator, List, Tuple

import pandas as pd

from .exceptions import GenomeInfoError, UnknownChromosomeError

logger = logging.getLogger(__name__)


class GenomeInfo:
    """Immutable, ordered (chromosome, length) table."""

    __slots__ = ("_names", "_lengths", "_order", "name")

    def __init__(self, pairs: Iterable[Tuple[str, int]], name: str = "custom"):
        names: List[str] = []
        lengths: Dict[str, int] = {}
        for chrom, length in pairs:
            chrom = str(chrom)
            try:
                length = int(length)
            except (TypeError, ValueError) as e:
                raise GenomeInfoError(f"Non-integer length for {chrom}: {length!r}") from e
            if chrom in lengths:
                raise GenomeInfoError(f"Duplicate chromosome in genome table: {chrom}")
            if length <= 0:
                raise GenomeInfoError(f"Chromosome {chrom} has non-positive length {length}")
            names.append(chrom)
            lengths[chrom] = length

        if not names:
            raise GenomeInfoError("Genome table is empty")

        object.__setattr__(self, "_names", tuple(names))
        object.__setattr__(self, "_lengths", lengths)
        object.__setattr__(self, "_order", {c: i for i, c in enumerate(names)})
        object.__setattr__(self, "name", name)

    def __setattr__(self, key, value):
        raise AttributeError("GenomeInfo is immutable")

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, int]], name: str = "custom") -> "GenomeInfo":
        return cls(pairs, name=name)

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        chrom_col: str = "chrom",
        length_col: str = "length",
        name: str = "custom",
    ) -> "GenomeInfo":
        """Build from a chrom.sizes-style DataFrame."""
        for col in (chrom_col, length_col):
            if col not in df.columns:
                raise GenomeInfoError(f"Genome table is missing column '{col}'")
        return cls(zip(df[chrom_col], df[length_col]), name=name)

    @property
    def chromosomes(self) -> Tuple[str, ...]:
        return self._names

    def __contains__(self, chrom) -> bool:
        return chrom in self._lengths

    def __iter__(self) -> Iterator[Tuple[str, int]]:
        for chrom in self._names:
            yield chrom, self._lengths[chrom]

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other) -> bool:
        return isinstance(other, GenomeInfo) and tuple(self) == tuple(other)

    def __hash__(self) -> int:
        return hash(tuple(self))

    def __repr__(self) -> str:
        return f"GenomeInfo(name={self.name!r}, n_chromosomes={len(self)})"

    def length(self, chrom: str) -> int:
        """Length of a chromosome; raises UnknownChromosomeError if absent."""
        try:
            return self._lengths[chrom]
        except KeyError:
            raise UnknownChromosomeError(chrom, list(self._names)) from None

    def lengths(self) -> Dict[str, int]:
        return dict(self._lengths)

    def sort_key(self, chrom: str) -> int:
        """Position of a chromosome in table order (unknown names sort last)."""
        return self._order.get(chrom, len(self._names))

    def validate_chromosomes(self, chroms: Iterable[str]) -> None:
        """Raise UnknownChromosomeError for the first name not in the table."""
        for chrom in pd.unique(pd.Series(list(chroms), dtype=object)):
            if chrom not in self._lengths:
                raise UnknownChromosomeError(chrom, list(self._names))

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"chrom": list(self._names), "length": [self._lengths[c] for c in self._names]}
        )
