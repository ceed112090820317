"""
Immutable records passed between the readers, the engine and the writers.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Term:
    """A named gene set.

    Args:
        id: Identifier, unique within a collection
        name: Display name
        genes: Gene identifiers; duplicates are dropped keeping first-seen order
    """

    id: str
    name: str
    genes: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "genes", tuple(dict.fromkeys(self.genes)))

    @property
    def size(self) -> int:
        return len(self.genes)

    @property
    def gene_set(self) -> frozenset:
        return frozenset(self.genes)

    def restrict(self, universe: Iterable[str]) -> "Term":
        """Return a copy of the term holding only genes found in ``universe``."""
        universe = universe if isinstance(universe, (set, frozenset)) else set(universe)
        return Term(self.id, self.name, tuple(g for g in self.genes if g in universe))


@dataclass(frozen=True)
class EnrichmentResult:
    """Outcome of testing one term.

    ``column_genes`` accepts a mapping of dataset column to leading-edge genes
    (None where the column does not support the term) and is stored as a
    tuple of pairs in column order.
    """

    term: Term
    combined_p: float
    adjusted_p: float
    overlap: Tuple[str, ...]
    evidence: Tuple[str, ...]
    column_genes: Tuple[Tuple[str, Optional[Tuple[str, ...]]], ...] = ()

    def __post_init__(self):
        pairs = self.column_genes.items() if isinstance(self.column_genes, Mapping) else self.column_genes
        object.__setattr__(self, "overlap", tuple(self.overlap))
        object.__setattr__(self, "evidence", tuple(self.evidence))
        object.__setattr__(self, "column_genes", tuple(
            (column, None if genes is None else tuple(genes)) for column, genes in pairs
        ))

    @property
    def genes_by_column(self) -> Mapping[str, Optional[Tuple[str, ...]]]:
        """Read-only view of the leading-edge genes per dataset column."""
        return MappingProxyType(dict(self.column_genes))

    @property
    def is_combined_only(self) -> bool:
        return self.evidence == ("combined",)
