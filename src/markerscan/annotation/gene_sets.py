"""
Gene-set collections and term hierarchies.

A ``GeneSetCollection`` maps term identifiers (GO terms, KEGG pathways,
MSigDB sets) to the gene identifiers annotated to them. A ``TermHierarchy``
records parent/child relations between terms (the GO DAG), which the
conditional enrichment test walks children-first.

Collections are versioned by a free-text ``source`` string naming the
database snapshot they were built from (e.g. ``"c5.go.bp.v2023.2.Hs"``), so
enrichment results can be traced back to an annotation release.

File formats:
    GMT (MSigDB): ``term<TAB>description<TAB>gene1<TAB>gene2...``
    Hierarchy:    ``parent<TAB>child`` one edge per line, ``#`` comments

Examples:
    >>> collection = load_gmt("c5.go.bp.v2023.2.Hs.entrez.gmt")
    >>> hierarchy = load_term_hierarchy("go_bp_edges.tsv")
    >>> collection = propagate_annotations(collection, hierarchy)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Mapping

__all__ = [
    'GeneSetCollection',
    'TermHierarchy',
    'load_gmt',
    'load_term_hierarchy',
    'propagate_annotations',
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneSetCollection:
    """Immutable term -> gene set mapping.

    Attributes:
        sets: Term id -> frozenset of gene ids
        descriptions: Term id -> human-readable name
        source: Database snapshot the sets come from
    """

    sets: Mapping[str, frozenset[str]]
    descriptions: Mapping[str, str] = field(default_factory=dict)
    source: str = "unknown"

    @classmethod
    def from_dict(
        cls,
        sets: Mapping[str, Iterable[str]],
        descriptions: Mapping[str, str] | None = None,
        source: str = "unknown",
    ) -> GeneSetCollection:
        return cls(
            sets={str(term): frozenset(str(g) for g in genes) for term, genes in sets.items()},
            descriptions=dict(descriptions or {}),
            source=source,
        )

    def __len__(self) -> int:
        return len(self.sets)

    def __iter__(self) -> Iterator[str]:
        return iter(self.sets)

    def __contains__(self, term: str) -> bool:
        return term in self.sets

    def genes(self, term: str) -> frozenset[str]:
        if term not in self.sets:
            raise KeyError(f"Unknown term {term!r} in collection {self.source!r}")
        return self.sets[term]

    def describe(self, term: str) -> str:
        return self.descriptions.get(term, "")

    @property
    def all_genes(self) -> frozenset[str]:
        return frozenset().union(*self.sets.values()) if self.sets else frozenset()

    def restrict(self, universe: Iterable[str]) -> GeneSetCollection:
        """Intersect every set with ``universe``; empty sets are dropped."""
        universe = frozenset(universe)
        restricted = {t: g & universe for t, g in self.sets.items()}
        return GeneSetCollection(
            sets={t: g for t, g in restricted.items() if g},
            descriptions=self.descriptions,
            source=self.source,
        )

    def filter_size(self, min_size: int = 1, max_size: int | None = None) -> GeneSetCollection:
        kept = {
            t: g for t, g in self.sets.items()
            if len(g) >= min_size and (max_size is None or len(g) <= max_size)
        }
        return GeneSetCollection(sets=kept, descriptions=self.descriptions, source=self.source)


@dataclass(frozen=True)
class TermHierarchy:
    """Parent/child relations between terms (a DAG).

    Attributes:
        children: Parent id -> frozenset of direct child ids
    """

    children: Mapping[str, frozenset[str]]

    @classmethod
    def from_edges(cls, edges: Iterable[tuple[str, str]]) -> TermHierarchy:
        """Build from (parent, child) pairs."""
        children: dict[str, set[str]] = defaultdict(set)
        for parent, child in edges:
            if parent == child:
                raise ValueError(f"Term {parent!r} cannot be its own child")
            children[str(parent)].add(str(child))
        hierarchy = cls(children={p: frozenset(c) for p, c in children.items()})
        hierarchy.children_first(hierarchy.terms)
        return hierarchy

    @property
    def terms(self) -> frozenset[str]:
        kids = frozenset().union(*self.children.values()) if self.children else frozenset()
        return frozenset(self.children) | kids

    def children_of(self, term: str) -> frozenset[str]:
        return self.children.get(term, frozenset())

    def parents_of(self, term: str) -> frozenset[str]:
        return frozenset(p for p, kids in self.children.items() if term in kids)

    def descendants(self, term: str) -> frozenset[str]:
        seen: set[str] = set()
        stack = list(self.children_of(term))
        while stack:
            node = stack.pop()
            if node not in seen:
                seen.add(node)
                stack.extend(self.children_of(node))
        return frozenset(seen)

    def children_first(self, terms: Iterable[str]) -> list[str]:
        """
        Order ``terms`` so that every term comes after all of its descendants.

        Ties are broken by term id so the order is deterministic.

        Raises:
            ValueError: If the relations contain a cycle
        """
        terms = set(terms)
        order: list[str] = []
        state: dict[str, int] = {}

        def visit(node: str) -> None:
            # Iterative post-order DFS; state 1 = on stack, 2 = done
            stack = [(node, iter(sorted(self.children_of(node))))]
            state[node] = 1
            while stack:
                current, kids = stack[-1]
                advanced = False
                for kid in kids:
                    mark = state.get(kid, 0)
                    if mark == 1:
                        raise ValueError(f"Term hierarchy contains a cycle through {kid!r}")
                    if mark == 0:
                        state[kid] = 1
                        stack.append((kid, iter(sorted(self.children_of(kid)))))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    state[current] = 2
                    order.append(current)

        for node in sorted(terms | set(self.children)):
            if state.get(node, 0) == 0:
                visit(node)
        return [t for t in order if t in terms]


def load_gmt(path: Path | str, source: str | None = None) -> GeneSetCollection:
    """
    Load an MSigDB GMT file.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: On lines with fewer than two fields or duplicate terms
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene set file not found: {path}")

    sets: dict[str, frozenset[str]] = {}
    descriptions: dict[str, str] = {}
    with open(path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.rstrip('\n\r')
            if not line or line.startswith('#'):
                continue
            fields = line.split('\t')
            if len(fields) < 2:
                raise ValueError(f"{path}:{line_no}: expected term and description fields")
            term = fields[0]
            if term in sets:
                raise ValueError(f"{path}:{line_no}: duplicate term {term!r}")
            sets[term] = frozenset(g for g in fields[2:] if g)
            descriptions[term] = fields[1]

    logger.info(f"Loaded {len(sets)} gene sets from {path.name}")
    return GeneSetCollection(sets=sets, descriptions=descriptions, source=source or path.stem)


def load_term_hierarchy(path: Path | str) -> TermHierarchy:
    """Load tab-delimited ``parent<TAB>child`` edges."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Hierarchy file not found: {path}")

    edges = []
    with open(path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            fields = line.split('\t')
            if len(fields) < 2:
                raise ValueError(f"{path}:{line_no}: expected 'parent<TAB>child'")
            edges.append((fields[0].strip(), fields[1].strip()))

    hierarchy = TermHierarchy.from_edges(edges)
    logger.info(f"Loaded {len(edges)} term relations over {len(hierarchy.terms)} terms")
    return hierarchy


def propagate_annotations(
    collection: GeneSetCollection,
    hierarchy: TermHierarchy,
) -> GeneSetCollection:
    """
    Add every term's descendants' genes to the term (true-path rule).

    Terms that only appear in the hierarchy gain a set if any descendant is
    annotated.
    """
    propagated: dict[str, frozenset[str]] = dict(collection.sets)
    for term in hierarchy.children_first(hierarchy.terms | set(collection.sets)):
        genes = set(propagated.get(term, frozenset()))
        for child in hierarchy.children_of(term):
            genes |= propagated.get(child, frozenset())
        if genes:
            propagated[term] = frozenset(genes)
    return GeneSetCollection(
        sets=propagated,
        descriptions=collection.descriptions,
        source=collection.source,
    )
