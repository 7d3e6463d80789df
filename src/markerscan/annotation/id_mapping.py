"""
Gene identifier translation

Handles conversion between identifier systems:
- Affymetrix probe set ID (1007_s_at, 207254_at, etc.)
- Entrez Gene ID (7157, etc.)
- Ensembl Gene ID (ENSG00000xxxxxx)
- Gene Symbol (APP, PSEN1, etc.)
- UniProt ID (P05067, etc.)

Remote translation uses mygene.info (probe sets are matched through its
``reporter`` field). Queries are batched, synchronous and not retried; a
local annotation table can be used instead through ``TableIDMapper``.

Examples:
    >>> from markerscan.annotation.id_mapping import MyGeneInfoMapper, translate_ids
    >>>
    >>> mapper = MyGeneInfoMapper()
    >>> mapping = translate_ids(
    ...     ['207254_at', '1007_s_at'],
    ...     mapper,
    ...     source_type='probe',
    ...     target_type='entrez',
    ... )
    >>> print(mapping)
    {'207254_at': '6804', '1007_s_at': '780'}
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from markerscan.annotation.gene_sets import GeneSetCollection

__all__ = [
    'ID_TYPES',
    'IDMapper',
    'MyGeneInfoMapper',
    'TableIDMapper',
    'translate_ids',
]

logger = logging.getLogger(__name__)

# Identifier type -> mygene.info field
ID_TYPES = {
    'probe': 'reporter',
    'entrez': 'entrezgene',
    'ensembl_gene': 'ensembl.gene',
    'symbol': 'symbol',
    'uniprot': 'uniprot',
}


class IDMapper(ABC):
    """Abstract interface for gene ID mapping"""

    @abstractmethod
    def map_ids(
        self,
        source_ids: List[str],
        source_type: str,
        target_type: str,
    ) -> Dict[str, str]:
        """
        Map gene IDs from source to target type

        Args:
            source_ids: List of source IDs
            source_type: One of ID_TYPES
            target_type: One of ID_TYPES

        Returns:
            Dict mapping source_id → target_id (only successful mappings)
        """


def _extract_field(item: dict, dotted: str) -> Optional[str]:
    """Follow a dotted mygene field; the first element is used for lists."""
    value: Any = item
    for part in dotted.split('.'):
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        # uniprot: {'Swiss-Prot': 'P05067', 'TrEMBL': [...]}
        value = value.get('Swiss-Prot') or next(iter(value.values()), None)
        if isinstance(value, list):
            value = value[0] if value else None
    return str(value) if value not in (None, '') else None


class MyGeneInfoMapper(IDMapper):
    """
    Uses the mygene.info API for ID mapping with batch queries

    Usage:
        mapper = MyGeneInfoMapper()
        mapping = mapper.map_ids(
            ['207254_at', '1007_s_at'],
            source_type='probe',
            target_type='symbol'
        )
    """

    def __init__(self, species: str = 'human', batch_size: int = 1000, client=None):
        """
        Args:
            species: Species to query
            batch_size: IDs per querymany request
            client: A ``mygene.MyGeneInfo`` instance (created if None)
        """
        if client is None:
            import mygene
            client = mygene.MyGeneInfo()
        self.mg = client
        self.species = species
        self.batch_size = batch_size

    def map_ids(
        self,
        source_ids: List[str],
        source_type: str = 'probe',
        target_type: str = 'entrez',
    ) -> Dict[str, str]:
        """
        Map IDs using mygene.info batch queries

        Returns:
            Dict mapping source_id → target_id (only successful mappings)

        Raises:
            ValueError: For unsupported identifier types
        """
        source_field = ID_TYPES.get(source_type)
        target_field = ID_TYPES.get(target_type)
        if not source_field or not target_field:
            raise ValueError(
                f"Unsupported ID type: {source_type} or {target_type}; choose from {list(ID_TYPES)}"
            )

        source_ids = list(dict.fromkeys(str(i) for i in source_ids))
        batches = [
            source_ids[i:i + self.batch_size]
            for i in range(0, len(source_ids), self.batch_size)
        ]
        logger.info(f"Starting ID mapping: {len(source_ids)} IDs in {len(batches)} batches")

        results: Dict[str, str] = {}
        for batch_num, batch in enumerate(batches):
            logger.debug(f"Querying batch {batch_num + 1}/{len(batches)} ({len(batch)} IDs)")
            response = self.mg.querymany(
                batch,
                scopes=source_field,
                fields=target_field,
                species=self.species,
                returnall=True,
            )
            for item in response['out']:
                source_id = item.get('query')
                if item.get('notfound') or source_id is None or source_id in results:
                    continue
                target = _extract_field(item, target_field)
                if target:
                    results[source_id] = target

        if source_ids:
            logger.info(
                f"ID mapping complete: {len(results)}/{len(source_ids)} IDs mapped "
                f"({len(results) / len(source_ids) * 100:.1f}%)"
            )
        return results

    def go_annotations(
        self,
        entrez_ids: Iterable[str],
        category: str = 'BP',
        evidence_exclude: Iterable[str] = ('IEA',),
    ) -> GeneSetCollection:
        """
        Build a GO gene-set collection for the given Entrez genes.

        Args:
            entrez_ids: Genes to annotate (normally the array universe)
            category: GO namespace: "BP", "MF" or "CC"
            evidence_exclude: Evidence codes to ignore

        Returns:
            GeneSetCollection of direct annotations; combine with a term
            hierarchy through ``propagate_annotations``.
        """
        if category not in ('BP', 'MF', 'CC'):
            raise ValueError(f"Unknown GO category {category!r}")
        excluded = set(evidence_exclude)
        entrez_ids = list(dict.fromkeys(str(i) for i in entrez_ids))

        sets: Dict[str, set] = {}
        descriptions: Dict[str, str] = {}
        for start in range(0, len(entrez_ids), self.batch_size):
            batch = entrez_ids[start:start + self.batch_size]
            for item in self.mg.getgenes(batch, fields=f'go.{category}'):
                gene = str(item.get('query', item.get('_id', '')))
                annotations = (item.get('go') or {}).get(category) or []
                if isinstance(annotations, dict):
                    annotations = [annotations]
                for ann in annotations:
                    if ann.get('evidence') in excluded or 'id' not in ann:
                        continue
                    sets.setdefault(ann['id'], set()).add(gene)
                    descriptions.setdefault(ann['id'], ann.get('term', ''))

        logger.info(f"GO {category}: {len(sets)} terms for {len(entrez_ids)} genes")
        return GeneSetCollection.from_dict(
            sets, descriptions=descriptions, source=f"mygene.info GO:{category}"
        )


class TableIDMapper(IDMapper):
    """
    Map identifiers through a local annotation table (e.g. a platform GPL
    table with ``ID`` and ``ENTREZ_GENE_ID`` columns).

    Args:
        table: Annotation table
        columns: ID type -> column name. Multi-valued cells such as
            ``"780 /// 100616237"`` map to their first value.
    """

    def __init__(self, table: pd.DataFrame, columns: Dict[str, str]):
        missing = [c for c in columns.values() if c not in table.columns]
        if missing:
            raise ValueError(f"Annotation table lacks columns {missing}")
        self.table = table
        self.columns = dict(columns)

    def map_ids(
        self,
        source_ids: List[str],
        source_type: str = 'probe',
        target_type: str = 'entrez',
    ) -> Dict[str, str]:
        if source_type not in self.columns or target_type not in self.columns:
            raise ValueError(
                f"Table maps {list(self.columns)}, not {source_type} -> {target_type}"
            )
        source = self.table[self.columns[source_type]].astype(str)
        target = self.table[self.columns[target_type]]
        lookup: Dict[str, str] = {}
        for s, t in zip(source, target):
            if pd.isna(t) or s in lookup:
                continue
            first = str(t).split('///')[0].strip()
            if first.endswith('.0') and first[:-2].isdigit():
                first = first[:-2]
            if first:
                lookup[s] = first
        return {str(i): lookup[str(i)] for i in source_ids if str(i) in lookup}


def translate_ids(
    ids: Iterable[str],
    mapper: IDMapper,
    source_type: str = 'probe',
    target_type: str = 'entrez',
) -> Dict[str, str]:
    """
    Translate identifiers and report how many could not be mapped.

    Returns:
        Dict source_id -> target_id for mapped ids only
    """
    ids = list(dict.fromkeys(str(i) for i in ids))
    mapping = mapper.map_ids(ids, source_type=source_type, target_type=target_type)
    n_unmapped = len(ids) - len(mapping)
    if n_unmapped:
        logger.warning(
            f"{n_unmapped}/{len(ids)} {source_type} identifiers have no {target_type} mapping"
        )
    return mapping
