"""
Remote data sources: GEO series and Ensembl SNP annotations.

GEO series are downloaded with GEOparse and converted into a BioMatrix whose
sample metadata holds the GSM characteristics (``"disease state: AD"`` lines
become a ``disease state`` column). SNP coordinates and consequences come from
the Ensembl REST variation endpoint.

Both calls are synchronous and are not retried; network and parse errors
propagate to the caller.

Examples:
    >>> from markerscan.io.geo import fetch_geo_series
    >>> matrix = fetch_geo_series("GSE5281", destdir="data/geo")
    >>> matrix.sample_metadata["disease state"].value_counts()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import numpy as np
import pandas as pd
import requests

from markerscan.core.biomatrix import BioMatrix

__all__ = [
    'fetch_geo_series',
    'series_to_biomatrix',
    'parse_characteristics',
    'fetch_snp_annotations',
    'ENSEMBL_REST_URL',
]

logger = logging.getLogger(__name__)

ENSEMBL_REST_URL = "https://rest.ensembl.org"


def parse_characteristics(metadata: dict[str, list[str]]) -> dict[str, str]:
    """
    Flatten GSM metadata into a single row of phenotype fields.

    ``characteristics_ch1`` entries of the form ``"key: value"`` become
    columns named by key. Single-valued fields such as ``title`` and
    ``source_name_ch1`` are kept as-is.
    """
    row: dict[str, str] = {}
    for key in ('title', 'source_name_ch1', 'organism_ch1', 'platform_id'):
        values = metadata.get(key)
        if values:
            row[key] = values[0]

    for entry in metadata.get('characteristics_ch1', []):
        if ':' in entry:
            name, value = entry.split(':', 1)
            row[name.strip()] = value.strip()
        else:
            row.setdefault('characteristics', entry.strip())
    return row


def series_to_biomatrix(gse: Any, value_column: str = 'VALUE') -> BioMatrix:
    """
    Convert a parsed GEOparse GSE object into a BioMatrix.

    Args:
        gse: Object exposing ``gsms`` (name -> GSM with ``table`` and
            ``metadata``), as returned by ``GEOparse.get_GEO``
        value_column: Column of each GSM table holding the intensities

    Raises:
        ValueError: If the series has no samples, or a sample table lacks
            ``ID_REF`` or ``value_column``
    """
    if not gse.gsms:
        raise ValueError("GEO series contains no samples")

    columns = {}
    rows = {}
    for name, gsm in gse.gsms.items():
        table = gsm.table
        missing = {'ID_REF', value_column} - set(table.columns)
        if missing:
            raise ValueError(f"Sample {name} table lacks columns {sorted(missing)}")
        columns[name] = pd.to_numeric(
            table.set_index('ID_REF')[value_column], errors='coerce'
        )
        rows[name] = parse_characteristics(gsm.metadata)

    frame = pd.DataFrame(columns)
    frame.index = frame.index.astype(str)
    metadata = pd.DataFrame.from_dict(rows, orient='index').reindex(frame.columns)

    matrix = BioMatrix(
        data=frame.to_numpy(dtype=np.float64),
        feature_ids=pd.Index(frame.index),
        sample_ids=pd.Index(frame.columns.astype(str)),
        sample_metadata=metadata.set_axis(frame.columns.astype(str), axis=0),
    )
    logger.info(f"GEO series: {matrix.n_features} probes × {matrix.n_samples} samples")
    return matrix


def fetch_geo_series(
    accession: str,
    destdir: Path | str = ".",
    value_column: str = 'VALUE',
) -> BioMatrix:
    """
    Download a GSE series (SOFT) with GEOparse and return it as a BioMatrix.

    Args:
        accession: GEO series accession, e.g. ``"GSE5281"``
        destdir: Directory for the downloaded SOFT file (reused if present)
        value_column: Intensity column of the sample tables

    Raises:
        ValueError: If the accession is not a GSE series
    """
    import GEOparse

    if not accession.upper().startswith('GSE'):
        raise ValueError(f"Expected a GSE series accession, got {accession!r}")

    destdir = Path(destdir)
    destdir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Fetching {accession} from GEO into {destdir}")
    gse = GEOparse.get_GEO(geo=accession, destdir=str(destdir), silent=True)
    return series_to_biomatrix(gse, value_column=value_column)


def fetch_snp_annotations(
    rs_ids: Iterable[str],
    species: str = 'human',
    timeout: float = 30.0,
    base_url: str = ENSEMBL_REST_URL,
) -> pd.DataFrame:
    """
    Look up SNP positions and consequences through the Ensembl REST API.

    Uses the batch ``POST /variation/{species}`` endpoint.

    Returns:
        DataFrame indexed by rs id with columns chromosome, position,
        alleles, minor_allele, maf and consequence. Ids unknown to Ensembl
        are absent from the result.

    Raises:
        requests.HTTPError: On a non-2xx response
    """
    rs_ids = list(dict.fromkeys(rs_ids))
    if not rs_ids:
        return pd.DataFrame(
            columns=['chromosome', 'position', 'alleles', 'minor_allele', 'maf', 'consequence']
        )

    response = requests.post(
        f"{base_url}/variation/{species}",
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        json={"ids": rs_ids},
        timeout=timeout,
    )
    response.raise_for_status()
    payload = response.json()

    records = []
    for rs_id in rs_ids:
        entry = payload.get(rs_id)
        if entry is None:
            continue
        mappings = entry.get('mappings') or [{}]
        primary = mappings[0]
        records.append({
            'rs_id': rs_id,
            'chromosome': primary.get('seq_region_name'),
            'position': primary.get('start'),
            'alleles': primary.get('allele_string'),
            'minor_allele': entry.get('minor_allele'),
            'maf': entry.get('MAF'),
            'consequence': entry.get('most_severe_consequence'),
        })

    n_missing = len(rs_ids) - len(records)
    if n_missing:
        logger.warning(f"{n_missing}/{len(rs_ids)} SNP ids not found in Ensembl")

    return pd.DataFrame.from_records(records, index='rs_id') if records else pd.DataFrame(
        columns=['chromosome', 'position', 'alleles', 'minor_allele', 'maf', 'consequence']
    )
