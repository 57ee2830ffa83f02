"""
Client for the MGnify JSON:API (https://www.ebi.ac.uk/metagenomics/api/v1).

Queries studies for their analyses, collects analysis/sample metadata and
fetches taxonomic or functional results as BIOM tables.
"""

import hashlib
import json
import logging
import os
import tempfile
from collections import OrderedDict, defaultdict
from pathlib import Path
from urllib.parse import urlencode

import numpy as np
import pandas as pd
import requests
from biom.table import Table
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .utils import TAXONOMY_RANKS

logger = logging.getLogger('mgnify_tools')

DEFAULT_BASE_URL = "https://www.ebi.ac.uk/metagenomics/api/v1"

SEARCH_TYPES = ('studies', 'samples')

TAXONOMY_ENDPOINTS = {
    'ssu': 'taxonomy/ssu',
    'lsu': 'taxonomy/lsu',
    'itsonedb': 'taxonomy/itsonedb',
    'unite': 'taxonomy/unite',
}

FUNCTIONAL_ENDPOINTS = {
    'go-slim': 'go-slim',
    'go-terms': 'go-terms',
    'interpro-identifiers': 'interpro-identifiers',
    'antismash-gene-clusters': 'antismash-gene-clusters',
    'genome-properties': 'genome-properties',
}

PIPELINE_VERSION_COLUMN = 'analysis_pipeline-version'

# MGnify hierarchy keys -> taxonomy ranks
_RANK_ALIASES = {
    'superkingdom': 'Kingdom',
    'kingdom': 'Kingdom',
    'phylum': 'Phylum',
    'class': 'Class',
    'order': 'Order',
    'family': 'Family',
    'genus': 'Genus',
    'species': 'Species',
}


class MgnifyRequestError(RuntimeError):
    """Raised when a request to the MGnify API fails."""


def _unique(values):
    return list(OrderedDict.fromkeys(values))


def _as_list(accessions):
    if isinstance(accessions, str):
        return [accessions]
    return _unique(accessions)


def _relationship_id(relationships, name):
    """Return the id referenced by a JSON:API relationship, if any."""
    rel = relationships.get(name) or {}
    data = rel.get('data')
    if isinstance(data, dict):
        return data.get('id')
    return None


def parse_taxonomy(attributes):
    """
    Extract a rank -> name mapping from a taxonomy record.

    Uses the ``hierarchy`` attribute when present and falls back to the
    colon separated ``lineage`` string.
    """
    ranks = {}
    hierarchy = attributes.get('hierarchy') or {}

    for key, value in hierarchy.items():
        normalized = key.lower().replace(' ', '').replace('_', '')
        rank = _RANK_ALIASES.get(normalized)
        if rank is None or not value:
            continue
        # superkingdom wins over kingdom, which is empty for most prokaryotes
        if rank == 'Kingdom' and normalized == 'kingdom' and 'Kingdom' in ranks:
            continue
        ranks[rank] = value

    if not ranks and attributes.get('lineage'):
        parts = [p for p in attributes['lineage'].split(':') if p and p != 'Root']
        for rank, value in zip(TAXONOMY_RANKS, parts):
            ranks[rank] = value

    return ranks


def filter_by_pipeline_version(metadata_df, version):
    """
    Keep analyses processed with the given MGnify pipeline version.

    Parameters:
    -----------
    metadata_df : pandas.DataFrame
        Metadata returned by MgnifyClient.get_metadata
    version : str or float
        Pipeline version, e.g. "4.1"

    Returns:
    --------
    pandas.DataFrame
        Filtered metadata
    """
    if PIPELINE_VERSION_COLUMN not in metadata_df.columns:
        raise ValueError(f"Column '{PIPELINE_VERSION_COLUMN}' not found in metadata")

    keep = metadata_df[PIPELINE_VERSION_COLUMN].astype(str) == str(version)
    logger.info(f"Pipeline version {version}: keeping {keep.sum()} of {len(metadata_df)} analyses")
    return metadata_df.loc[keep]


class MgnifyClient:
    """Thin client for the MGnify API with an optional on-disk response cache.

    Args:
        use_cache (bool): Store and reuse JSON responses under ``cache_dir``.
        cache_dir (str): Cache directory. Defaults to a folder in the system temp dir.
        base_url (str): API root.
        retries (int): Number of retries for HTTP requests. Defaults to 5.
        backoff_factor (int): Backoff factor for retry delays. Defaults to 1.
        timeout (int): Request timeout in seconds.
        session (requests.Session): Pre-built session, mainly for testing.
    """

    def __init__(
        self,
        use_cache=False,
        cache_dir=None,
        base_url=DEFAULT_BASE_URL,
        retries=5,
        backoff_factor=1,
        timeout=60,
        session=None,
    ):
        self.use_cache = use_cache
        self.cache_dir = Path(cache_dir) if cache_dir else Path(tempfile.gettempdir()) / 'mgnify_cache'
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session if session is not None else self._create_session(retries, backoff_factor)

        if self.use_cache:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Using MGnify cache directory {self.cache_dir}")

    def _create_session(self, retries, backoff_factor):
        """Create requests session with retry logic."""
        session = requests.Session()
        retry_strategy = Retry(
            total=retries,
            allowed_methods=["HEAD", "GET", "OPTIONS"],
            status_forcelist=[429, 500, 502, 503, 504],
            backoff_factor=backoff_factor,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    # ------------------------------------------------------------------ #
    # HTTP + cache
    # ------------------------------------------------------------------ #

    def _url(self, path):
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _cache_path(self, url, params):
        key = url
        if params:
            key += '?' + urlencode(sorted(params.items()))
        digest = hashlib.sha1(key.encode('utf-8')).hexdigest()
        return self.cache_dir / f"{digest}.json"

    def _get_json(self, url, params=None):
        """GET a JSON document, going through the cache when enabled."""
        cache_file = self._cache_path(url, params) if self.use_cache else None

        if cache_file is not None and cache_file.exists():
            logger.debug(f"Using cached response for {url}")
            with open(cache_file, 'r') as f:
                return json.load(f)

        try:
            logger.debug(f"GET {url} {params or ''}")
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            logger.error(f"Request failed: {e}")
            raise MgnifyRequestError(f"Request to {url} failed: {e}") from e

        if cache_file is not None:
            # readers never see a partly written file
            with tempfile.NamedTemporaryFile('w', dir=cache_file.parent, suffix='.tmp', delete=False) as f:
                json.dump(payload, f)
            os.replace(f.name, cache_file)

        return payload

    def _iterate_pages(self, path, params=None, max_hits=None):
        """Yield JSON:API records, following ``links.next``."""
        url = self._url(path)
        params = dict(params) if params else None
        n_hits = 0

        while url:
            payload = self._get_json(url, params)
            data = payload.get('data') or []
            if isinstance(data, dict):
                data = [data]

            for record in data:
                yield record
                n_hits += 1
                if max_hits is not None and n_hits >= max_hits:
                    return

            url = (payload.get('links') or {}).get('next')
            # the next link already carries the query string
            params = None

    def clear_cache(self):
        """Delete cached responses and downloaded files."""
        if not self.cache_dir.exists():
            return 0
        removed = 0
        for path in [*self.cache_dir.glob('*.json'), *self.cache_dir.glob('*.tmp')]:
            path.unlink()
            removed += 1
        files_dir = self.cache_dir / 'files'
        if files_dir.exists():
            for path in files_dir.iterdir():
                path.unlink()
                removed += 1
        logger.info(f"Removed {removed} cached files from {self.cache_dir}")
        return removed

    # ------------------------------------------------------------------ #
    # Search & metadata
    # ------------------------------------------------------------------ #

    def search_analysis(self, type, accession):
        """
        List the analysis accessions belonging to a study or a sample.

        Parameters:
        -----------
        type : str
            'studies' or 'samples'
        accession : str or list
            Study (MGYS...) or sample accession(s)

        Returns:
        --------
        list
            Analysis accessions (MGYA...)
        """
        if type not in SEARCH_TYPES:
            raise ValueError(f"Unknown search type: {type}. Use one of {', '.join(SEARCH_TYPES)}.")

        analyses = []
        for acc in _as_list(accession):
            found = [record['id'] for record in self._iterate_pages(f"{type}/{acc}/analyses")]
            logger.info(f"Found {len(found)} analyses for {acc}")
            analyses.extend(found)

        return _unique(analyses)

    def _sample_metadata(self, sample_accession):
        payload = self._get_json(self._url(f"samples/{sample_accession}"))
        record = payload.get('data') or {}
        row = {}

        for key, value in (record.get('attributes') or {}).items():
            if key == 'sample-metadata':
                for entry in value or []:
                    row[f"sample_{entry.get('key')}"] = entry.get('value')
            elif not isinstance(value, (list, dict)):
                row[f"sample_{key}"] = value

        biome = _relationship_id(record.get('relationships') or {}, 'biome')
        if biome:
            row['sample_biome'] = biome

        return row

    def get_metadata(self, accessions):
        """
        Fetch analysis, sample and study metadata for analysis accessions.

        Parameters:
        -----------
        accessions : str or list
            Analysis accession(s)

        Returns:
        --------
        pandas.DataFrame
            One row per analysis, indexed by analysis accession
        """
        rows = []
        samples = {}

        for acc in _as_list(accessions):
            logger.info(f"Fetching metadata for {acc}")
            payload = self._get_json(self._url(f"analyses/{acc}"))
            record = payload.get('data') or {}

            row = {}
            for key, value in (record.get('attributes') or {}).items():
                if key == 'analysis-summary':
                    for entry in value or []:
                        row[f"analysis_{entry.get('key')}"] = entry.get('value')
                elif not isinstance(value, (list, dict)):
                    row[f"analysis_{key}"] = value
            row['analysis_accession'] = acc

            relationships = record.get('relationships') or {}
            for name in ('study', 'sample', 'run', 'assembly'):
                rel_id = _relationship_id(relationships, name)
                if rel_id:
                    row[f"{name}_accession"] = rel_id

            sample_acc = row.get('sample_accession')
            if sample_acc:
                if sample_acc not in samples:
                    samples[sample_acc] = self._sample_metadata(sample_acc)
                row.update(samples[sample_acc])

            rows.append(row)

        metadata_df = pd.DataFrame(rows)
        if metadata_df.empty:
            return pd.DataFrame(columns=['analysis_accession'])

        metadata_df.index = metadata_df['analysis_accession'].values
        return metadata_df

    def do_query(self, type, accession=None, max_hits=200, **filters):
        """
        Search an MGnify resource, optionally filtered by query parameters.

        Parameters:
        -----------
        type : str
            Resource name, e.g. 'studies', 'samples', 'runs', 'analyses', 'biomes'
        accession : str, optional
            Restrict the query to a single record
        max_hits : int, optional
            Maximum number of records to return (None for all)
        **filters
            Query parameters passed to the API (e.g. ``lineage='root:Host-associated'``)

        Returns:
        --------
        pandas.DataFrame
            Records indexed by accession
        """
        path = type if accession is None else f"{type}/{accession}"
        rows = []
        for record in self._iterate_pages(path, params=filters or None, max_hits=max_hits):
            row = {'accession': record.get('id'), 'type': record.get('type')}
            for key, value in (record.get('attributes') or {}).items():
                if not isinstance(value, (list, dict)):
                    row[key] = value
            rows.append(row)

        results_df = pd.DataFrame(rows)
        if not results_df.empty:
            results_df = results_df.set_index('accession', drop=False)
        return results_df

    # ------------------------------------------------------------------ #
    # Results
    # ------------------------------------------------------------------ #

    def _build_table(self, counts, observation_metadata, sample_ids, metadata_df):
        feature_ids = list(counts.keys())
        data = np.zeros((len(feature_ids), len(sample_ids)))
        sample_pos = {s: j for j, s in enumerate(sample_ids)}
        for i, feature in enumerate(feature_ids):
            for sample, value in counts[feature].items():
                data[i, sample_pos[sample]] = value

        sample_md = None
        if metadata_df is not None and not metadata_df.empty:
            md = metadata_df.reindex(sample_ids)
            md = md.astype(object).where(md.notna(), None)
            sample_md = [md.loc[s].to_dict() for s in sample_ids]

        obs_md = [observation_metadata[f] for f in feature_ids] if feature_ids else None

        return Table(
            data,
            observation_ids=feature_ids,
            sample_ids=sample_ids,
            observation_metadata=obs_md,
            sample_metadata=sample_md,
        )

    def _taxonomy_table(self, accessions, taxonomy, metadata_df):
        endpoint = TAXONOMY_ENDPOINTS[taxonomy]
        counts = defaultdict(lambda: defaultdict(float))
        observation_metadata = {}

        for acc in accessions:
            n_taxa = 0
            for record in self._iterate_pages(f"analyses/{acc}/{endpoint}"):
                attributes = record.get('attributes') or {}
                feature_id = attributes.get('lineage') or record.get('id')
                counts[feature_id][acc] += attributes.get('count') or 0
                if feature_id not in observation_metadata:
                    ranks = parse_taxonomy(attributes)
                    observation_metadata[feature_id] = {
                        'taxonomy': [ranks.get(rank, '') for rank in TAXONOMY_RANKS]
                    }
                n_taxa += 1
            logger.info(f"{acc}: {n_taxa} {taxonomy.upper()} taxa")

        return self._build_table(counts, observation_metadata, accessions, metadata_df)

    def _functional_table(self, accessions, func_type, metadata_df):
        endpoint = FUNCTIONAL_ENDPOINTS[func_type]
        counts = defaultdict(lambda: defaultdict(float))
        observation_metadata = {}

        for acc in accessions:
            for record in self._iterate_pages(f"analyses/{acc}/{endpoint}"):
                attributes = record.get('attributes') or {}
                feature_id = attributes.get('accession') or record.get('id')
                counts[feature_id][acc] += attributes.get('count') or 0
                if feature_id not in observation_metadata:
                    observation_metadata[feature_id] = {
                        'description': attributes.get('description') or '',
                    }

        return self._build_table(counts, observation_metadata, accessions, metadata_df)

    def get_result(self, accessions, taxonomy='ssu', get_taxa=True, get_func=False,
                   func_types=('go-slim',), metadata=None):
        """
        Fetch analysis results as BIOM tables.

        Parameters:
        -----------
        accessions : str or list
            Analysis accession(s)
        taxonomy : str
            Taxonomic reference: 'ssu', 'lsu', 'itsonedb' or 'unite'
        get_taxa : bool
            Whether to fetch taxonomic assignments
        get_func : bool
            Whether to fetch functional annotations
        func_types : sequence of str
            Functional result types, e.g. 'go-slim', 'interpro-identifiers'
        metadata : pandas.DataFrame, optional
            Sample metadata indexed by analysis accession. Fetched if None.

        Returns:
        --------
        biom.Table or dict
            Taxonomy table (features x analyses), or a dict with 'taxa' and
            'func' entries when functional results are requested
        """
        if not get_taxa and not get_func:
            raise ValueError("Nothing to fetch: set get_taxa and/or get_func")
        if get_taxa and taxonomy not in TAXONOMY_ENDPOINTS:
            raise ValueError(f"Unknown taxonomy type: {taxonomy}. Use one of {', '.join(TAXONOMY_ENDPOINTS)}.")
        if get_func:
            unknown = [t for t in func_types if t not in FUNCTIONAL_ENDPOINTS]
            if unknown:
                raise ValueError(f"Unknown functional result type(s): {', '.join(unknown)}")

        accessions = _as_list(accessions)
        if metadata is None:
            metadata = self.get_metadata(accessions)

        results = {}
        if get_taxa:
            results['taxa'] = self._taxonomy_table(accessions, taxonomy, metadata)
        if get_func:
            results['func'] = {
                func_type: self._functional_table(accessions, func_type, metadata)
                for func_type in func_types
            }

        if get_taxa and not get_func:
            return results['taxa']
        return results

    # ------------------------------------------------------------------ #
    # Downloads
    # ------------------------------------------------------------------ #

    def search_file(self, accessions):
        """
        List the downloadable files of analyses.

        Returns:
        --------
        pandas.DataFrame
            One row per file with its description and download URL
        """
        rows = []
        for acc in _as_list(accessions):
            for record in self._iterate_pages(f"analyses/{acc}/downloads"):
                attributes = record.get('attributes') or {}
                file_format = attributes.get('file-format') or {}
                description = attributes.get('description') or {}
                rows.append({
                    'analysis_accession': acc,
                    'id': record.get('id'),
                    'alias': attributes.get('alias'),
                    'file_format': file_format.get('name'),
                    'compression': file_format.get('compression'),
                    'description': description.get('label'),
                    'group_type': attributes.get('group-type'),
                    'download_url': (record.get('links') or {}).get('self'),
                })
        return pd.DataFrame(rows)

    def get_file(self, url, filename=None):
        """
        Download a file into ``<cache_dir>/files`` and return its path.

        An existing non-empty file is reused when the cache is enabled.
        """
        files_dir = self.cache_dir / 'files'
        files_dir.mkdir(parents=True, exist_ok=True)
        target = files_dir / (filename or url.rstrip('/').rsplit('/', 1)[-1])

        if self.use_cache and target.exists() and target.stat().st_size > 0:
            logger.debug(f"Using cached file: {target}")
            return target

        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()
            with open(target, 'wb') as f:
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        f.write(chunk)
        except requests.RequestException as e:
            logger.error(f"Download failed: {e}")
            if target.exists():
                target.unlink()
            raise MgnifyRequestError(f"Download of {url} failed: {e}") from e

        logger.info(f"Downloaded {url} -> {target}")
        return target
