"""
Shared fixtures: an in-memory stand-in for the MGnify API and small
abundance tables.
"""

import copy
from urllib.parse import urlencode

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest
import requests
from biom.table import Table

from mgnify_tools.client import DEFAULT_BASE_URL, MgnifyClient


# =============================================================================
# FAKE HTTP LAYER
# =============================================================================

def route_key(url, params=None):
    if params:
        return url + '?' + urlencode(sorted(params.items()))
    return url


class FakeResponse:
    def __init__(self, payload=None, status_code=200, content=b''):
        self.payload = payload
        self.status_code = status_code
        self.content = content

    def json(self):
        return copy.deepcopy(self.payload)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]


class FakeSession:
    """Serves canned payloads keyed by URL (plus sorted query string)."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def get(self, url, params=None, timeout=None, stream=False):
        key = route_key(url, params)
        self.calls.append(key)
        if key not in self.routes:
            return FakeResponse(status_code=404)
        route = self.routes[key]
        if isinstance(route, bytes):
            return FakeResponse(content=route)
        return FakeResponse(payload=route)


# =============================================================================
# FAKE STUDY
# =============================================================================

STUDY = 'MGYS00000001'
GROUP_VAR = 'sample_geographic location (country and/or sea)'

# (phylum, class, order, family, genus, species)
LINEAGES = [
    ('Firmicutes', 'Bacilli', 'Lactobacillales', 'Streptococcaceae', 'Streptococcus', 'Streptococcus mitis'),
    ('Firmicutes', 'Bacilli', 'Lactobacillales', 'Streptococcaceae', 'Streptococcus', 'Streptococcus oralis'),
    ('Bacteroidetes', 'Bacteroidia', 'Bacteroidales', 'Prevotellaceae', 'Prevotella', ''),
    ('Bacteroidetes', 'Bacteroidia', 'Bacteroidales', 'Bacteroidaceae', 'Bacteroides', ''),
    ('Firmicutes', 'Clostridia', 'Clostridiales', 'Ruminococcaceae', 'Faecalibacterium', ''),
    ('Proteobacteria', 'Gammaproteobacteria', 'Enterobacterales', 'Enterobacteriaceae', 'Escherichia', ''),
    ('Actinobacteria', 'Actinobacteria', 'Bifidobacteriales', 'Bifidobacteriaceae', 'Bifidobacterium', ''),
    ('Firmicutes', 'Clostridia', 'Clostridiales', 'Lachnospiraceae', '', ''),
]

# analysis -> (sample, country, pipeline version)
ANALYSES = {
    'MGYA00000001': ('ERS0001', 'Norway', '4.1'),
    'MGYA00000002': ('ERS0002', 'Norway', '4.1'),
    'MGYA00000003': ('ERS0003', 'Norway', '4.1'),
    'MGYA00000004': ('ERS0004', 'Norway', '4.1'),
    'MGYA00000005': ('ERS0005', 'Spain', '4.1'),
    'MGYA00000006': ('ERS0006', 'Spain', '4.1'),
    'MGYA00000007': ('ERS0007', 'Spain', '4.1'),
    'MGYA00000008': ('ERS0007', 'Spain', '5.0'),
}

FILE_URL = f"{DEFAULT_BASE_URL}/analyses/MGYA00000001/file/ERR0001_MERGED_FASTQ_SSU.fasta.mseq.tsv"
FILE_CONTENT = b"# mseq\nOTU\tcount\n" * 50


def lineage_string(lineage):
    return ':'.join(['Root', 'Bacteria'] + [name for name in lineage if name])


def taxonomy_record(index, lineage, count):
    phylum, cls, order, family, genus, species = lineage
    hierarchy = {
        'super kingdom': 'Bacteria',
        'kingdom': '',
        'phylum': phylum,
        'class': cls,
        'order': order,
        'family': family,
        'genus': genus,
        'species': species,
    }
    return {
        'type': 'taxonomy-ssu',
        'id': f'otu{index}',
        'attributes': {
            'count': int(count),
            'lineage': lineage_string(lineage),
            'hierarchy': hierarchy,
            'name': species or genus or family,
        },
    }


def taxon_counts():
    """Deterministic counts per analysis; Streptococcus is raised in Spain."""
    rng = np.random.RandomState(7)
    counts = {}
    for acc, (_, country, _) in ANALYSES.items():
        values = rng.poisson(60, size=len(LINEAGES)) + 5
        if country == 'Spain':
            values[0] *= 6
            values[1] *= 6
        counts[acc] = values
    # richness differs between samples
    counts['MGYA00000001'][6] = 0
    counts['MGYA00000002'][6] = 0
    counts['MGYA00000006'][5] = 0
    return counts


def build_routes():
    base = DEFAULT_BASE_URL
    accessions = list(ANALYSES)
    routes = {}

    page2 = f"{base}/studies/{STUDY}/analyses?page=2"
    routes[f"{base}/studies/{STUDY}/analyses"] = {
        'data': [{'type': 'analyses', 'id': acc} for acc in accessions[:4]],
        'links': {'next': page2},
    }
    routes[page2] = {
        'data': [{'type': 'analyses', 'id': acc} for acc in accessions[4:]],
        'links': {'next': None},
    }

    counts = taxon_counts()
    for i, (acc, (sample, country, version)) in enumerate(ANALYSES.items(), start=1):
        routes[f"{base}/analyses/{acc}"] = {
            'data': {
                'type': 'analyses',
                'id': acc,
                'attributes': {
                    'accession': acc,
                    'pipeline-version': version,
                    'experiment-type': 'amplicon',
                    'analysis-summary': [
                        {'key': 'Submitted nucleotide sequences', 'value': str(1000 * i)},
                    ],
                    'complete-time': '2019-01-01T00:00:00',
                },
                'relationships': {
                    'study': {'data': {'type': 'studies', 'id': STUDY}},
                    'sample': {'data': {'type': 'samples', 'id': sample}},
                    'run': {'data': {'type': 'runs', 'id': f'ERR{i:04d}'}},
                    'assembly': {'data': None},
                },
            }
        }
        routes[f"{base}/samples/{sample}"] = {
            'data': {
                'type': 'samples',
                'id': sample,
                'attributes': {
                    'accession': sample,
                    'sample-name': f'saliva {sample}',
                    'sample-metadata': [
                        {'key': 'geographic location (country and/or sea)', 'value': country},
                        {'key': 'host', 'value': 'Homo sapiens'},
                    ],
                },
                'relationships': {
                    'biome': {'data': {'type': 'biomes', 'id': 'root:Host-associated:Human:Digestive system:Oral'}},
                },
            }
        }
        routes[f"{base}/analyses/{acc}/taxonomy/ssu"] = {
            'data': [taxonomy_record(j, lineage, counts[acc][j])
                     for j, lineage in enumerate(LINEAGES) if counts[acc][j] > 0],
            'links': {'next': None},
        }
        routes[f"{base}/analyses/{acc}/go-slim"] = {
            'data': [
                {'type': 'go-terms', 'id': 'GO:0003824',
                 'attributes': {'accession': 'GO:0003824', 'description': 'catalytic activity', 'count': 10 * i}},
                {'type': 'go-terms', 'id': 'GO:0005488',
                 'attributes': {'accession': 'GO:0005488', 'description': 'binding', 'count': 5 * i}},
            ],
            'links': {'next': None},
        }

    routes[f"{base}/analyses/MGYA00000001/downloads"] = {
        'data': [{
            'type': 'analysis-downloads',
            'id': 'ERR0001_MERGED_FASTQ_SSU.fasta.mseq.tsv',
            'attributes': {
                'alias': 'ERR0001_MERGED_FASTQ_SSU.fasta.mseq.tsv',
                'file-format': {'name': 'TSV', 'extension': 'tsv', 'compression': False},
                'description': {'label': 'OTUs, counts and taxonomic assignments for SSU rRNA'},
                'group-type': 'Taxonomic analysis SSU rRNA',
            },
            'links': {'self': FILE_URL},
        }],
        'links': {'next': None},
    }
    routes[FILE_URL] = FILE_CONTENT

    routes[route_key(f"{base}/biomes", {'depth_gte': 2})] = {
        'data': [
            {'type': 'biomes', 'id': 'root:Host-associated',
             'attributes': {'biome-name': 'Host-associated', 'lineage': 'root:Host-associated', 'samples-count': 10}},
            {'type': 'biomes', 'id': 'root:Environmental',
             'attributes': {'biome-name': 'Environmental', 'lineage': 'root:Environmental', 'samples-count': 20}},
        ],
        'links': {'next': None},
    }

    return routes


@pytest.fixture
def fake_session():
    return FakeSession(build_routes())


@pytest.fixture
def client(fake_session):
    return MgnifyClient(session=fake_session)


# =============================================================================
# SMALL TABLES
# =============================================================================

@pytest.fixture
def taxonomy_table():
    """Five features over four samples, two sharing a genus, one without one."""
    data = np.array([
        [10, 0, 5, 1],
        [5, 5, 5, 1],
        [0, 20, 10, 1],
        [3, 3, 0, 1],
        [2, 2, 2, 0],
    ], dtype=float)
    obs_ids = ['f1', 'f2', 'f3', 'f4', 'f5']
    samples = ['S1', 'S2', 'S3', 'S4']
    taxonomy = [
        ['Bacteria', 'Firmicutes', 'Bacilli', 'Lactobacillales', 'Streptococcaceae', 'Streptococcus', 'Streptococcus mitis'],
        ['Bacteria', 'Firmicutes', 'Bacilli', 'Lactobacillales', 'Streptococcaceae', 'Streptococcus', 'Streptococcus oralis'],
        ['Bacteria', 'Bacteroidetes', 'Bacteroidia', 'Bacteroidales', 'Prevotellaceae', 'Prevotella', ''],
        ['Bacteria', 'Firmicutes', 'Clostridia', 'Clostridiales', 'Lachnospiraceae', '', ''],
        ['Bacteria', 'Proteobacteria', '', '', '', '', ''],
    ]
    return Table(
        data,
        observation_ids=obs_ids,
        sample_ids=samples,
        observation_metadata=[{'taxonomy': t} for t in taxonomy],
        sample_metadata=[{'group': g} for g in ['A', 'A', 'B', 'B']],
    )


@pytest.fixture
def grouped_counts():
    """Counts (taxa x samples) for 3 groups of 4 samples with metadata."""
    rng = np.random.RandomState(0)
    samples = [f'S{i:02d}' for i in range(12)]
    taxa = [f'taxon_{i}' for i in range(8)]
    counts = pd.DataFrame(rng.poisson(30, size=(8, 12)), index=taxa, columns=samples)
    # lower richness in group C
    counts.iloc[:4, 8:] = 0
    metadata = pd.DataFrame(
        {'group': ['A'] * 4 + ['B'] * 4 + ['C'] * 4},
        index=samples,
    )
    return counts, metadata
