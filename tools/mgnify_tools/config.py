"""
Configuration loading for the MGnify tutorial workflow.
"""

import copy
from pathlib import Path

import yaml

DEFAULT_CONFIG = {
    'client': {
        'use_cache': True,
        'cache_dir': '.mgnify_cache',
        'base_url': 'https://www.ebi.ac.uk/metagenomics/api/v1',
        'retries': 5,
        'backoff_factor': 1,
        'timeout': 60,
    },
    'study': {
        'accession': 'MGYS00005058',
        'pipeline_version': '4.1',
        'taxonomy': 'ssu',
    },
    'analysis': {
        'rank': 'Genus',
        'transform': 'relabundance',
        'group_variable': 'sample_geographic location (country and/or sea)',
    },
    'diversity': {
        'alpha_metrics': ['shannon'],
        'beta_metric': 'braycurtis',
        'ordination': 'PCoA',
        'p_adjust': 'fdr_bh',
    },
    'differential_abundance': {
        'formula': None,
        'p_adj_method': 'fdr_bh',
        'prv_cut': 0.10,
        'lib_cut': 0,
        'struc_zero': False,
        'neg_lb': False,
        'alpha': 0.05,
        'top_n': 5,
    },
    'visualization': {
        'figure_dpi': 300,
        'style': 'whitegrid',
    },
    'output': {
        'results_dir': 'results',
    },
}


def _deep_merge(base, override):
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path=None):
    """
    Load a YAML configuration file over the defaults.

    Parameters:
    -----------
    config_path : str or Path, optional
        Path to the YAML file. If None, the defaults are returned.

    Returns:
    --------
    dict
        Configuration dictionary
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration file must contain a mapping: {config_path}")

    return _deep_merge(DEFAULT_CONFIG, user_config)
