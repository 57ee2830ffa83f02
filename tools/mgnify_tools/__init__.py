# mgnify_tools/__init__.py
"""
MGnify Tools - fetch MGnify study results and analyze their taxonomic profiles.

This package provides:
1. Environment bootstrap (bootstrap.py)
2. An MGnify API client with an on-disk cache (client.py)
3. Taxonomic agglomeration and abundance transformations (utils.py)
4. Alpha and beta diversity, ordination and PERMANOVA (diversity.py)
5. Differential abundance testing with ANCOM-BC (stats.py)
6. Visualization (viz.py)
7. The end-to-end tutorial workflow (workflow.py, cli.py)

Only the bootstrap and logger helpers are imported here, so the package can
be imported before the analysis stack is installed.

Usage:
    from mgnify_tools.client import MgnifyClient
    from mgnify_tools.diversity import calculate_alpha_diversity, ...
"""

__version__ = "0.1.0"

from .bootstrap import REQUIRED_PACKAGES, MissingPackagesError, ensure_packages
from .logger import setup_logger, log_print

__all__ = [
    'REQUIRED_PACKAGES',
    'MissingPackagesError',
    'ensure_packages',
    'setup_logger',
    'log_print',
]
