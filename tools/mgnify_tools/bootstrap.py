"""
Environment bootstrap: import the analysis stack, installing what is missing.
"""

import importlib
import logging
import subprocess
import sys

logger = logging.getLogger('mgnify_tools')

# import name -> distribution name on the package index
REQUIRED_PACKAGES = {
    'numpy': 'numpy',
    'pandas': 'pandas',
    'scipy': 'scipy',
    'skbio': 'scikit-bio',
    'biom': 'biom-format',
    'statsmodels': 'statsmodels',
    'patsy': 'patsy',
    'sklearn': 'scikit-learn',
    'matplotlib': 'matplotlib',
    'seaborn': 'seaborn',
    'requests': 'requests',
    'yaml': 'pyyaml',
}


class MissingPackagesError(ImportError):
    """Raised when one or more required packages cannot be loaded."""

    def __init__(self, packages):
        self.packages = list(packages)
        super().__init__(
            "The following packages could not be loaded: " + ", ".join(self.packages)
        )


def _install_package(distribution):
    """Install a distribution into the running interpreter with pip."""
    cmd = [sys.executable, "-m", "pip", "install", distribution]
    logger.info(f"Installing missing package: {distribution}")
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        logger.warning(f"pip install {distribution} failed: {result.stderr.strip()}")
    return result.returncode == 0


def _try_import(name):
    try:
        return importlib.import_module(name)
    except ImportError as e:
        logger.debug(f"Could not import {name}: {e}")
        return None


def ensure_packages(packages=None, install_missing=True):
    """
    Load every required package, installing the ones that are missing.

    Parameters:
    -----------
    packages : dict or list, optional
        Mapping of import name to distribution name, or a list of import
        names (distribution name assumed identical). Default: REQUIRED_PACKAGES
    install_missing : bool
        Whether to try ``pip install`` for packages that fail to import

    Returns:
    --------
    dict
        Loaded modules keyed by import name

    Raises:
    -------
    MissingPackagesError
        If at least one package still fails to load after the install attempt.
        The message lists all of them.
    """
    if packages is None:
        packages = REQUIRED_PACKAGES
    if not isinstance(packages, dict):
        packages = {name: name for name in packages}

    loaded = {}
    unloaded = []

    for name, distribution in packages.items():
        module = _try_import(name)

        if module is None and install_missing:
            if _install_package(distribution):
                importlib.invalidate_caches()
                module = _try_import(name)

        if module is None:
            unloaded.append(name)
        else:
            loaded[name] = module

    if unloaded:
        raise MissingPackagesError(unloaded)

    logger.info(f"Loaded {len(loaded)} packages")
    return loaded
