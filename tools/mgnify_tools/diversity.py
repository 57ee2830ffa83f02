"""
Functions for calculating alpha and beta diversity metrics for MGnify abundance data.
"""

import logging
from itertools import combinations

import numpy as np
import pandas as pd
from scipy import stats
from scipy.spatial.distance import pdist, squareform
from skbio.diversity import alpha_diversity
from skbio.stats.distance import DistanceMatrix, permanova
from skbio.stats.ordination import pcoa
from sklearn.manifold import MDS
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger('mgnify_tools')

RICHNESS_METRICS = ('observed_features', 'observed_otus', 'richness')
EVENNESS_METRICS = ('evenness', 'pielou_e')


def _common_samples(index, metadata_df):
    return [s for s in index if s in metadata_df.index]


def calculate_alpha_diversity(abundance_df, metrics=None):
    """
    Calculate alpha diversity metrics for each sample.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa count DataFrame with taxa as index, samples as columns
    metrics : list, optional
        List of diversity metrics to calculate
        Default: ['shannon', 'simpson', 'observed_features']

    Returns:
    --------
    pandas.DataFrame
        DataFrame with alpha diversity metrics for each sample
    """
    if metrics is None:
        metrics = ['shannon', 'simpson', 'observed_features']

    alpha_div = pd.DataFrame(index=abundance_df.columns)

    # Samples as rows
    counts = abundance_df.fillna(0).values.T
    if np.allclose(counts, np.round(counts)):
        counts = np.round(counts).astype(int)
    sample_ids = list(abundance_df.columns)
    richness = (counts > 0).sum(axis=1)

    for metric in metrics:
        metric_lower = metric.lower()

        if metric_lower in RICHNESS_METRICS:
            alpha_div[metric] = richness
        elif metric_lower in EVENNESS_METRICS:
            shannon = alpha_diversity('shannon', counts, ids=sample_ids, base=np.e).values
            with np.errstate(divide='ignore', invalid='ignore'):
                evenness = shannon / np.log(richness)
            evenness[richness <= 1] = np.nan
            alpha_div[metric] = evenness
        elif metric_lower == 'shannon':
            # natural log, as in vegan / mia
            alpha_div[metric] = alpha_diversity('shannon', counts, ids=sample_ids, base=np.e).values
        else:
            alpha_div[metric] = alpha_diversity(metric_lower, counts, ids=sample_ids).values

    return alpha_div


def compare_alpha_diversity(alpha_df, metadata_df, group_var):
    """
    Compare alpha diversity metrics between groups.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Metadata variable to group by

    Returns:
    --------
    dict
        Dictionary with results for each metric
    """
    common_samples = _common_samples(alpha_df.index, metadata_df)
    alpha_subset = alpha_df.loc[common_samples]
    groups = metadata_df.loc[common_samples, group_var]
    unique_groups = groups.dropna().unique()
    n_groups = len(unique_groups)

    if len(common_samples) < 3 or n_groups < 2:
        note = 'Too few samples' if len(common_samples) < 3 else 'Need at least 2 groups'
        return {metric: {'test': 'None', 'p-value': None, 'note': note} for metric in alpha_df.columns}

    results = {}

    for metric in alpha_df.columns:
        group_data = [alpha_subset.loc[groups == group, metric].dropna() for group in unique_groups]
        test = 'Mann-Whitney U' if n_groups == 2 else 'Kruskal-Wallis'

        if any(len(g) < 3 for g in group_data):
            results[metric] = {
                'test': test,
                'p-value': None,
                'note': 'Group size < 3'
            }
            continue

        if n_groups == 2:
            stat, p_value = stats.mannwhitneyu(group_data[0], group_data[1], alternative='two-sided')
            results[metric] = {
                'test': test,
                'test-statistic': stat,
                'p-value': p_value,
                'group1': unique_groups[0],
                'group2': unique_groups[1],
                'n1': len(group_data[0]),
                'n2': len(group_data[1])
            }
        else:
            stat, p_value = stats.kruskal(*group_data)
            results[metric] = {
                'test': test,
                'test-statistic': stat,
                'p-value': p_value,
                'groups': list(unique_groups),
                'n_groups': n_groups,
                'n_samples': len(common_samples)
            }

    return results


def pairwise_alpha_tests(alpha_df, metadata_df, group_var, metric, p_adjust='fdr_bh'):
    """
    Mann-Whitney U test for every pair of groups, with multiple testing correction.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Metadata variable to group by
    metric : str
        Alpha diversity column to compare
    p_adjust : str
        Correction method understood by statsmodels ``multipletests``

    Returns:
    --------
    pandas.DataFrame
        Columns: group1, group2, n1, n2, statistic, p-value, adjusted p-value
    """
    common_samples = _common_samples(alpha_df.index, metadata_df)
    values = alpha_df.loc[common_samples, metric]
    groups = metadata_df.loc[common_samples, group_var]

    rows = []
    for group1, group2 in combinations(sorted(groups.dropna().unique(), key=str), 2):
        values1 = values[groups == group1].dropna()
        values2 = values[groups == group2].dropna()
        if len(values1) == 0 or len(values2) == 0:
            continue
        stat, p_value = stats.mannwhitneyu(values1, values2, alternative='two-sided')
        rows.append({
            'group1': group1,
            'group2': group2,
            'n1': len(values1),
            'n2': len(values2),
            'statistic': stat,
            'p-value': p_value,
        })

    results_df = pd.DataFrame(rows, columns=['group1', 'group2', 'n1', 'n2', 'statistic', 'p-value'])
    if results_df.empty:
        results_df['adjusted p-value'] = pd.Series(dtype=float)
    else:
        results_df['adjusted p-value'] = multipletests(results_df['p-value'], method=p_adjust)[1]

    return results_df


def calculate_beta_diversity(abundance_df, metric='braycurtis'):
    """
    Calculate beta diversity distance matrix.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    metric : str
        Distance metric understood by scipy ``pdist`` (braycurtis, jaccard, euclidean, ...)

    Returns:
    --------
    skbio.DistanceMatrix
        Beta diversity distance matrix
    """
    abundance_df = abundance_df.fillna(0)

    empty = abundance_df.columns[abundance_df.sum(axis=0) == 0]
    if len(empty) > 0:
        logger.warning(f"Dropping {len(empty)} samples without any counts before computing {metric} distances")
        abundance_df = abundance_df.drop(columns=empty)

    # Samples as rows
    abundance_matrix = abundance_df.T
    distances = pdist(abundance_matrix.values.astype(float), metric=metric)
    return DistanceMatrix(squareform(distances), ids=list(abundance_matrix.index))


def run_ordination(beta_dm, method='PCoA', n_components=2):
    """
    Reduce a distance matrix to a few dimensions.

    Parameters:
    -----------
    beta_dm : skbio.DistanceMatrix
        Beta diversity distance matrix
    method : str
        'PCoA' (classical multidimensional scaling) or 'NMDS'
    n_components : int
        Number of axes to keep

    Returns:
    --------
    pandas.DataFrame
        Sample coordinates. ``attrs`` holds the method and either
        'proportion_explained' (PCoA) or 'stress' (NMDS).
    """
    if method.upper() == 'PCOA':
        pcoa_results = pcoa(beta_dm)
        coords = pcoa_results.samples.iloc[:, :n_components].copy()
        coords.columns = [f'PC{i + 1}' for i in range(coords.shape[1])]
        coords.attrs['method'] = 'PCoA'
        coords.attrs['proportion_explained'] = [
            float(v) for v in pcoa_results.proportion_explained.iloc[:n_components]
        ]

    elif method.upper() == 'NMDS':
        mds = MDS(n_components=n_components, metric='precomputed', metric_mds=False,
                  init='random', random_state=42, n_init=10, max_iter=500)
        points = mds.fit_transform(beta_dm.data)
        coords = pd.DataFrame(
            points,
            index=list(beta_dm.ids),
            columns=[f'NMDS{i + 1}' for i in range(n_components)]
        )
        coords.attrs['method'] = 'NMDS'
        coords.attrs['stress'] = float(mds.stress_)

    else:
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")

    return coords


def perform_permanova(distance_matrix, metadata_df, variable, permutations=999):
    """
    PERMANOVA of a distance matrix against a metadata variable.

    Samples missing from the metadata or without a value for ``variable``
    are left out. When the test cannot be run (fewer than 5 samples, a
    single group, or a group of one) the statistic and p-value are NaN and
    'note' says why.

    Returns:
    --------
    dict
        'test-statistic', 'p-value', 'sample size' and 'note'
    """
    samples = [
        s for s in distance_matrix.ids
        if s in metadata_df.index and pd.notna(metadata_df.loc[s, variable])
    ]
    grouping = metadata_df.loc[samples, variable].astype(str)
    group_sizes = grouping.value_counts()

    if len(samples) < 5:
        skipped = 'Insufficient samples for PERMANOVA'
    elif len(group_sizes) < 2:
        skipped = f'Only one group found in {variable}'
    elif group_sizes.min() < 2:
        skipped = f'At least one group in {variable} has fewer than 2 samples'
    else:
        skipped = None

    if skipped:
        logger.warning(f"PERMANOVA on {variable} skipped: {skipped}")
        return {'test-statistic': np.nan, 'p-value': np.nan, 'sample size': len(samples), 'note': skipped}

    results = permanova(distance_matrix.filter(samples), grouping.values, permutations=permutations)
    return {
        'test-statistic': results['test statistic'],
        'p-value': results['p-value'],
        'sample size': len(samples),
        'note': 'Successful test',
    }
