"""
The MGnify tutorial workflow, one function per step.

1. Fetch: study -> analyses -> metadata -> pipeline-version filter -> BIOM table
2. Prepare: agglomerate by rank and transform to relative abundance
3. Diversity: alpha diversity with group tests, beta diversity ordination
4. Differential abundance: ANCOM-BC and plots of the top taxa
"""

from pathlib import Path

import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from .client import MgnifyClient, filter_by_pipeline_version
from .diversity import (
    calculate_alpha_diversity,
    calculate_beta_diversity,
    compare_alpha_diversity,
    pairwise_alpha_tests,
    perform_permanova,
    run_ordination,
)
from .logger import log_print
from .stats import ancom_bc, result_terms, top_features
from .utils import (
    agglomerate_by_rank,
    create_abundance_summary,
    export_biom_format,
    load_biom,
    load_metadata,
    table_to_dataframe,
    transform_abundance,
)
from .viz import (
    plot_alpha_diversity_boxplot,
    plot_ordination,
    plot_stacked_bar,
    plot_top_features,
)

COUNTS_FILE = 'counts.biom.json'
METADATA_FILE = 'metadata.csv'


def output_dirs(config):
    """Create and return the data, tables and figures directories."""
    results_dir = Path(config['output']['results_dir'])
    dirs = {
        'data': results_dir / 'data',
        'tables': results_dir / 'tables',
        'figures': results_dir / 'figures',
    }
    for path in dirs.values():
        path.mkdir(exist_ok=True, parents=True)
    return dirs


def _save_figure(fig, path, config):
    fig.savefig(path, dpi=config['visualization']['figure_dpi'], bbox_inches='tight')
    plt.close(fig)
    log_print(f"  Figure saved to {path}")


def create_client(config):
    """Build an MgnifyClient from the 'client' config section."""
    return MgnifyClient(**config['client'])


def fetch_study_data(config, client=None):
    """
    Fetch the taxonomic results of a study.

    Returns:
    --------
    tuple
        (biom.Table of counts, metadata DataFrame indexed by analysis accession)
    """
    study = config['study']
    client = client or create_client(config)
    dirs = output_dirs(config)

    log_print(f"Searching analyses of study {study['accession']}")
    analyses = client.search_analysis('studies', study['accession'])
    metadata_df = client.get_metadata(analyses)

    if study.get('pipeline_version') is not None and not metadata_df.empty:
        metadata_df = filter_by_pipeline_version(metadata_df, study['pipeline_version'])

    if metadata_df.empty:
        raise ValueError(f"No analyses left for study {study['accession']}")

    log_print(f"Fetching {study['taxonomy'].upper()} taxonomy for {len(metadata_df)} analyses")
    table = client.get_result(list(metadata_df.index), taxonomy=study['taxonomy'], metadata=metadata_df)

    export_biom_format(table, dirs['data'] / COUNTS_FILE)
    metadata_df.to_csv(dirs['data'] / METADATA_FILE, index=False)
    log_print(f"Abundance data: {table.shape[0]} taxa, {table.shape[1]} samples")

    return table, metadata_df


def load_study_data(config):
    """Reload the table and metadata written by fetch_study_data."""
    dirs = output_dirs(config)
    counts_file = dirs['data'] / COUNTS_FILE
    metadata_file = dirs['data'] / METADATA_FILE

    for path in (counts_file, metadata_file):
        if not path.exists():
            raise FileNotFoundError(f"{path} not found. Run the fetch step first.")

    return load_biom(counts_file), load_metadata(metadata_file)


def prepare_tables(table, config):
    """
    Agglomerate to the configured rank and transform.

    Returns:
    --------
    tuple
        (counts DataFrame, transformed DataFrame), taxa as index
    """
    analysis = config['analysis']
    if analysis.get('rank'):
        table = agglomerate_by_rank(table, analysis['rank'])

    counts_df = table_to_dataframe(table)
    transformed_df = transform_abundance(counts_df, analysis['transform'])
    return counts_df, transformed_df


def _group_variable(config, metadata_df):
    group_var = config['analysis'].get('group_variable')
    if group_var and group_var not in metadata_df.columns:
        log_print(f"Warning: Variable '{group_var}' not found in metadata", level="warning")
        return None
    return group_var


def run_diversity_analysis(counts_df, abundance_df, metadata_df, config):
    """
    Alpha diversity with group comparisons and a beta diversity ordination.

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Counts, taxa as index (used for alpha diversity)
    abundance_df : pandas.DataFrame
        Transformed abundances, taxa as index (used for beta diversity)
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    config : dict
        Workflow configuration

    Returns:
    --------
    dict
        alpha, alpha_tests, pairwise, ordination and permanova results
    """
    diversity = config['diversity']
    dirs = output_dirs(config)
    group_var = _group_variable(config, metadata_df)
    results = {}

    log_print("Calculating alpha diversity metrics...")
    alpha_df = calculate_alpha_diversity(counts_df, metrics=diversity['alpha_metrics'])
    alpha_df.to_csv(dirs['tables'] / 'alpha_diversity.csv')
    results['alpha'] = alpha_df

    if group_var:
        log_print(f"Analyzing differences in alpha diversity by {group_var}")
        alpha_tests = compare_alpha_diversity(alpha_df, metadata_df, group_var)
        pd.DataFrame(alpha_tests).T.to_csv(dirs['tables'] / 'alpha_diversity_tests.csv')
        results['alpha_tests'] = alpha_tests

        pairwise = {}
        for metric in alpha_df.columns:
            pairwise[metric] = pairwise_alpha_tests(alpha_df, metadata_df, group_var, metric,
                                                    p_adjust=diversity['p_adjust'])
            pairwise[metric].to_csv(dirs['tables'] / f'alpha_diversity_{metric}_pairwise.csv', index=False)

            fig = plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var, metric,
                                               pairwise=pairwise[metric])
            _save_figure(fig, dirs['figures'] / f'alpha_diversity_{metric}.png', config)
        results['pairwise'] = pairwise

        summary = create_abundance_summary(abundance_df, metadata_df, group_var)
        summary.to_csv(dirs['tables'] / 'abundance_summary.csv')
        _save_figure(plot_stacked_bar(abundance_df, metadata_df, group_var),
                     dirs['figures'] / 'composition.png', config)

    log_print(f"Calculating {diversity['beta_metric']} beta diversity...")
    beta_dm = calculate_beta_diversity(abundance_df, metric=diversity['beta_metric'])
    coords = run_ordination(beta_dm, method=diversity['ordination'])
    coords.to_csv(dirs['tables'] / 'ordination.csv')
    results['ordination'] = coords

    fig = plot_ordination(coords, metadata_df, group_var)
    _save_figure(fig, dirs['figures'] / f"beta_diversity_{diversity['ordination'].lower()}.png", config)

    if group_var:
        permanova_result = perform_permanova(beta_dm, metadata_df, group_var)
        pd.DataFrame([permanova_result], index=[group_var]).to_csv(dirs['tables'] / 'permanova.csv')
        log_print(f"  PERMANOVA p-value: {permanova_result['p-value']}")
        results['permanova'] = permanova_result

    return results


def run_differential_abundance(counts_df, abundance_df, metadata_df, config):
    """
    Fit ANCOM-BC on the counts and plot the top taxa.

    Returns:
    --------
    pandas.DataFrame
        ANCOM-BC results
    """
    da = config['differential_abundance']
    dirs = output_dirs(config)
    group_var = _group_variable(config, metadata_df)
    if group_var is None:
        raise ValueError("Differential abundance needs a group variable present in the metadata")

    log_print(f"Performing differential abundance analysis by {group_var}")
    results = ancom_bc(
        counts_df,
        metadata_df,
        formula=da.get('formula') or f'C(Q("{group_var}"))',
        group=group_var,
        p_adj_method=da['p_adj_method'],
        prv_cut=da['prv_cut'],
        lib_cut=da['lib_cut'],
        struc_zero=da['struc_zero'],
        neg_lb=da.get('neg_lb', False),
        alpha=da['alpha'],
    )
    results.to_csv(dirs['tables'] / 'differential_abundance.csv', index=False)

    term = result_terms(results)[0]
    n_significant = int(results[f'diff_{term}'].sum())
    log_print(f"  Found {n_significant} differentially abundant taxa for {term} (q <= {da['alpha']})")

    features = [f for f in top_features(results, term, n=da['top_n'], alpha=da['alpha'])
                if f in abundance_df.index]
    if features:
        fig = plot_top_features(abundance_df, metadata_df, features, group_var)
        _save_figure(fig, dirs['figures'] / 'differential_abundance_top_features.png', config)

    return results


def run_tutorial(config, client=None):
    """Run every step in order."""
    sns.set(style=config['visualization']['style'])

    table, metadata_df = fetch_study_data(config, client)
    counts_df, abundance_df = prepare_tables(table, config)
    diversity = run_diversity_analysis(counts_df, abundance_df, metadata_df, config)
    differential = run_differential_abundance(counts_df, abundance_df, metadata_df, config)

    log_print("MGnify tutorial workflow complete!")
    return {
        'table': table,
        'metadata': metadata_df,
        'counts': counts_df,
        'abundance': abundance_df,
        'diversity': diversity,
        'differential_abundance': differential,
    }
