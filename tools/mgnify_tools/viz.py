"""
Visualization functions for MGnify microbiome data.
"""

import math

import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns


def _group_order(values):
    return sorted(values.dropna().unique(), key=str)


def plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var, metric=None, pairwise=None):
    """
    Create a boxplot of alpha diversity by group.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    metric : str, optional
        Alpha diversity metric to plot (if None, plots all metrics)
    pairwise : pandas.DataFrame or dict, optional
        Output of pairwise_alpha_tests (or a dict of them keyed by metric);
        adjusted p-values are drawn as brackets

    Returns:
    --------
    matplotlib.figure.Figure or dict
        Boxplot figure(s)
    """
    common_samples = [s for s in alpha_df.index if s in metadata_df.index]

    alpha_subset = alpha_df.loc[common_samples]
    metadata_subset = metadata_df.loc[common_samples]

    def _pairwise_for(m):
        if isinstance(pairwise, dict):
            return pairwise.get(m)
        return pairwise

    if metric is None:
        return {
            m: _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, m, _pairwise_for(m))
            for m in alpha_df.columns
        }

    if metric not in alpha_df.columns:
        raise ValueError(f"Metric '{metric}' not found in alpha diversity data")

    return _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, metric, _pairwise_for(metric))


def _create_diversity_boxplot(alpha_df, metadata_df, group_var, metric, pairwise=None):
    """Helper function to create a diversity boxplot."""
    fig, ax = plt.subplots(figsize=(10, 6))

    plot_data = pd.DataFrame({
        metric: alpha_df[metric],
        group_var: metadata_df[group_var]
    }).dropna()
    order = _group_order(plot_data[group_var])

    sns.boxplot(x=group_var, y=metric, data=plot_data, order=order, ax=ax)
    sns.stripplot(x=group_var, y=metric, data=plot_data, order=order,
                  color='black', size=4, alpha=0.5, ax=ax)

    if pairwise is not None and not pairwise.empty:
        _add_significance_brackets(ax, pairwise, order, plot_data[metric])

    ax.set_title(f'{metric} Diversity by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel(f'{metric} Diversity')

    # Rotate x-axis labels if needed
    if order and max(len(str(g)) for g in order) > 10:
        plt.setp(ax.get_xticklabels(), rotation=45, ha='right')

    fig.tight_layout()
    return fig


def _add_significance_brackets(ax, pairwise, order, values):
    """Draw one bracket per group pair, labelled with the adjusted p-value."""
    positions = {str(group): i for i, group in enumerate(order)}
    y_max = values.max()
    step = (values.max() - values.min()) * 0.08 or 0.1

    level = 0
    for _, row in pairwise.iterrows():
        x1 = positions.get(str(row['group1']))
        x2 = positions.get(str(row['group2']))
        if x1 is None or x2 is None:
            continue
        level += 1
        y = y_max + step * level
        ax.plot([x1, x1, x2, x2], [y, y + step * 0.3, y + step * 0.3, y], lw=1, color='black')
        ax.text((x1 + x2) / 2, y + step * 0.35, f"p.adj = {row['adjusted p-value']:.2g}",
                ha='center', va='bottom', fontsize=9)

    if level:
        ax.set_ylim(top=y_max + step * (level + 1))


def plot_ordination(coords, metadata_df, variable):
    """
    Create an ordination scatter plot.

    Parameters:
    -----------
    coords : pandas.DataFrame
        Sample coordinates from run_ordination
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str or None
        Metadata variable for coloring points

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    x_col, y_col = coords.columns[:2]
    method = coords.attrs.get('method', 'Ordination')

    plot_df = coords[[x_col, y_col]].copy()
    if variable is not None:
        plot_df[variable] = metadata_df[variable].reindex(plot_df.index)

    fig, ax = plt.subplots(figsize=(10, 8))

    sns.scatterplot(
        data=plot_df.reset_index(),
        x=x_col,
        y=y_col,
        hue=variable,
        s=100,
        ax=ax
    )

    explained = coords.attrs.get('proportion_explained')
    if explained:
        ax.set_xlabel(f'{x_col} ({explained[0] * 100:.1f}% variance explained)')
        ax.set_ylabel(f'{y_col} ({explained[1] * 100:.1f}% variance explained)')

    stress = coords.attrs.get('stress')
    if stress is not None:
        ax.text(0.02, 0.98, f"Stress: {stress:.3f}",
                transform=ax.transAxes, va='top', ha='left',
                bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    if variable is not None:
        ax.set_title(f'{method} of Beta Diversity ({variable})')
        ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')
    else:
        ax.set_title(f'{method} of Beta Diversity')

    fig.tight_layout()
    return fig


def plot_top_features(abundance_df, metadata_df, features, group_var, ylabel='Relative Abundance'):
    """
    Plot the abundance of selected taxa by group, one panel per taxon.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    features : list
        Taxa to plot
    group_var : str
        Grouping variable from metadata
    ylabel : str
        Label of the abundance axis

    Returns:
    --------
    matplotlib.figure.Figure
        Figure with one boxplot per taxon
    """
    if len(features) == 0:
        raise ValueError("No features to plot")
    missing = [f for f in features if f not in abundance_df.index]
    if missing:
        raise ValueError(f"Features not found in abundance data: {', '.join(map(str, missing))}")

    common_samples = [s for s in abundance_df.columns if s in metadata_df.index]
    groups = metadata_df.loc[common_samples, group_var]
    order = _group_order(groups)

    ncols = min(3, len(features))
    nrows = math.ceil(len(features) / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 4 * nrows), squeeze=False)

    for ax, feature in zip(axes.flat, features):
        plot_data = pd.DataFrame({
            'Abundance': abundance_df.loc[feature, common_samples],
            group_var: groups
        }).dropna()

        sns.boxplot(x=group_var, y='Abundance', data=plot_data, order=order, ax=ax)
        sns.stripplot(x=group_var, y='Abundance', data=plot_data, order=order,
                      color='black', size=3, alpha=0.5, ax=ax)
        ax.set_title(str(feature))
        ax.set_xlabel('')
        ax.set_ylabel(ylabel)
        plt.setp(ax.get_xticklabels(), rotation=45, ha='right')

    for ax in list(axes.flat)[len(features):]:
        ax.axis('off')

    fig.tight_layout()
    return fig


def plot_stacked_bar(abundance_df, metadata_df, group_var, top_n=10, other_category=True):
    """
    Create a stacked bar plot of the most abundant taxa by group.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    top_n : int
        Number of top taxa to include
    other_category : bool
        Whether to include an "Other" category for remaining taxa

    Returns:
    --------
    matplotlib.figure.Figure
        Stacked bar plot figure
    """
    common_samples = [s for s in abundance_df.columns if s in metadata_df.index]
    filtered_abundance = abundance_df[common_samples]

    top_taxa = filtered_abundance.mean(axis=1).nlargest(top_n).index.tolist()
    plot_data = filtered_abundance.loc[top_taxa].copy()

    if other_category and len(filtered_abundance) > len(top_taxa):
        plot_data.loc['Other'] = filtered_abundance.drop(top_taxa).sum(axis=0)

    group_info = metadata_df.loc[common_samples, group_var]

    group_means = {}
    for group in _group_order(group_info):
        group_samples = group_info[group_info == group].index
        group_means[group] = plot_data[group_samples].mean(axis=1)

    # Groups as rows, taxa as stacked segments, in percent
    plot_df = pd.DataFrame(group_means).T
    plot_df = plot_df.div(plot_df.sum(axis=1), axis=0) * 100

    fig, ax = plt.subplots(figsize=(12, 8))
    plot_df.plot(kind='bar', stacked=True, ax=ax, colormap='tab20')

    ax.set_title(f'Mean Taxa Abundance by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel('Relative Abundance (%)')
    ax.legend(title='Taxa', bbox_to_anchor=(1.05, 1), loc='upper left')

    fig.tight_layout()
    return fig
