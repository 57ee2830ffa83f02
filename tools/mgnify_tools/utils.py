"""
Utility functions for MGnify abundance tables: container conversion,
taxonomic agglomeration, assay transformation and filtering.
"""

import logging

import numpy as np
import pandas as pd
from biom import load_table
from biom.table import Table
from biom.util import biom_open

logger = logging.getLogger('mgnify_tools')

TAXONOMY_RANKS = ['Kingdom', 'Phylum', 'Class', 'Order', 'Family', 'Genus', 'Species']

TRANSFORM_METHODS = ('relabundance', 'log10', 'pa', 'hellinger', 'clr')

UNASSIGNED = 'Unassigned'


def table_to_dataframe(table):
    """Return the table data as a dense DataFrame (features x samples)."""
    return pd.DataFrame(
        table.matrix_data.toarray(),
        index=list(table.ids(axis='observation')),
        columns=list(table.ids(axis='sample')),
    )


def sample_metadata_to_dataframe(table):
    """Return the sample metadata of a table, one row per sample."""
    ids = list(table.ids(axis='sample'))
    metadata = table.metadata(axis='sample')
    if metadata is None:
        return pd.DataFrame(index=ids)
    return pd.DataFrame([dict(md or {}) for md in metadata], index=ids)


def observation_metadata_to_dataframe(table):
    """
    Return the feature metadata of a table with one column per taxonomy rank.
    """
    ids = list(table.ids(axis='observation'))
    metadata = table.metadata(axis='observation')
    if metadata is None:
        return pd.DataFrame(index=ids)

    rows = []
    for md in metadata:
        md = dict(md or {})
        taxonomy = list(md.pop('taxonomy', None) or [])
        row = {rank: (taxonomy[i] if i < len(taxonomy) else '') for i, rank in enumerate(TAXONOMY_RANKS)}
        row.update(md)
        rows.append(row)
    return pd.DataFrame(rows, index=ids)


def load_metadata(filepath, sample_id_column='analysis_accession'):
    """
    Load metadata from a CSV file.

    Parameters:
    -----------
    filepath : str
        Path to the metadata file
    sample_id_column : str
        Column name for sample IDs

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index
    """
    metadata_df = pd.read_csv(filepath)

    if sample_id_column not in metadata_df.columns:
        raise ValueError(f"Sample ID column '{sample_id_column}' not found in metadata")

    metadata_df = metadata_df.set_index(sample_id_column, drop=False)
    metadata_df.index.name = None
    if metadata_df.index.duplicated().any():
        logger.warning(f"Found {metadata_df.index.duplicated().sum()} duplicate sample IDs in metadata")
        metadata_df = metadata_df[~metadata_df.index.duplicated(keep='first')]

    # Convert categorical variables to string, leaving missing values missing
    for col in metadata_df.columns:
        if metadata_df[col].dtype == 'object' or metadata_df[col].dtype.name == 'category':
            values = metadata_df[col].astype(object)
            metadata_df[col] = values.where(values.isna(), values.astype(str))

    return metadata_df


def _rebuild(table, data):
    """Return a new Table with ``data`` and the metadata of ``table``."""
    return Table(
        np.asarray(data, dtype=float),
        observation_ids=list(table.ids(axis='observation')),
        sample_ids=list(table.ids(axis='sample')),
        observation_metadata=table.metadata(axis='observation'),
        sample_metadata=table.metadata(axis='sample'),
    )


def agglomerate_by_rank(table, rank):
    """
    Sum feature counts that share the same name at a taxonomic rank.

    Parameters:
    -----------
    table : biom.Table
        Table whose observation metadata holds a 'taxonomy' list
    rank : str
        One of TAXONOMY_RANKS

    Returns:
    --------
    biom.Table
        Collapsed table. Features without an assignment at ``rank`` are
        pooled as 'Unassigned'. Taxonomy is truncated to ``rank``.
    """
    if rank not in TAXONOMY_RANKS:
        raise ValueError(f"Unknown rank: {rank}. Use one of {', '.join(TAXONOMY_RANKS)}.")
    level = TAXONOMY_RANKS.index(rank)

    def _taxonomy(md):
        return list((md or {}).get('taxonomy') or [])

    def _bin(id_, md):
        taxonomy = _taxonomy(md)
        name = taxonomy[level] if len(taxonomy) > level else ''
        return name or UNASSIGNED

    obs_ids = list(table.ids(axis='observation'))
    obs_md = table.metadata(axis='observation') or [None] * len(obs_ids)

    lineages = {}
    for id_, md in zip(obs_ids, obs_md):
        group = _bin(id_, md)
        if group not in lineages:
            if group == UNASSIGNED:
                lineages[group] = [''] * (level + 1)
            else:
                taxonomy = _taxonomy(md)[:level + 1]
                lineages[group] = taxonomy + [''] * (level + 1 - len(taxonomy))

    if not obs_ids:
        return table.copy()

    collapsed = table.collapse(_bin, axis='observation', norm=False,
                               include_collapsed_metadata=False)
    collapsed.add_metadata(
        {group: {'taxonomy': lineage} for group, lineage in lineages.items()},
        axis='observation',
    )

    sample_md = table.metadata(axis='sample')
    if sample_md is not None and collapsed.metadata(axis='sample') is None:
        collapsed.add_metadata(
            {id_: dict(md or {}) for id_, md in zip(table.ids(axis='sample'), sample_md)},
            axis='sample',
        )

    logger.info(f"Agglomerated {len(obs_ids)} features into {len(collapsed.ids(axis='observation'))} at {rank} rank")
    return collapsed


def transform_abundance(abundance_df, method='relabundance'):
    """
    Transform an abundance DataFrame (features x samples).

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    method : str
        'relabundance' (per-sample proportions), 'log10' (log10(x + 1)),
        'pa' (presence/absence), 'hellinger' or 'clr'

    Returns:
    --------
    pandas.DataFrame
        Transformed abundance DataFrame
    """
    method = method.lower()
    if method not in TRANSFORM_METHODS:
        raise ValueError(f"Unknown transformation: {method}. Use one of {', '.join(TRANSFORM_METHODS)}.")

    processed_df = abundance_df.fillna(0).astype(float)

    if method in ('relabundance', 'hellinger'):
        sample_sums = processed_df.sum(axis=0)
        processed_df = processed_df.div(sample_sums.replace(0, np.nan), axis=1).fillna(0)
        if method == 'hellinger':
            processed_df = np.sqrt(processed_df)
    elif method == 'log10':
        processed_df = np.log10(processed_df + 1)
    elif method == 'pa':
        processed_df = (processed_df > 0).astype(float)
    elif method == 'clr':
        from skbio.stats.composition import clr

        # Add small pseudocount to zeros
        positive = processed_df[processed_df > 0].stack()
        min_val = positive.min() / 2 if not positive.empty else 1.0
        processed_df = processed_df.replace(0, min_val)

        # Apply CLR transformation (samples as rows)
        processed_df = pd.DataFrame(
            clr(processed_df.T.values),
            index=processed_df.columns,
            columns=processed_df.index
        ).T

    return processed_df


def transform_assay(table, method='relabundance'):
    """Apply transform_abundance to a biom.Table, keeping its metadata."""
    transformed = transform_abundance(table_to_dataframe(table), method)
    return _rebuild(table, transformed.values)


def create_abundance_summary(abundance_df, metadata_df=None, group_var=None, top_n=20):
    """
    Create a summary table of abundance data.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Relative abundance DataFrame with taxa as index, samples as columns
    metadata_df : pandas.DataFrame, optional
        Metadata DataFrame with samples as index
    group_var : str, optional
        Metadata variable to group by
    top_n : int
        Number of most abundant taxa to include

    Returns:
    --------
    pandas.DataFrame
        Summary table of abundance data
    """
    mean_abundance = abundance_df.mean(axis=1) * 100
    prevalence = (abundance_df > 0).mean(axis=1) * 100

    summary = pd.DataFrame({
        'Mean Abundance (%)': mean_abundance,
        'Prevalence (%)': prevalence
    })

    if metadata_df is not None and group_var is not None and group_var in metadata_df.columns:
        common_samples = [s for s in abundance_df.columns if s in metadata_df.index]

        for group, group_df in metadata_df.loc[common_samples].groupby(group_var):
            group_mean = abundance_df[group_df.index].mean(axis=1) * 100
            summary[f'Mean in {group} (%)'] = group_mean

    summary = summary.sort_values('Mean Abundance (%)', ascending=False)

    if top_n is not None:
        summary = summary.head(top_n)

    return summary


def export_biom_format(table, output_file, generated_by="mgnify_tools"):
    """
    Write a BIOM table to disk (HDF5, or JSON when the name ends in .json).

    Returns:
    --------
    pathlib.Path or str
        The output path
    """
    if str(output_file).endswith('.json'):
        with open(output_file, 'w') as f:
            f.write(table.to_json(generated_by))
    else:
        with biom_open(str(output_file), 'w') as f:
            table.to_hdf5(f, generated_by)

    logger.info(f"Exported abundance data to BIOM format: {output_file}")
    return output_file


def load_biom(filepath):
    """Load a BIOM table written by export_biom_format."""
    return load_table(str(filepath))
