"""
Differential abundance testing for MGnify abundance data.
"""

import logging

import numpy as np
import pandas as pd
from patsy import dmatrix
from skbio.stats.composition import ancombc, struc_zero as find_structural_zeros

logger = logging.getLogger('mgnify_tools')

INTERCEPT = 'Intercept'

# ancombc result column -> prefix of the per-term columns
RESULT_COLUMNS = {
    'Log(FC)': 'lfc',
    'SE': 'se',
    'W': 'W',
    'pvalue': 'p',
    'qvalue': 'q',
}


def _structural_zeros(counts, metadata_df, group, neg_lb=False):
    """Map each taxon that is a structural zero in some group levels to those levels."""
    zero_table = find_structural_zeros(counts.T, metadata_df.loc[counts.columns, [group]], group,
                                       neg_lb=neg_lb)
    return {
        taxon: [str(level) for level in zero_table.columns[row.values]]
        for taxon, row in zero_table.iterrows() if row.any()
    }


def ancom_bc(abundance_df, metadata_df, formula=None, group=None, p_adj_method='fdr_bh',
             prv_cut=0.10, lib_cut=0, struc_zero=False, neg_lb=False, alpha=0.05,
             max_iter=100, tol=1e-5, pseudo=1):
    """
    Analysis of compositions of microbiomes with bias correction (ANCOM-BC).

    Filters taxa and samples the way the R ``ancombc`` command does, then runs
    scikit-bio's ``ancombc`` on the remaining counts plus a pseudocount.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Raw counts with taxa as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    formula : str, optional
        Right-hand side patsy formula, e.g. "group + age". Defaults to ``group``.
    group : str, optional
        Categorical variable used for structural zero detection
    p_adj_method : str
        Multiple testing correction ("holm", "bh" or any statsmodels ``multipletests`` method)
    prv_cut : float
        Taxa present in fewer than this fraction of samples are dropped
    lib_cut : float
        Samples with a library size below this value are dropped
    struc_zero : bool
        Whether to detect taxa absent from every sample of a ``group`` level
    neg_lb : bool
        Use the lower confidence bound of the group prevalence for structural zeros
    alpha : float
        Significance level for the ``diff_`` columns
    max_iter, tol : int, float
        Convergence settings for the bias estimation
    pseudo : float
        Pseudocount added to the counts before the model is fitted

    Returns:
    --------
    pandas.DataFrame
        One row per taxon with lfc_, se_, W_, p_, q_ and diff_ columns for
        every design term, plus a structural_zero flag
    """
    if formula is None:
        if group is None:
            raise ValueError("Provide a model formula or a group variable")
        formula = group
    if struc_zero and group is None:
        raise ValueError("Structural zero detection requires a group variable")

    common_samples = [s for s in abundance_df.columns if s in metadata_df.index]
    counts = abundance_df[common_samples].fillna(0).astype(float)

    # Library size and prevalence filters
    lib_size = counts.sum(axis=0)
    counts = counts.loc[:, (lib_size >= lib_cut) & (lib_size > 0)]
    prevalence = (counts > 0).mean(axis=1)
    counts = counts.loc[prevalence >= prv_cut]
    logger.info(f"ANCOM-BC: {counts.shape[0]} taxa and {counts.shape[1]} samples pass the filters")

    # Rows with missing covariates are dropped by patsy
    design = dmatrix(formula, metadata_df.loc[counts.columns], return_type='dataframe')
    if struc_zero:
        design = design[metadata_df.loc[design.index, group].notna().values]
    counts = counts[design.index]
    terms = [c for c in design.columns if c != INTERCEPT]
    if not terms:
        raise ValueError(f"Formula '{formula}' has no terms besides the intercept")

    zero_groups = {}
    if struc_zero:
        zero_groups = _structural_zeros(counts, metadata_df, group, neg_lb=neg_lb)
        n_levels = metadata_df.loc[counts.columns, group].nunique()
        absent = [taxon for taxon, levels in zero_groups.items() if len(levels) == n_levels]
        if absent:
            logger.info(f"ANCOM-BC: dropping {len(absent)} taxa absent from every {group} level")
            for taxon in absent:
                del zero_groups[taxon]
            counts = counts.drop(index=absent)
        if zero_groups:
            logger.info(f"ANCOM-BC: {len(zero_groups)} taxa are structural zeros in at least one {group} level")
            counts = counts.drop(index=list(zero_groups))

    n_samples, n_params = design.shape
    if counts.shape[0] < 2:
        raise ValueError("Fewer than 2 taxa left after filtering")
    if n_samples <= n_params:
        raise ValueError(f"Not enough samples ({n_samples}) for {n_params} model parameters")

    # scikit-bio rejects missing values anywhere in the metadata
    model_metadata = metadata_df.loc[counts.columns]
    model_metadata = model_metadata.loc[:, model_metadata.notna().all()]

    fit = ancombc(counts.T + pseudo, model_metadata, formula, max_iter=max_iter, tol=tol,
                  alpha=alpha, p_adjust=p_adj_method).result
    terms = [c for c in fit.index.unique(level='Covariate') if c != INTERCEPT]

    results = pd.DataFrame(index=counts.index)
    results['taxon'] = counts.index
    for term in terms:
        term_fit = fit.xs(term, level='Covariate').reindex(counts.index)
        for column, prefix in RESULT_COLUMNS.items():
            results[f'{prefix}_{term}'] = term_fit[column].astype(float).values
        results[f'diff_{term}'] = term_fit['Signif'].fillna(False).astype(bool).values
    results['structural_zero'] = False

    if zero_groups:
        zero_rows = pd.DataFrame(index=list(zero_groups))
        zero_rows['taxon'] = zero_rows.index
        for term in terms:
            for prefix in RESULT_COLUMNS.values():
                zero_rows[f'{prefix}_{term}'] = np.nan
            zero_rows[f'diff_{term}'] = True
        zero_rows['structural_zero'] = True
        zero_rows['zero_in'] = [', '.join(zero_groups[t]) for t in zero_rows.index]
        results = pd.concat([results, zero_rows])

    results = results.sort_values(f'q_{terms[0]}', na_position='last')
    return results


def result_terms(results):
    """Design terms present in an ancom_bc result table."""
    return [c[len('lfc_'):] for c in results.columns if c.startswith('lfc_')]


def top_features(results, term=None, n=5, alpha=0.05):
    """
    Pick the taxa to plot from an ancom_bc result table.

    Structural zeros come first, then significant taxa (q <= alpha) ranked
    by q-value. If nothing is significant, the taxa with the smallest
    q-values are returned.
    """
    if term is None:
        term = result_terms(results)[0]
    q_col = f'q_{term}'
    if q_col not in results.columns:
        raise ValueError(f"Term '{term}' not found. Available terms: {', '.join(result_terms(results))}")

    if 'structural_zero' in results.columns:
        structural = results['structural_zero'].fillna(False).astype(bool)
    else:
        structural = pd.Series(False, index=results.index)

    significant = results[structural | (results[q_col] <= alpha)]
    if significant.empty:
        chosen = results.dropna(subset=[q_col]).sort_values(q_col)
    else:
        # structural zeros carry no q-value
        chosen = significant.sort_values(q_col, na_position='first')
    return list(chosen.index[:n])
