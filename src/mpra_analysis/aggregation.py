"""
Collapse barcode-level activity ratios to alleles.

Barcode noise is heavy-tailed, so every allele is summarized by the median of
its barcode x replicate observations. The observations themselves are kept on
the allele table (one numpy array per allele and condition) because both
statistical tests operate on them.
"""

import itertools
import logging
from typing import List

import numpy as np
import pandas as pd

from mpra_analysis.design import ExperimentDesign, METADATA_COLUMNS

logger = logging.getLogger(__name__)


def _ratio_columns(ratio_table: pd.DataFrame, design: ExperimentDesign, condition: str) -> dict:
    """Ratio columns of ``condition`` actually present in the table (dropped replicates are absent)."""
    return {
        column: replicate for column, replicate in design.ratio_columns(condition).items()
        if column in ratio_table.columns
    }


def to_long(ratio_table: pd.DataFrame, design: ExperimentDesign) -> pd.DataFrame:
    """
    Reshape the wide ratio table into one row per (barcode, condition, replicate).

    Args:
        ratio_table: Output of normalize
        design: Channel layout used to build the ratio table

    Returns:
        pd.DataFrame: Columns ``byallele``, ``construct``, ``type``, ``condition``,
        ``replicate`` and ``value``
    """
    frames = []
    id_columns = ['byallele', 'construct', 'type']
    for condition in design.conditions:
        columns = _ratio_columns(ratio_table, design, condition)
        if not columns:
            continue
        long_df = ratio_table[id_columns + list(columns)].melt(
            id_vars=id_columns, var_name='ratio_column', value_name='value'
        )
        long_df['condition'] = condition
        long_df['replicate'] = long_df['ratio_column'].map(columns)
        frames.append(long_df.drop(columns=['ratio_column']))

    if not frames:
        return pd.DataFrame(columns=id_columns + ['condition', 'replicate', 'value'])
    return pd.concat(frames, ignore_index=True)[id_columns + ['condition', 'replicate', 'value']]


def aggregate(ratio_table: pd.DataFrame, design: ExperimentDesign) -> pd.DataFrame:
    """
    Build the allele table from barcode-level ratios.

    For every condition each allele gets ``<condition>_activity`` (median of its
    observations), ``<condition>_n_obs`` and ``<condition>_observations`` (the
    observation values as a numpy array). Alleles are ordered by first
    appearance in the ratio table; metadata comes from their first barcode.

    Args:
        ratio_table: Output of normalize
        design: Channel layout used to build the ratio table

    Returns:
        pd.DataFrame: One row per distinct ``byallele``
    """
    metadata = [column for column in METADATA_COLUMNS if column in ratio_table.columns]
    allele_table = ratio_table[metadata].drop_duplicates(subset='byallele', keep='first')
    allele_table = allele_table.set_index('byallele', drop=False)
    logger.info("Aggregating %d barcodes into %d alleles", len(ratio_table), len(allele_table))

    long_df = to_long(ratio_table, design)
    for condition in design.conditions:
        condition_df = long_df[long_df['condition'] == condition]
        grouped = condition_df.groupby('byallele', sort=False)['value']
        observations = {allele: values.to_numpy(dtype=float) for allele, values in grouped}

        # object array filled element-wise so equal-length arrays are not stacked into 2D
        cells = np.empty(len(allele_table), dtype=object)
        for i, allele in enumerate(allele_table.index):
            cells[i] = observations.get(allele, np.empty(0))

        allele_table[f'{condition}_activity'] = grouped.median().reindex(allele_table.index)
        allele_table[f'{condition}_n_obs'] = [len(values) for values in cells]
        allele_table[f'{condition}_observations'] = pd.Series(cells, index=allele_table.index)
        logger.debug("Allele activity for %s:\n%s", condition, allele_table[f'{condition}_activity'].head())

    return allele_table.reset_index(drop=True)


def replicate_activity_matrix(ratio_table: pd.DataFrame, design: ExperimentDesign) -> pd.DataFrame:
    """
    Median activity per allele and replicate column, for reproducibility checks.

    Args:
        ratio_table: Output of normalize
        design: Channel layout used to build the ratio table

    Returns:
        pd.DataFrame: Index ``byallele``, one column per ratio column
    """
    columns: List[str] = []
    for condition in design.conditions:
        columns.extend(_ratio_columns(ratio_table, design, condition))
    return ratio_table.groupby('byallele', sort=False)[columns].median()


def replicate_correlations(matrix: pd.DataFrame, design: ExperimentDesign,
                           percentile: float = 0.0) -> pd.DataFrame:
    """
    Pearson correlation between every pair of replicates within each condition.

    Only alleles whose mean activity across the condition's replicates is at or
    above the given percentile of that mean are used, so the diagnostic can be
    restricted to active constructs.

    Args:
        matrix: Output of replicate_activity_matrix
        design: Channel layout used to build the ratio table
        percentile: Percentile (0-100) of mean allele activity to restrict to

    Returns:
        pd.DataFrame: Columns ``condition``, ``replicate_a``, ``replicate_b``,
        ``n_alleles`` and ``pearson_r``
    """
    rows = []
    for condition in design.conditions:
        columns = _ratio_columns(matrix, design, condition)
        if len(columns) < 2:
            continue
        sub = matrix[list(columns)]
        if sub.empty:
            continue
        mean_activity = sub.mean(axis=1)
        cutoff = np.percentile(mean_activity, percentile)
        selected = sub[mean_activity >= cutoff]

        for column_a, column_b in itertools.combinations(columns, 2):
            rows.append({
                'condition': condition,
                'replicate_a': columns[column_a],
                'replicate_b': columns[column_b],
                'n_alleles': len(selected),
                'pearson_r': selected[column_a].corr(selected[column_b], method='pearson'),
            })

    correlations = pd.DataFrame(rows, columns=['condition', 'replicate_a', 'replicate_b', 'n_alleles', 'pearson_r'])
    logger.info("Computed %d replicate correlations", len(correlations))
    return correlations
