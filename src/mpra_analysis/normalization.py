"""
Depth normalization and quantile normalization of barcode activity ratios.

Each channel is converted to counts per million after a pseudocount, then to
log2. Per (condition, replicate) the barcode activity is the log2 RNA CPM minus
the log2 CPM of the condition's pooled plasmid DNA. The ratio columns of all
conditions are quantile normalized together and recentered on their global
median so that activity scores are comparable across replicates and conditions.
"""

import logging
import warnings
from typing import List, Tuple

import numpy as np
import pandas as pd

from mpra_analysis.design import ExperimentDesign
from mpra_analysis.errors import ConfigurationError, DegenerateReplicateWarning

logger = logging.getLogger(__name__)


def counts_per_million(counts: pd.Series, pseudocount: float = 1.0, scale: float = 1e6) -> pd.Series:
    """
    Scale a count column to counts per million after adding a pseudocount.

    The column sum is taken after the pseudocount, so the result always sums
    to ``scale``.

    Args:
        counts: Raw counts of one channel
        pseudocount: Value added to every count before scaling
        scale: Target column total

    Returns:
        pd.Series: Scaled counts
    """
    shifted = counts.astype(float) + pseudocount
    total = shifted.sum()
    if not total > 0:
        raise ConfigurationError(f"Column '{counts.name}' has no signal to scale")
    return shifted * (scale / total)


def log2_cpm(counts: pd.Series, pseudocount: float = 1.0, scale: float = 1e6) -> pd.Series:
    """log2 of counts_per_million."""
    return np.log2(counts_per_million(counts, pseudocount, scale))


def quantile_normalize(matrix: pd.DataFrame) -> pd.DataFrame:
    """
    Quantile normalize the columns of a matrix.

    The reference distribution is the position-wise mean of the sorted columns.
    Every value is replaced by the reference value at its rank within its own
    column; tied values receive the mean of the reference values over the
    positions they occupy.

    Args:
        matrix: Numeric DataFrame without missing values

    Returns:
        pd.DataFrame: Normalized matrix with the same index and columns
    """
    values = matrix.to_numpy(dtype=float)
    if values.size == 0:
        return matrix.astype(float)

    reference = np.sort(values, axis=0).mean(axis=1)
    normalized = np.empty_like(values)

    for j in range(values.shape[1]):
        order = np.argsort(values[:, j], kind='mergesort')
        sorted_column = values[order, j]
        # tie groups in sorted order
        _, group_of_position, group_sizes = np.unique(sorted_column, return_inverse=True, return_counts=True)
        group_means = np.bincount(group_of_position, weights=reference) / group_sizes
        normalized[order, j] = group_means[group_of_position]

    return pd.DataFrame(normalized, index=matrix.index, columns=matrix.columns)


def _usable_rna_channels(table: pd.DataFrame, design: ExperimentDesign) -> Tuple[ExperimentDesign, List[str]]:
    """Drop RNA replicates whose column sums to zero."""
    dropped = []
    for condition in design.conditions:
        for channel in design.rna_channels(condition):
            if table[channel.column].sum() <= 0:
                warnings.warn(
                    f"RNA replicate '{channel.column}' has a zero column sum and is excluded",
                    DegenerateReplicateWarning,
                )
                dropped.append(channel.column)

    usable = design.without(dropped)
    for condition in design.conditions:
        if not usable.rna_channels(condition):
            raise ConfigurationError(f"Condition '{condition}' has no RNA replicate with signal")
    return usable, dropped


def normalize(filtered_table: pd.DataFrame, design: ExperimentDesign,
              pseudocount: float = 1.0, scale: float = 1e6) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Normalize filtered barcode counts into quantile-normalized activity ratios.

    Args:
        filtered_table: Output of filter_counts, including pooled DNA columns
        design: Channel layout of the count columns
        pseudocount: Value added to every count before CPM scaling
        scale: CPM scale constant

    Returns:
        tuple: (log_table, ratio_table)
            - log_table: Input table plus ``<channel>_cpm`` and ``<channel>_log2cpm``
              columns for every RNA replicate and pooled DNA column
            - ratio_table: Barcode metadata plus one ``<condition>_<replicate>_ratio``
              column per usable replicate, quantile normalized and median centered

    Raises:
        ConfigurationError: If a pooled DNA column or every replicate of a
            condition has no signal
    """
    logger.info("Normalizing %d barcodes", len(filtered_table))
    if filtered_table.empty:
        raise ConfigurationError("No barcodes left to normalize")

    usable, dropped = _usable_rna_channels(filtered_table, design)
    if dropped:
        logger.warning("Excluded %d zero-sum RNA replicates: %s", len(dropped), ', '.join(dropped))

    log_table = filtered_table.copy()
    channel_columns = []
    for condition in usable.conditions:
        pooled = usable.pooled_dna_column(condition)
        if pooled not in log_table.columns:
            raise ConfigurationError(f"Pooled DNA column '{pooled}' missing; run filter_counts first")
        if pooled not in channel_columns:
            channel_columns.append(pooled)
        channel_columns.extend(channel.column for channel in usable.rna_channels(condition))

    for column in channel_columns:
        cpm = counts_per_million(log_table[column], pseudocount, scale)
        log_table[f'{column}_cpm'] = cpm
        log_table[f'{column}_log2cpm'] = np.log2(cpm)

    metadata = [column for column in filtered_table.columns if column not in design.count_columns
                and not column.endswith('_DNA_pooled')]
    ratios = {}
    for condition in usable.conditions:
        dna_log = log_table[f'{usable.pooled_dna_column(condition)}_log2cpm']
        for channel in usable.rna_channels(condition):
            ratios[usable.ratio_column(condition, channel.replicate)] = (
                log_table[f'{channel.column}_log2cpm'] - dna_log
            )
    ratio_matrix = pd.DataFrame(ratios, index=filtered_table.index)
    logger.debug("Raw ratio matrix head:\n%s", ratio_matrix.head())

    normalized = quantile_normalize(ratio_matrix)
    global_median = float(np.median(normalized.to_numpy()))
    normalized = normalized - global_median
    logger.info(
        "Quantile normalized %d ratio columns; recentered by global median %.4f",
        normalized.shape[1], global_median
    )

    ratio_table = pd.concat([filtered_table[metadata], normalized], axis=1)
    return log_table, ratio_table
