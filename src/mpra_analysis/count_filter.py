"""
Barcode filtering and plasmid pooling.

Removes barcodes of constructs flagged as unusable (for instance constructs
carrying a restriction site introduced by the variant), sums the plasmid DNA
replicates into one pooled column per condition, and drops barcodes whose
pooled plasmid abundance is below a fixed log2 CPM threshold.
"""

import logging
import warnings
from typing import Tuple

import pandas as pd

from mpra_analysis.design import ExperimentDesign, validate_count_table
from mpra_analysis.errors import ConfigurationError, LowRetentionWarning
from mpra_analysis.normalization import log2_cpm

logger = logging.getLogger(__name__)


def pool_dna_counts(table: pd.DataFrame, design: ExperimentDesign) -> pd.DataFrame:
    """
    Add one ``<condition>_DNA_pooled`` column per condition.

    Args:
        table: Barcode count table
        design: Channel layout of the count columns

    Returns:
        pd.DataFrame: Copy of the table with pooled DNA columns
    """
    pooled = table.copy()
    for condition in design.conditions:
        dna_columns = design.dna_columns(condition)
        pooled[design.pooled_dna_column(condition)] = pooled[dna_columns].sum(axis=1)
        logger.debug("Pooled %s into %s", dna_columns, design.pooled_dna_column(condition))
    return pooled


def filter_counts(raw_table: pd.DataFrame,
                  design: ExperimentDesign,
                  flag_column: str = 'clean',
                  valid_flag: str = 'var',
                  min_log2_count: float = 8.0,
                  pseudocount: float = 1.0,
                  scale: float = 1e6,
                  min_retention: float = 0.8) -> Tuple[pd.DataFrame, float]:
    """
    Filter the raw barcode table down to well-measured barcodes.

    Args:
        raw_table: Raw barcode count table
        design: Channel layout of the count columns
        flag_column: Column holding the inclusion flag
        valid_flag: Flag value marking usable variant constructs
        min_log2_count: Minimum pooled plasmid log2 CPM, applied in every condition
        pseudocount: Pseudocount used for the CPM computation
        scale: CPM scale constant
        min_retention: Retained fraction below which a LowRetentionWarning is emitted

    Returns:
        tuple: (filtered_table, retention)
            - filtered_table: Flag-passing, sufficiently abundant barcodes with
              pooled DNA columns added
            - retention: Fraction of flag-passing barcodes that passed the
              abundance filter

    Raises:
        ConfigurationError: If the table violates the schema or a pooled DNA
            column has no counts
    """
    validate_count_table(raw_table, design, flag_column)

    flagged = raw_table[raw_table[flag_column] == valid_flag]
    logger.info(
        "Kept %d of %d barcodes flagged '%s' in column '%s'",
        len(flagged), len(raw_table), valid_flag, flag_column
    )
    if flagged.empty:
        raise ConfigurationError(f"No barcodes flagged '{valid_flag}' in column '{flag_column}'")

    pooled = pool_dna_counts(flagged, design)

    keep = pd.Series(True, index=pooled.index)
    for condition in design.conditions:
        column = design.pooled_dna_column(condition)
        if pooled[column].sum() <= 0:
            raise ConfigurationError(f"Pooled DNA column '{column}' sums to zero")
        keep &= log2_cpm(pooled[column], pseudocount, scale) >= min_log2_count

    filtered = pooled[keep]
    retention = len(filtered) / len(pooled)
    logger.info(
        "Retained %d of %d barcodes (%.1f%%) at pooled DNA log2 CPM >= %s",
        len(filtered), len(pooled), 100 * retention, min_log2_count
    )
    if retention < min_retention:
        warnings.warn(
            f"Only {100 * retention:.1f}% of barcodes passed the plasmid abundance filter "
            f"(expected at least {100 * min_retention:.0f}%)",
            LowRetentionWarning,
        )

    return filtered, retention
