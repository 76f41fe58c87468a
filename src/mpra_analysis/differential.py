"""
Calling MPRA functional variants (MFVs).

For every construct the observations of its reference allele are compared
with those of its mutant allele(s) using a two-sided rank-sum test. The
reported fold change is the difference of medians in log2 space.
"""

import logging
import warnings
from typing import List

import numpy as np
import pandas as pd

from mpra_analysis.design import MUT_TYPE, REF_TYPE
from mpra_analysis.errors import ConfigurationError, InsufficientDataWarning
from mpra_analysis.multiple_testing import adjust_pvalues, call_significant
from mpra_analysis.rank_tests import rank_sum_test

logger = logging.getLogger(__name__)

DIFFERENTIAL_CALL_COLUMNS = [
    'condition', 'construct', 'n_ref', 'n_mut', 'ref_median', 'mut_median',
    'fold_change', 'p_value', 'q_value', 'is_mfv'
]


def _pooled(observations: pd.Series) -> np.ndarray:
    arrays = [values for values in observations if len(values)]
    return np.concatenate(arrays) if arrays else np.empty(0)


def test_differential(allele_table: pd.DataFrame,
                      condition: str,
                      alpha: float = 0.01,
                      fdr_method: str = 'qvalue',
                      use_continuity: bool = False) -> pd.DataFrame:
    """
    Test every construct for a difference between its Ref and Mut alleles.

    Only constructs whose observed allele types are exactly Ref and Mut are
    tested. Positive controls with several mutant alleles have their mutant
    observations pooled.

    Args:
        allele_table: Output of aggregate
        condition: Condition to test
        alpha: q-value threshold; constructs with q < alpha are MFVs
        fdr_method: Multiple testing correction (see adjust_pvalues)
        use_continuity: Apply the continuity correction in the rank-sum test

    Returns:
        pd.DataFrame: One row per tested construct with DIFFERENTIAL_CALL_COLUMNS
    """
    observations_column = f'{condition}_observations'
    if observations_column not in allele_table.columns:
        raise ConfigurationError(f"Allele table has no observations for condition '{condition}'")

    observed = allele_table[allele_table[f'{condition}_n_obs'] > 0]
    rows = []
    skipped: List[str] = []
    for construct, alleles in observed.groupby('construct', sort=False):
        types = set(alleles['type'])
        if types != {REF_TYPE, MUT_TYPE}:
            skipped.append(construct)
            continue

        ref = _pooled(alleles.loc[alleles['type'] == REF_TYPE, observations_column])
        mut = _pooled(alleles.loc[alleles['type'] == MUT_TYPE, observations_column])
        ref_median = float(np.median(ref))
        mut_median = float(np.median(mut))
        rows.append({
            'condition': condition,
            'construct': construct,
            'n_ref': len(ref),
            'n_mut': len(mut),
            'ref_median': ref_median,
            'mut_median': mut_median,
            'fold_change': mut_median - ref_median,
            'p_value': rank_sum_test(ref, mut, alternative='two-sided', use_continuity=use_continuity),
        })

    if skipped:
        warnings.warn(
            f"{len(skipped)} constructs in {condition} lack a Ref/Mut allele pair and were not tested",
            InsufficientDataWarning,
        )
        logger.debug("Untested constructs in %s: %s", condition, skipped[:20])

    calls = pd.DataFrame(rows, columns=DIFFERENTIAL_CALL_COLUMNS[:-2])
    calls['q_value'] = adjust_pvalues(calls['p_value'].to_numpy(dtype=float), method=fdr_method)
    calls['is_mfv'] = call_significant(calls['q_value'], alpha, inclusive=False)

    logger.info("%d of %d tested constructs are MFVs in %s (q < %s)",
                int(calls['is_mfv'].sum()), len(calls), condition, alpha)
    return calls


def functional_variants(differential_calls: pd.DataFrame) -> pd.DataFrame:
    """
    Constructs that are MFVs in at least one condition.

    Args:
        differential_calls: Concatenated outputs of test_differential

    Returns:
        pd.DataFrame: One row per functional variant with ``construct``,
        ``conditions`` (comma separated, in call order), ``min_q_value`` and the
        ``fold_change`` of the condition with the smallest q-value
    """
    mfv = differential_calls[differential_calls['is_mfv'].astype(bool)].reset_index(drop=True)
    if mfv.empty:
        return pd.DataFrame(columns=['construct', 'conditions', 'min_q_value', 'fold_change'])

    best = mfv.loc[mfv.groupby('construct', sort=False)['q_value'].idxmin()]
    conditions = mfv.groupby('construct', sort=False)['condition'].agg(lambda x: ','.join(x))
    result = pd.DataFrame({
        'construct': best['construct'].to_numpy(),
        'conditions': conditions.reindex(best['construct']).to_numpy(),
        'min_q_value': best['q_value'].to_numpy(),
        'fold_change': best['fold_change'].to_numpy(),
    })
    logger.info("Found %d functional variants across %d conditions",
                len(result), differential_calls['condition'].nunique())
    return result
