"""
Calling active constructs.

Each allele's observations are compared with the pooled observations of every
other allele in the same condition using a one-sided rank-sum test. The
background depends on the whole allele table, so the table must be complete
before testing; given that table the per-allele tests are independent.
"""

import logging
import warnings

import numpy as np
import pandas as pd

from mpra_analysis.errors import ConfigurationError, InsufficientDataWarning
from mpra_analysis.multiple_testing import adjust_pvalues, call_significant
from mpra_analysis.rank_tests import rank_sum_test

logger = logging.getLogger(__name__)

ACTIVITY_CALL_COLUMNS = [
    'condition', 'byallele', 'construct', 'type', 'n_obs', 'activity', 'p_value', 'q_value', 'is_active'
]


def test_activity(allele_table: pd.DataFrame,
                  condition: str,
                  min_observations: int = 7,
                  alpha: float = 0.01,
                  fdr_method: str = 'qvalue',
                  use_continuity: bool = False) -> pd.DataFrame:
    """
    Test every allele for activity above the background of all other alleles.

    Alleles with fewer than ``min_observations`` barcode x replicate
    observations are not tested and do not appear in the output.

    Args:
        allele_table: Output of aggregate
        condition: Condition to test
        min_observations: Minimum number of observations for an allele to be tested
        alpha: q-value threshold; alleles with q <= alpha are active
        fdr_method: Multiple testing correction (see adjust_pvalues)
        use_continuity: Apply the continuity correction in the rank-sum test

    Returns:
        pd.DataFrame: One row per tested allele with ACTIVITY_CALL_COLUMNS
    """
    observations_column = f'{condition}_observations'
    if observations_column not in allele_table.columns:
        raise ConfigurationError(f"Allele table has no observations for condition '{condition}'")

    observations = list(allele_table[observations_column])
    n_obs = np.array([len(values) for values in observations])
    everything = np.concatenate(observations) if observations else np.empty(0)
    # offsets of each allele's block inside ``everything``
    ends = np.cumsum(n_obs)
    starts = ends - n_obs

    testable = n_obs >= min_observations
    n_skipped = int((~testable).sum())
    if n_skipped:
        warnings.warn(
            f"{n_skipped} alleles in {condition} have fewer than {min_observations} observations "
            f"and were not tested for activity",
            InsufficientDataWarning,
        )

    logger.info("Testing %d alleles for activity in %s", int(testable.sum()), condition)
    p_values = []
    for i in np.flatnonzero(testable):
        background = np.concatenate([everything[:starts[i]], everything[ends[i]:]])
        p_values.append(rank_sum_test(observations[i], background, alternative='greater',
                                      use_continuity=use_continuity))

    tested = allele_table.loc[testable]
    calls = pd.DataFrame({
        'condition': condition,
        'byallele': tested['byallele'].to_numpy(),
        'construct': tested['construct'].to_numpy(),
        'type': tested['type'].to_numpy(),
        'n_obs': n_obs[testable],
        'activity': tested[f'{condition}_activity'].to_numpy(dtype=float),
        'p_value': np.array(p_values, dtype=float),
    }, columns=ACTIVITY_CALL_COLUMNS[:-2])
    calls['q_value'] = adjust_pvalues(calls['p_value'].to_numpy(), method=fdr_method)
    calls['is_active'] = call_significant(calls['q_value'], alpha, inclusive=True)

    logger.info("%d of %d tested alleles active in %s (q <= %s)",
                int(calls['is_active'].sum()), len(calls), condition, alpha)
    return calls


def active_constructs(activity_calls: pd.DataFrame) -> pd.DataFrame:
    """
    Collapse allele activity calls to constructs.

    A construct is active in a condition when any of its tested alleles is.

    Args:
        activity_calls: Concatenated outputs of test_activity

    Returns:
        pd.DataFrame: Columns ``condition``, ``construct`` and ``is_active``
    """
    return (activity_calls.groupby(['condition', 'construct'], sort=False)['is_active']
            .any().reset_index())
