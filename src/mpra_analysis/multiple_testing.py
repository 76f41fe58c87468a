"""
Multiple testing correction: Storey q-values and statsmodels corrections.

q-values follow Storey & Tibshirani (2003): the proportion of true null
hypotheses (pi0) is estimated from the right tail of the p-value distribution,
and q_i = min over j with p_j >= p_i of p_j * pi0 * m / rank_j.
"""

import logging
from typing import Optional, Union

import numpy as np
from scipy.stats import rankdata
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

DEFAULT_LAMBDAS = np.arange(0.05, 0.96, 0.05)

# short names accepted on the command line -> statsmodels method names
MULTIPLETESTS_METHODS = {
    'bh': 'fdr_bh',
    'by': 'fdr_by',
    'bonf': 'bonferroni',
    'sidak': 'sidak',
    'holm': 'holm',
}

FDR_METHODS = ['qvalue'] + list(MULTIPLETESTS_METHODS)


def estimate_pi0(p_values: np.ndarray,
                 lambdas: np.ndarray = DEFAULT_LAMBDAS,
                 lambda_: Optional[float] = None) -> float:
    """
    Estimate the proportion of true null hypotheses.

    For each tuning value lambda, pi0(lambda) = #{p >= lambda} / (m * (1 - lambda)).
    With a fixed ``lambda_`` that single estimate is used. Otherwise the lambda
    minimizing the bootstrap mean squared error approximation of Storey, Taylor
    & Siegmund (2004) is chosen, as in the ``bootstrap`` method of the R
    qvalue package.

    Args:
        p_values: Finite p-values in [0, 1]
        lambdas: Grid of tuning values in [0, 1)
        lambda_: Fixed tuning value; overrides the grid search

    Returns:
        float: Estimate of pi0 in (0, 1]
    """
    p_values = np.asarray(p_values, dtype=float)
    m = len(p_values)
    if m == 0:
        return 1.0

    if lambda_ is not None:
        lambdas = np.array([lambda_])
    lambdas = np.asarray(lambdas, dtype=float)

    above = np.array([np.sum(p_values >= lam) for lam in lambdas])
    pi0 = above / (m * (1 - lambdas))

    if len(lambdas) == 1:
        estimate = pi0[0]
    else:
        min_pi0 = np.quantile(pi0, 0.1)
        mse = (above / (m ** 2 * (1 - lambdas) ** 2)) * (1 - above / m) + (pi0 - min_pi0) ** 2
        estimate = pi0[mse == mse.min()].min()

    estimate = float(min(estimate, 1.0))
    if estimate <= 0:
        # every p-value sits below the smallest lambda; fall back to the conservative estimate
        estimate = 1.0
    logger.debug("Estimated pi0 = %.4f from %d p-values", estimate, m)
    return estimate


def qvalues(p_values: np.ndarray, pi0: Optional[float] = None) -> np.ndarray:
    """
    Convert p-values to q-values.

    NaN p-values are passed through. q-values are non-decreasing in p, capped at
    1 and never smaller than the p-value they come from.

    Args:
        p_values: Array of p-values
        pi0: Proportion of true nulls; estimated with estimate_pi0 when None

    Returns:
        numpy.ndarray: q-values aligned with ``p_values``
    """
    p_values = np.asarray(p_values, dtype=float)
    q = np.full(p_values.shape, np.nan)
    finite = ~np.isnan(p_values)
    p = p_values[finite]
    m = len(p)
    if m == 0:
        return q

    if pi0 is None:
        pi0 = estimate_pi0(p)

    ranks = rankdata(p, method='max')
    raw = p * pi0 * m / ranks

    order = np.argsort(p, kind='mergesort')[::-1]
    monotone = np.empty(m)
    monotone[order] = np.minimum.accumulate(raw[order])
    q[finite] = np.clip(np.maximum(monotone, p), 0.0, 1.0)
    return q


def adjust_pvalues(p_values: np.ndarray, method: str = 'qvalue',
                   lambda_: Optional[float] = None) -> np.ndarray:
    """
    Adjust p-values for multiple testing.

    Args:
        p_values: Array of p-values, NaN allowed
        method: 'qvalue' for Storey q-values, or one of 'bh', 'by', 'bonf',
            'sidak', 'holm' for statsmodels multipletests
        lambda_: Fixed pi0 tuning value for 'qvalue'

    Returns:
        numpy.ndarray: Adjusted values aligned with ``p_values``
    """
    method = method.lower()
    p_values = np.asarray(p_values, dtype=float)

    if method == 'qvalue':
        pi0 = None
        if lambda_ is not None:
            pi0 = estimate_pi0(p_values[~np.isnan(p_values)], lambda_=lambda_)
        return qvalues(p_values, pi0)

    if method not in MULTIPLETESTS_METHODS:
        raise ValueError(f"Unknown multiple testing method '{method}'; expected one of {FDR_METHODS}")

    adjusted = np.full(p_values.shape, np.nan)
    finite = ~np.isnan(p_values)
    if finite.any():
        _, corrected, _, _ = multipletests(p_values[finite], method=MULTIPLETESTS_METHODS[method])
        adjusted[finite] = corrected
    return adjusted


def call_significant(q_values: Union[np.ndarray, list], alpha: float, inclusive: bool) -> np.ndarray:
    """Boolean calls at ``alpha``; ``inclusive`` selects <= over <. NaN is never significant."""
    q_values = np.asarray(q_values, dtype=float)
    with np.errstate(invalid='ignore'):
        return q_values <= alpha if inclusive else q_values < alpha
