# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Utility functions for deseqPython.
"""

from concurrent.futures import ProcessPoolExecutor

import numpy as np
from scipy import stats


def map_genes(func, *iterables, n_jobs=1):
    """Apply a pure per-gene function, in parallel when ``n_jobs > 1``.

    Results are returned in gene order regardless of completion order.
    ``func`` must be picklable (a module-level function or a partial of one).
    """
    iterables = [list(it) for it in iterables]
    ngenes = len(iterables[0]) if iterables else 0
    if n_jobs is None or n_jobs <= 1 or ngenes < 2:
        return [func(*args) for args in zip(*iterables)]
    chunksize = max(1, ngenes // (4 * n_jobs))
    with ProcessPoolExecutor(max_workers=n_jobs) as executor:
        return list(executor.map(func, *iterables, chunksize=chunksize))


def design_groups(design):
    """Label samples by identical rows of a design matrix."""
    design = np.asarray(design, dtype=np.float64)
    _, group = np.unique(np.round(design, 12), axis=0, return_inverse=True)
    return np.asarray(group).ravel()


def n_or_more_in_cell(design, n):
    """Boolean mask of samples whose design cell has at least ``n`` samples."""
    group = design_groups(design)
    sizes = np.bincount(group)
    return sizes[group] >= n


def mad(x, center=None, constant=1.4826):
    """Median absolute deviation, scaled for consistency with the sd."""
    x = np.asarray(x, dtype=np.float64)
    x = x[np.isfinite(x)]
    if len(x) == 0:
        return np.nan
    if center is None:
        center = np.median(x)
    return constant * np.median(np.abs(x - center))


def trigamma(x):
    """Trigamma function."""
    from scipy.special import polygamma
    return polygamma(1, x)


def match_upper_quantile_for_variance(x, upper_quantile=0.05):
    """Variance of a zero-centred normal matching the upper quantile of |x|."""
    x = np.abs(np.asarray(x, dtype=np.float64))
    x = x[np.isfinite(x)]
    if len(x) == 0:
        return np.nan
    sd_est = np.quantile(x, 1 - upper_quantile) / stats.norm.ppf(1 - upper_quantile / 2)
    return sd_est ** 2


def p_adjust(pvalues, method='fdr_bh'):
    """Adjust p-values, leaving NaN entries as NaN.

    ``method`` is any statsmodels ``multipletests`` method; R names
    ('BH', 'BY', 'fdr', 'holm', 'bonferroni', 'none') are also accepted.
    """
    from statsmodels.stats.multitest import multipletests

    method_map = {'BH': 'fdr_bh', 'fdr': 'fdr_bh', 'BY': 'fdr_by'}
    method = method_map.get(method, method)
    p = np.asarray(pvalues, dtype=np.float64)
    if method == 'none':
        return p.copy()
    out = np.full_like(p, np.nan)
    ok = ~np.isnan(p)
    if ok.any():
        _, out[ok], _, _ = multipletests(p[ok], method=method)
    return out
