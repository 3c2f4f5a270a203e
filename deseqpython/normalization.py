# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Size factor estimation for deseqPython.

Median-of-ratios scale factors as in Anders & Huber (2010), plus the
positive-counts variant for matrices in which every gene has a zero.
"""

import numpy as np

from .errors import DegenerateSampleError


def estimate_size_factors(counts, method='ratio', control_genes=None,
                          sample_ids=None, verbose=False):
    """Estimate one scale factor per sample.

    Parameters
    ----------
    counts : array-like or DESeqDataSet
        Count matrix (genes x samples), or a dataset.
    method : str
        'ratio' (median-of-ratios over genes with no zero counts) or
        'poscounts' (geometric mean over positive counts only, factors
        rescaled to geometric mean one).
    control_genes : array-like, optional
        Row indices, boolean mask or gene ids of genes to use.
    sample_ids : list, optional
        Names used in error messages for matrix input.
    verbose : bool
        Print progress.

    Returns
    -------
    DESeqDataSet (if input is a dataset, advanced to SizeFactorsEstimated)
    or ndarray of size factors.
    """
    if isinstance(counts, dict) and 'counts' in counts:
        ds = counts
        if verbose:
            print("estimating size factors")
        sel = control_genes
        if sel is not None:
            from .classes import _resolve_index
            sel = _resolve_index(np.asarray(sel), ds.gene_ids)
        sf = _estimate_size_factors_default(
            ds['counts'], method=method, control_genes=sel,
            sample_ids=ds.sample_ids)
        ds.advance('SizeFactorsEstimated', size_factors=sf)
        return ds

    return _estimate_size_factors_default(
        counts, method=method, control_genes=control_genes,
        sample_ids=sample_ids)


def _estimate_size_factors_default(x, method='ratio', control_genes=None,
                                   sample_ids=None):
    """Core size factor calculation for count matrices."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    if np.any(np.isnan(x)):
        raise ValueError("NA counts not permitted")
    nsamples = x.shape[1]
    if sample_ids is None:
        sample_ids = [f"sample{j+1}" for j in range(nsamples)]

    valid_methods = ('ratio', 'poscounts')
    if method not in valid_methods:
        raise ValueError(f"method must be one of {valid_methods}")

    # An all-zero library has no defined scale
    zero_libs = np.where(x.sum(axis=0) == 0)[0]
    if len(zero_libs) > 0:
        j = zero_libs[0]
        raise DegenerateSampleError(
            f"sample '{sample_ids[j]}' has zero counts for every gene; "
            "its size factor is undefined", sample=sample_ids[j])

    if control_genes is not None:
        x = x[control_genes]

    if method == 'ratio':
        f = _calc_factor_ratio(x, sample_ids)
    else:
        f = _calc_factor_poscounts(x, sample_ids)
    return f


def _calc_factor_ratio(data, sample_ids):
    """Median of ratios to the per-gene geometric mean."""
    with np.errstate(divide='ignore'):
        loggeomeans = np.mean(np.log(data), axis=1)
    usable = np.isfinite(loggeomeans)
    if not np.any(usable):
        raise DegenerateSampleError(
            "every gene contains at least one zero, cannot compute log "
            "geometric means; use method='poscounts'")

    result = np.zeros(data.shape[1])
    for j in range(data.shape[1]):
        cnts = data[usable, j]
        pos = cnts > 0
        if not np.any(pos):
            raise DegenerateSampleError(
                f"sample '{sample_ids[j]}' has no positive counts among genes "
                "usable for normalization", sample=sample_ids[j])
        result[j] = np.exp(np.median(np.log(cnts[pos]) - loggeomeans[usable][pos]))
    return result


def _calc_factor_poscounts(data, sample_ids):
    """Geometric means over positive counts only."""
    n = data.shape[1]
    with np.errstate(divide='ignore'):
        logdata = np.log(data)
    logdata[data <= 0] = 0.0
    loggeomeans = logdata.sum(axis=1) / n
    usable = (data > 0).any(axis=1)
    loggeomeans[~usable] = -np.inf

    result = np.zeros(n)
    for j in range(n):
        keep = usable & (data[:, j] > 0)
        if not np.any(keep):
            raise DegenerateSampleError(
                f"sample '{sample_ids[j]}' has no positive counts among genes "
                "usable for normalization", sample=sample_ids[j])
        result[j] = np.exp(np.median(logdata[keep, j] - loggeomeans[keep]))

    # Normalize so factors multiply to one
    return result / np.exp(np.mean(np.log(result)))
