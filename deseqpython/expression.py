# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Normalized expression values for deseqPython.
"""

import numpy as np
import pandas as pd


def _counts_and_factors(y, size_factors):
    if isinstance(y, dict) and 'counts' in y:
        ds = y
        if size_factors is None:
            ds.require('SizeFactorsEstimated', "Normalized counts")
            size_factors = ds['size.factors']
        return ds['counts'], np.asarray(size_factors, dtype=np.float64), ds
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(-1, 1)
    if size_factors is None:
        raise ValueError("size_factors required for matrix input")
    size_factors = np.asarray(size_factors, dtype=np.float64)
    if len(size_factors) != y.shape[1]:
        raise ValueError("Length of size_factors differs from number of samples")
    return y, size_factors, None


def _wrap(values, ds):
    if ds is None:
        return values
    return pd.DataFrame(values, index=ds['genes'].index, columns=ds['samples'].index)


def normalized_counts(y, size_factors=None):
    """Counts divided by their sample's size factor.

    Returns a DataFrame for dataset input, else an ndarray.
    """
    counts, sf, ds = _counts_and_factors(y, size_factors)
    return _wrap(counts / sf[None, :], ds)


def log_normalized_counts(y, size_factors=None, pseudocount=1.0):
    """log2(normalized count + pseudocount)."""
    counts, sf, ds = _counts_and_factors(y, size_factors)
    return _wrap(np.log2(counts / sf[None, :] + pseudocount), ds)


def base_mean(y, size_factors=None):
    """Row means of normalized counts."""
    counts, sf, _ = _counts_and_factors(y, size_factors)
    return np.mean(counts / sf[None, :], axis=1)


def base_var(y, size_factors=None):
    """Row variances (n - 1 denominator) of normalized counts."""
    counts, sf, _ = _counts_and_factors(y, size_factors)
    if counts.shape[1] < 2:
        return np.full(counts.shape[0], np.nan)
    return np.var(counts / sf[None, :], axis=1, ddof=1)
