# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
DESeqDataSet construction, validation, and accessors.
"""

import numpy as np
import pandas as pd
import warnings

from .classes import DESeqDataSet
from .design import resolve_design
from .errors import SampleMismatchError


def _as_count_frame(counts):
    """Coerce counts to a DataFrame with string labels."""
    if isinstance(counts, pd.DataFrame):
        df = counts.copy()
    else:
        # Handle scipy sparse matrices
        if hasattr(counts, 'toarray') and hasattr(counts, 'nnz'):
            warnings.warn("Densifying sparse count matrix; deseqPython stores "
                          "counts as dense arrays.", stacklevel=3)
            counts = counts.toarray()
        arr = np.asarray(counts)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        df = pd.DataFrame(arr,
                          index=[f"gene{i+1}" for i in range(arr.shape[0])],
                          columns=[f"sample{j+1}" for j in range(arr.shape[1])])
    df.index = df.index.map(str)
    df.columns = df.columns.map(str)
    return df


def make_deseq_dataset(counts, samples, design, genes=None):
    """Construct a DESeqDataSet from counts, sample covariates and a design.

    Parameters
    ----------
    counts : DataFrame or array-like
        Count matrix (genes x samples). A DataFrame's index and columns are
        used as gene and sample ids.
    samples : DataFrame
        One row per sample. Rows are matched to count columns by sample id
        (the index), not by position. If ``counts`` has no labels, rows are
        taken in order.
    design : Design, str, ndarray, or DataFrame
        Model specification; see :func:`deseqpython.design.model_matrix`.
    genes : DataFrame, optional
        Gene-level annotation, one row per gene.

    Returns
    -------
    DESeqDataSet
    """
    unlabeled = not isinstance(counts, pd.DataFrame)
    counts = _as_count_frame(counts)

    if counts.index.has_duplicates:
        dup = counts.index[counts.index.duplicated()].unique().tolist()
        raise ValueError(f"gene ids must be unique; duplicated: {dup[:5]}")
    if counts.columns.has_duplicates:
        dup = counts.columns[counts.columns.duplicated()].unique().tolist()
        raise ValueError(f"sample ids must be unique; duplicated: {dup[:5]}")

    try:
        values = counts.to_numpy(dtype=np.float64)
    except (TypeError, ValueError):
        raise ValueError("counts must be numeric")

    # Validate counts
    if np.any(np.isnan(values)):
        raise ValueError("NA counts not allowed")
    if values.size and not np.all(np.isfinite(values)):
        raise ValueError("Infinite counts not allowed")
    if values.size and np.min(values) < 0:
        raise ValueError("Negative counts not allowed")
    if np.any(values != np.round(values)):
        raise ValueError("counts must be integer-valued")

    # Samples
    if samples is None:
        raise ValueError("a sample table is required")
    samples = pd.DataFrame(samples).copy()
    if len(samples) != counts.shape[1]:
        raise SampleMismatchError(
            f"sample table has {len(samples)} rows but counts have "
            f"{counts.shape[1]} columns")
    if unlabeled:
        counts.columns = samples.index.map(str)
    samples.index = samples.index.map(str)
    if samples.index.has_duplicates:
        raise ValueError("sample table index must contain unique sample ids")
    missing = [s for s in counts.columns if s not in samples.index]
    if missing:
        raise SampleMismatchError(
            f"samples {missing[:5]} in counts are missing from the sample table")
    samples = samples.loc[list(counts.columns)]

    # Genes
    if genes is None:
        genes = pd.DataFrame(index=counts.index)
    else:
        genes = pd.DataFrame(genes).copy()
        if len(genes) != counts.shape[0]:
            raise ValueError("Counts and genes have different numbers of rows")
        genes.index = counts.index

    ds = DESeqDataSet()
    ds['counts'] = values
    ds['samples'] = samples
    ds['genes'] = genes
    ds['stage'] = 'Unfit'
    resolve_design(ds, design)
    return ds


def set_design(ds, design):
    """Replace the design of a dataset.

    Size factors do not depend on the design and are kept; dispersion,
    coefficient and result outputs are dropped and must be recomputed.
    """
    resolve_design(ds, design)
    if ds.reached('DispersionsEstimated'):
        ds.invalidate('DispersionsEstimated')
    else:
        # Gene-wise estimates are stored before the stage advances
        for k in ('dispersion.fit', 'base.mean', 'base.var', 'all.zero'):
            ds.pop(k, None)
    return ds


def set_size_factors(ds, size_factors):
    """Supply size factors directly, invalidating all downstream outputs."""
    sf = np.asarray(size_factors, dtype=np.float64).ravel()
    if len(sf) != ds.ncol:
        raise SampleMismatchError("length of size factors must equal number of samples")
    if np.any(~np.isfinite(sf)) or np.any(sf <= 0):
        raise ValueError("size factors must be positive finite values")
    ds.advance('SizeFactorsEstimated', size_factors=sf)
    return ds


def get_counts(ds):
    """Extract the count matrix as a DataFrame."""
    return ds.to_dataframe()


def get_size_factors(ds):
    """Size factors, or None if not yet estimated."""
    return ds.get('size.factors')


def get_dispersions(ds):
    """Final per-gene dispersions as a Series, or None."""
    fit = ds.get('dispersion.fit')
    if fit is None:
        return None
    disp = fit.final if fit.final is not None else fit.fitted
    if disp is None:
        disp = fit.gene_est
    return pd.Series(disp, index=ds['genes'].index, name='dispersion')


def results_names(ds):
    """Names of the fitted design coefficients."""
    return list(ds['design.columns'])
