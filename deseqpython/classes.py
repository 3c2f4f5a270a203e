# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Core data classes for deseqPython.

DESeqDataSet and DESeqResults are dicts with attribute access, subsetting
and display. DESeqDataSet also tracks which pipeline stage has been reached
and drops downstream outputs whenever an earlier stage is recomputed.
"""

import numpy as np
import pandas as pd
from copy import deepcopy

from .errors import StageError


STAGES = (
    'Unfit',
    'SizeFactorsEstimated',
    'DispersionsEstimated',
    'DispersionsShrunk',
    'CoefficientsFit',
    'ResultsExtracted',
)

# Outputs produced when entering each stage.
_STAGE_KEYS = {
    'SizeFactorsEstimated': ('size.factors',),
    'DispersionsEstimated': ('dispersion.fit', 'base.mean', 'base.var', 'all.zero'),
    'DispersionsShrunk': (),
    'CoefficientsFit': ('glm.fit', 'wald.stat', 'wald.pvalue', 'lfc.prior.var'),
    'ResultsExtracted': ('results',),
}


class _DESeqBase(dict):
    """Base class providing dict-like access, subsetting, and display."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    @property
    def shape(self):
        if 'counts' in self:
            return self['counts'].shape
        return None

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None:
            return f"{cls} with {s[0]} rows and {s[1]} columns\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    def _copy(self):
        """Deep copy of the object."""
        return deepcopy(self)

    def head(self, n=5):
        """Show first n rows."""
        if 'table' in self:
            return self['table'].head(n)
        if 'counts' in self:
            return self.to_dataframe().head(n)
        return None

    def tail(self, n=5):
        """Show last n rows."""
        if 'table' in self:
            return self['table'].tail(n)
        if 'counts' in self:
            return self.to_dataframe().tail(n)
        return None


def _subset_matrix_or_df(x, i=None, j=None):
    """Subset a matrix, DataFrame, or vector by row (i) and/or column (j)."""
    if x is None:
        return None
    if isinstance(x, pd.DataFrame):
        if i is not None and j is not None:
            return x.iloc[i, j]
        elif i is not None:
            return x.iloc[i]
        elif j is not None:
            return x.iloc[:, j]
        return x
    if isinstance(x, np.ndarray):
        if x.ndim == 2:
            if i is not None:
                x = x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
            if j is not None:
                x = x[:, j] if isinstance(j, slice) else x[:, np.atleast_1d(j)]
        elif x.ndim == 1 and i is not None:
            x = x[i] if isinstance(i, slice) else x[np.atleast_1d(i)]
        return x
    return x


def _resolve_index(idx, names):
    """Resolve index to integer array. Supports bool, int, str, slice."""
    if idx is None:
        return None
    if isinstance(idx, slice):
        return idx
    idx = np.atleast_1d(idx)
    if idx.dtype == bool:
        if len(idx) != len(names):
            raise IndexError("Logical index has the wrong length")
        return np.where(idx)[0]
    if idx.dtype.kind in ('U', 'S', 'O'):
        lookup = {name: k for k, name in enumerate(names)}
        result = []
        for name in idx:
            if name not in lookup:
                raise KeyError(f"Name '{name}' not found")
            result.append(lookup[name])
        return np.array(result, dtype=int)
    return idx.astype(int)


class DESeqDataSet(_DESeqBase):
    """Counts, sample covariates and design, plus per-stage outputs.

    Attributes
    ----------
    counts : ndarray
        Integer-valued count matrix (genes x samples), stored as float64.
    samples : DataFrame
        Sample covariates, indexed by sample id in column order.
    genes : DataFrame
        Gene annotation, indexed by gene id in row order.
    design : Design or ndarray
        Model specification.
    design.matrix : ndarray
        Design resolved against ``samples``.
    design.columns : list of str
    stage : str
        One of ``STAGES``.
    size.factors : ndarray or None
    dispersion.fit : DispersionFit or None
    glm.fit : NBGLMFit or None
    results : dict of contrast name -> DESeqResults
    """

    _IJ = {'counts'}
    _I = {'genes'}
    _J = {'samples'}

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        if not isinstance(key, tuple) or len(key) != 2:
            raise IndexError("Two subscripts required")
        i, j = key

        i_idx = _resolve_index(i, self.gene_ids)
        j_idx = _resolve_index(j, self.sample_ids)

        out = DESeqDataSet()
        for k in ('counts', 'samples', 'genes', 'design'):
            if k in self:
                dict.__setitem__(out, k, deepcopy(dict.__getitem__(self, k)))
        for k in self._IJ:
            out[k] = _subset_matrix_or_df(out[k], i_idx, j_idx)
        for k in self._I:
            out[k] = _subset_matrix_or_df(out[k], i_idx)
        # Sample table rows are the count columns
        for k in self._J:
            out[k] = _subset_matrix_or_df(out[k], j_idx).copy()

        # Drop categorical levels no longer present
        for col in out['samples'].columns:
            if isinstance(out['samples'][col].dtype, pd.CategoricalDtype):
                out['samples'][col] = out['samples'][col].cat.remove_unused_categories()

        if 'design' in out:
            from .design import Design, resolve_design
            design = out['design']
            if not isinstance(design, Design):
                # Explicit matrices carry one row per sample
                design = _subset_matrix_or_df(design, j_idx)
            resolve_design(out, design)
        out['stage'] = 'Unfit'
        return out

    @property
    def gene_ids(self):
        return list(self['genes'].index)

    @property
    def sample_ids(self):
        return list(self['samples'].index)

    @property
    def nrow(self):
        if 'counts' in self:
            return self['counts'].shape[0]
        return 0

    @property
    def ncol(self):
        if 'counts' in self:
            return self['counts'].shape[1]
        return 0

    def __len__(self):
        return self.nrow

    def dim(self):
        return self.shape

    def to_dataframe(self):
        """Convert counts to DataFrame."""
        return pd.DataFrame(self['counts'], index=self['genes'].index,
                            columns=self['samples'].index)

    # --- stage bookkeeping ---

    @property
    def stage_index(self):
        return STAGES.index(self.get('stage', 'Unfit'))

    def reached(self, stage):
        """Whether the dataset has completed ``stage``."""
        return self.stage_index >= STAGES.index(stage)

    def require(self, stage, action):
        """Raise StageError unless ``stage`` has been completed."""
        if not self.reached(stage):
            raise StageError(
                f"{action} requires stage '{stage}' but the dataset is at "
                f"'{self.get('stage', 'Unfit')}'")

    def invalidate(self, stage):
        """Drop the outputs of ``stage`` and every later stage."""
        start = STAGES.index(stage)
        for s in STAGES[max(start, 1):]:
            for k in _STAGE_KEYS[s]:
                self.pop(k, None)
        self['stage'] = STAGES[max(start - 1, 0)]

    def advance(self, stage, **outputs):
        """Record ``stage`` as completed, replacing all downstream state."""
        self.require(STAGES[STAGES.index(stage) - 1], f"Entering '{stage}'")
        self.invalidate(stage)
        for k, v in outputs.items():
            self[k.replace('_', '.')] = v
        self['stage'] = stage
        return self


class DESeqResults(_DESeqBase):
    """Per-gene results for one contrast.

    Attributes
    ----------
    table : DataFrame
        Indexed by gene id, with columns baseMean, log2FoldChange, lfcSE,
        stat, pvalue, padj.
    contrast : str
        Name of the tested contrast.
    alpha : float
        Significance level used for independent filtering and summaries.
    adjust_method : str
    """

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        if isinstance(key, tuple):
            if len(key) != 2:
                raise IndexError("Two subscripts required")
            i, j = key
        else:
            i, j = key, None
        if j is not None:
            raise IndexError("Subsetting columns not allowed for DESeqResults objects.")

        out = self._copy()
        i_idx = _resolve_index(i, list(out['table'].index))
        out['table'] = _subset_matrix_or_df(out['table'], i_idx)
        return out

    def __repr__(self):
        out = ""
        if 'contrast' in self:
            out += f"log2 fold change: {self['contrast']}\n"
        if 'table' in self:
            out += str(self['table'])
        return out

    @property
    def shape(self):
        if 'table' in self:
            return self['table'].shape
        return None
