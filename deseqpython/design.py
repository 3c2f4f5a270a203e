# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Model designs for deseqPython.

A Design enumerates main effects and interactions over sample covariates
and is resolved to a numeric design matrix with patsy only when a dataset
is fitted. Full-rank checking follows limma's nonEstimable / is.fullrank.
"""

import re

import numpy as np
import pandas as pd

from .errors import RankDeficientDesignError


class Design:
    """Explicit model specification.

    Parameters
    ----------
    terms : sequence
        Each term is a covariate name (main effect) or a tuple of names
        (interaction).
    intercept : bool
        Include an intercept column.
    reference : dict, optional
        Reference level per categorical covariate.

    Examples
    --------
    >>> Design(['cell', 'dex'], reference={'dex': 'untrt'})
    Design(~ cell + dex)
    >>> Design.from_formula('~ genotype + condition + genotype:condition')
    Design(~ genotype + condition + genotype:condition)
    """

    def __init__(self, terms=(), intercept=True, reference=None):
        norm = []
        for t in terms:
            t = (t,) if isinstance(t, str) else tuple(t)
            if len(t) == 0:
                raise ValueError("empty design term")
            for v in t:
                if not isinstance(v, str) or not v.isidentifier():
                    raise ValueError(f"covariate name {v!r} is not a valid identifier")
            if t not in norm:
                norm.append(t)
        self.terms = tuple(norm)
        self.intercept = bool(intercept)
        self.reference = dict(reference or {})

    @classmethod
    def from_formula(cls, formula, reference=None):
        """Build a Design from an R-style formula such as ``'~ a + b + a:b'``."""
        import patsy

        desc = patsy.ModelDesc.from_formula(formula)
        if desc.lhs_termlist:
            raise ValueError("design formula must not have a left-hand side")
        intercept = False
        terms = []
        for term in desc.rhs_termlist:
            if len(term.factors) == 0:
                intercept = True
                continue
            names = []
            for factor in term.factors:
                code = getattr(factor, 'code', None)
                if code is None or not code.isidentifier():
                    raise ValueError(
                        f"unsupported factor expression {factor.name()!r}; "
                        "use plain covariate names")
                names.append(code)
            terms.append(tuple(names))
        return cls(terms, intercept=intercept, reference=reference)

    @property
    def variables(self):
        seen = []
        for t in self.terms:
            for v in t:
                if v not in seen:
                    seen.append(v)
        return seen

    @property
    def formula(self):
        parts = ['1' if self.intercept else '0']
        parts += [':'.join(t) for t in self.terms]
        if self.intercept and self.terms:
            parts = parts[1:]
        return '~ ' + ' + '.join(parts)

    def __eq__(self, other):
        if not isinstance(other, Design):
            return NotImplemented
        return (self.terms == other.terms and self.intercept == other.intercept
                and self.reference == other.reference)

    def __hash__(self):
        return hash((self.terms, self.intercept, tuple(sorted(self.reference.items()))))

    def __repr__(self):
        return f"Design({self.formula})"


def _is_categorical(col):
    return (isinstance(col.dtype, pd.CategoricalDtype) or col.dtype == object
            or pd.api.types.is_bool_dtype(col) or pd.api.types.is_string_dtype(col))


def factor_levels(col, reference=None):
    """Ordered levels of a categorical covariate, reference level first.

    Levels follow the pandas category order when ``col`` is categorical,
    else sorted order (as R's factor()).
    """
    if isinstance(col.dtype, pd.CategoricalDtype):
        present = set(col.dropna())
        levels = [lv for lv in col.cat.categories if lv in present]
    else:
        levels = sorted(pd.unique(col.dropna()), key=lambda v: (str(type(v)), v))
    levels = [lv.item() if isinstance(lv, np.generic) else lv for lv in levels]
    if reference is not None:
        if reference not in levels:
            raise ValueError(f"reference level {reference!r} not present in covariate")
        levels = [reference] + [lv for lv in levels if lv != reference]
    return levels


_LEVEL_RE = re.compile(r'^C\((?P<var>\w+),.*\)\[(?P<treat>T\.)?(?P<level>.*)\]$')


def _clean_column_name(name, refs):
    """Turn patsy column names into names like ``dex_trt_vs_untrt``."""
    if name == 'Intercept':
        return name
    parts = []
    for part in name.split(':'):
        m = _LEVEL_RE.match(part)
        if m and m.group('var') in refs:
            var, ref = m.group('var'), refs[m.group('var')]
            if m.group('treat'):
                parts.append(f"{var}_{m.group('level')}_vs_{ref}")
            else:
                parts.append(f"{var}_{m.group('level')}")
        else:
            parts.append(part)
    return '.'.join(parts)


def model_matrix(design, samples):
    """Resolve a design against a sample table.

    Parameters
    ----------
    design : Design, str, ndarray, or DataFrame
        A Design, a formula string, or an explicit numeric design matrix
        (samples x coefficients).
    samples : DataFrame
        Sample covariates, one row per sample.

    Returns
    -------
    (ndarray, list of str)
        Design matrix (samples x coefficients) and its column names.
    """
    if isinstance(design, str):
        design = Design.from_formula(design)

    if isinstance(design, pd.DataFrame):
        X = np.asarray(design.values, dtype=np.float64)
        columns = [str(c) for c in design.columns]
    elif not isinstance(design, Design):
        X = np.asarray(design, dtype=np.float64)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        columns = [f"x{i}" for i in range(X.shape[1])]
    elif not design.terms:
        # Intercept-only (or empty) model: nothing for patsy to evaluate
        n = len(samples)
        X = np.ones((n, 1)) if design.intercept else np.zeros((n, 0))
        columns = ['Intercept'] if design.intercept else []
    else:
        import patsy

        data = {}
        refs = {}
        factors = {}
        for var in design.variables:
            if var not in samples.columns:
                raise ValueError(f"covariate '{var}' not found in sample table")
            col = samples[var]
            if col.isna().any():
                raise ValueError(f"covariate '{var}' has missing values")
            if _is_categorical(col):
                levels = factor_levels(col, design.reference.get(var))
                refs[var] = levels[0]
                factors[var] = f"C({var}, levels={levels!r})"
                data[var] = np.asarray(col.astype(object))
            else:
                factors[var] = var
                data[var] = np.asarray(col, dtype=np.float64)

        terms = [patsy.Term([])] if design.intercept else []
        for t in design.terms:
            terms.append(patsy.Term([patsy.EvalFactor(factors[v]) for v in t]))
        desc = patsy.ModelDesc([], terms)
        dm = patsy.dmatrix(desc, data, NA_action='raise', return_type='dataframe')
        X = np.asarray(dm.values, dtype=np.float64)
        columns = [_clean_column_name(c, refs) for c in dm.design_info.column_names]

    if X.shape[0] != len(samples):
        raise ValueError("number of design rows must equal number of samples")
    if X.shape[1] == 0:
        raise ValueError("design has no columns")
    if not np.all(np.isfinite(X)):
        raise ValueError("NAs not allowed in design")
    check_full_rank(X, columns)
    return X, columns


def non_estimable(x):
    """Indices of non-estimable coefficients in a design matrix, or None.

    Port of limma's nonEstimable().
    """
    x = np.asarray(x, dtype=np.float64)
    p = x.shape[1]
    if p == 0:
        return None
    from scipy.linalg import qr
    _, R, piv = qr(x, mode='economic', pivoting=True)
    d = np.abs(np.diag(R))
    tol = (np.max(d) if len(d) else 0.0) * 1e-7
    rank = int(np.sum(d > tol))
    if rank == p:
        return None
    return np.sort(piv[rank:])


def is_fullrank(x):
    """Check if a matrix is full column rank."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    return np.linalg.matrix_rank(x) == x.shape[1]


def check_full_rank(X, columns=None):
    """Raise RankDeficientDesignError if ``X`` is not of full column rank."""
    bad = non_estimable(X)
    if bad is None:
        return
    if columns is None:
        columns = [f"x{i}" for i in range(X.shape[1])]
    names = [columns[i] for i in bad]
    raise RankDeficientDesignError(
        "the model matrix is not full rank, so the model cannot be fit as "
        f"specified. Coefficients not estimable: {', '.join(names)}",
        columns=names)


def resolve_design(ds, design):
    """Attach ``design`` and its resolved matrix to a dataset."""
    if isinstance(design, str):
        design = Design.from_formula(design)
    X, columns = model_matrix(design, ds['samples'])
    ds['design'] = design
    ds['design.matrix'] = X
    ds['design.columns'] = columns
    return ds
