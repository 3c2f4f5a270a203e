# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Results extraction for deseqPython.

Contrasts are evaluated from the stored coefficients and covariances, so a
new contrast never refits dispersions or GLMs.
"""

import numpy as np
import pandas as pd
from scipy.stats import f as _f, norm

from .classes import DESeqResults
from .design import Design, factor_levels
from .glm import nb_glm_fit
from .utils import n_or_more_in_cell, p_adjust
from .wald_test import lfc_prior_variance

RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


def _factor_contrast(ds, factor, numerator, denominator):
    """Contrast vector comparing two levels of a categorical covariate."""
    design = ds['design']
    columns = list(ds['design.columns'])
    if not isinstance(design, Design) or (factor,) not in design.terms:
        raise ValueError(f"'{factor}' is not a main effect of the design")
    levels = factor_levels(ds['samples'][factor], design.reference.get(factor))
    for lv in (numerator, denominator):
        if lv not in levels:
            raise ValueError(f"'{lv}' is not a level of '{factor}': {levels}")
    if numerator == denominator:
        raise ValueError("numerator and denominator must differ")
    ref = levels[0]

    def col(level):
        name = f"{factor}_{level}_vs_{ref}"
        if name not in columns:
            raise ValueError(f"coefficient '{name}' not in the design")
        return columns.index(name)

    c = np.zeros(len(columns))
    if numerator != ref:
        c[col(numerator)] += 1
    if denominator != ref:
        c[col(denominator)] -= 1
    return c, f"{factor} {numerator} vs {denominator}"


def contrast_vector(ds, contrast=None, name=None):
    """Resolve a contrast specification to (vector, description)."""
    columns = list(ds['design.columns'])
    p = len(columns)
    if contrast is not None and name is not None:
        raise ValueError("specify either contrast or name, not both")
    if contrast is None:
        if name is None:
            name = columns[-1]
        if name not in columns:
            raise ValueError(f"'{name}' is not a coefficient; available: {columns}")
        c = np.zeros(p)
        c[columns.index(name)] = 1
        return c, name
    if isinstance(contrast, (tuple, list)) and contrast and isinstance(contrast[0], str):
        if len(contrast) != 3:
            raise ValueError("a factor contrast is (factor, numerator, denominator)")
        return _factor_contrast(ds, *contrast)
    c = np.asarray(contrast, dtype=np.float64).ravel()
    if len(c) != p:
        raise ValueError(f"contrast must have length {p}")
    if np.all(c == 0):
        raise ValueError("contrast must have a non-zero entry")
    desc = ' '.join(f"{w:+g} {columns[j]}" for j, w in enumerate(c) if w != 0)
    return c, desc


def _contrast_estimates(fit, c):
    lfc = fit.coefficients @ c
    var = np.einsum('j,gjk,k->g', c, fit.covariance, c)
    se = np.sqrt(np.maximum(var, 0))
    with np.errstate(divide='ignore', invalid='ignore'):
        stat = lfc / se
    return lfc, se, stat


def cooks_outliers(fit, X, cutoff=None):
    """Genes whose maximum Cook's distance exceeds the cutoff.

    Only samples in design cells with at least three replicates are
    considered. The default cutoff is the 0.99 quantile of F(p, m - p).
    """
    X = np.asarray(X, dtype=np.float64)
    m, p = X.shape
    if cutoff is False or m <= p:
        return np.zeros(fit.coefficients.shape[0], dtype=bool)
    if cutoff is None or cutoff is True:
        cutoff = _f.ppf(0.99, p, m - p)
    keep = n_or_more_in_cell(X, 3)
    if not keep.any():
        return np.zeros(fit.coefficients.shape[0], dtype=bool)
    cooks = np.asarray(fit.cooks)[:, keep]
    max_cooks = np.max(np.where(np.isnan(cooks), 0.0, cooks), axis=1)
    return max_cooks > cutoff


def independent_filter(pvalue, filter_stat, alpha, method='fdr_bh', theta=None):
    """Adjust p-values after filtering on a statistic independent under the null.

    Chooses the quantile threshold of ``filter_stat`` that maximises the
    number of adjusted p-values below ``alpha``; filtered genes get NaN.

    Returns
    -------
    (ndarray, float) adjusted p-values and the filter threshold.
    """
    if theta is None:
        theta = np.linspace(0, 0.95, 50)
    filter_stat = np.asarray(filter_stat, dtype=np.float64)
    cutoffs = np.quantile(filter_stat, theta)
    best_padj, best_cut, best_rej = None, cutoffs[0], -1
    for cut in cutoffs:
        use = filter_stat >= cut
        padj = np.full(len(pvalue), np.nan)
        padj[use] = p_adjust(pvalue[use], method=method)
        rej = int(np.sum(padj < alpha))
        if rej > best_rej:
            best_padj, best_cut, best_rej = padj, cut, rej
    return best_padj, float(best_cut)


def results(ds, contrast=None, name=None, alpha=0.1, cooks_cutoff=None,
            independent_filtering=False, exclude_dispersion_outliers=True,
            p_adjust_method='fdr_bh'):
    """Extract a results table for one contrast.

    Parameters
    ----------
    ds : DESeqDataSet
        Must have reached 'CoefficientsFit'.
    contrast : tuple or array-like, optional
        ``(factor, numerator, denominator)`` or a numeric vector over the
        design coefficients.
    name : str, optional
        A coefficient name (see ``results_names``). Defaults to the last
        coefficient when neither ``contrast`` nor ``name`` is given.
    alpha : float
        Significance level for independent filtering and summaries.
    cooks_cutoff : float or bool, optional
        Threshold on Cook's distance; False disables outlier flagging.
    independent_filtering : bool
        Filter on baseMean before adjustment.
    exclude_dispersion_outliers : bool
        Report NA p-values (and so NA padj) for genes whose gene-wise
        dispersion was an outlier from the trend; they are left out of the
        multiple testing adjustment.
    p_adjust_method : str
        Method passed to statsmodels ``multipletests``.

    Returns
    -------
    DESeqResults
    """
    ds.require('CoefficientsFit', "Results extraction")
    fit = ds['glm.fit']
    c, desc = contrast_vector(ds, contrast, name)
    lfc, se, stat = _contrast_estimates(fit, c)
    pvalue = 2 * norm.sf(np.abs(stat))

    bad = fit.all_zero | ~fit.converged
    lfc[bad] = np.nan
    se[bad] = np.nan
    stat[bad] = np.nan
    pvalue[bad] = np.nan

    outliers = cooks_outliers(fit, ds['design.matrix'], cooks_cutoff)
    pvalue[outliers] = np.nan
    disp_out = np.zeros(len(pvalue), dtype=bool)
    if exclude_dispersion_outliers and ds['dispersion.fit'].outlier is not None:
        disp_out = np.asarray(ds['dispersion.fit'].outlier, dtype=bool)
        pvalue[disp_out] = np.nan

    base_mean = np.asarray(ds['base.mean'], dtype=np.float64).copy()
    base_mean[fit.all_zero] = 0.0

    filter_threshold = None
    if independent_filtering:
        padj, filter_threshold = independent_filter(pvalue, base_mean, alpha,
                                                    method=p_adjust_method)
    else:
        padj = p_adjust(pvalue, method=p_adjust_method)

    table = pd.DataFrame({
        'baseMean': base_mean,
        'log2FoldChange': lfc,
        'lfcSE': se,
        'stat': stat,
        'pvalue': pvalue,
        'padj': padj,
    }, index=ds['genes'].index, columns=RESULT_COLUMNS)

    res = DESeqResults()
    res['table'] = table
    res['contrast'] = desc
    res['alpha'] = alpha
    res['adjust_method'] = p_adjust_method
    res['cooks.outlier'] = outliers
    res['dispersion.outlier'] = disp_out
    res['filter.threshold'] = filter_threshold

    if not ds.reached('ResultsExtracted'):
        ds.advance('ResultsExtracted', results={})
    ds['results'][desc] = res
    return res._copy()


def lfc_shrink(ds, coef=None, contrast=None, alpha=0.1, n_jobs=1):
    """Results with log2 fold changes shrunk by a zero-centred normal prior.

    If the dataset was already fitted with ``shrink_lfc=True`` its results
    are returned as they are. Otherwise the GLMs are refitted with the
    prior; the p-values of the unshrunken fit are kept. The dataset itself
    is not modified apart from caching the unshrunken results.
    """
    res = results(ds, contrast=contrast, name=coef, alpha=alpha)
    if ds.get('lfc.prior.var') is not None:
        return res
    fit = ds['glm.fit']
    X = ds['design.matrix']
    columns = ds['design.columns']
    use = ~fit.all_zero & fit.converged
    prior_var = lfc_prior_variance(fit.coefficients, X, columns, use=use)
    shrunk = nb_glm_fit(ds['counts'], X, ds['size.factors'],
                        ds['dispersion.fit'].final, lambda_=1.0 / prior_var,
                        columns=columns, n_jobs=n_jobs)
    c, _ = contrast_vector(ds, contrast, coef)
    lfc, se, _ = _contrast_estimates(shrunk, c)
    bad = shrunk.all_zero | ~shrunk.converged
    lfc[bad] = np.nan
    se[bad] = np.nan
    res['table']['log2FoldChange'] = lfc
    res['table']['lfcSE'] = se
    res['lfc.prior.var'] = prior_var
    return res


def summary(res, alpha=None, verbose=False):
    """Count up- and down-regulated genes, outliers and filtered genes.

    Returns
    -------
    dict with 'alpha', 'nonzero', 'up', 'down', 'outliers', 'low_counts'.
    """
    tab = res['table']
    if alpha is None:
        alpha = res.get('alpha', 0.1)
    padj = tab['padj'].values
    lfc = tab['log2FoldChange'].values
    sig = padj < alpha
    no_outliers = np.zeros(len(tab), dtype=bool)
    outlier = (np.asarray(res.get('cooks.outlier', no_outliers))
               | np.asarray(res.get('dispersion.outlier', no_outliers)))
    nonzero = tab['baseMean'].values > 0
    low = nonzero & ~outlier & ~np.isnan(tab['pvalue'].values) & np.isnan(padj)
    out = {
        'alpha': alpha,
        'nonzero': int(nonzero.sum()),
        'up': int(np.sum(sig & (lfc > 0))),
        'down': int(np.sum(sig & (lfc < 0))),
        'outliers': int(np.sum(outlier & nonzero)),
        'low_counts': int(low.sum()),
    }
    if verbose:
        n = max(out['nonzero'], 1)
        print(f"out of {out['nonzero']} with nonzero total read count")
        print(f"adjusted p-value < {alpha}")
        print(f"LFC > 0 (up)       : {out['up']}, {100 * out['up'] / n:.2g}%")
        print(f"LFC < 0 (down)     : {out['down']}, {100 * out['down'] / n:.2g}%")
        print(f"outliers [1]       : {out['outliers']}, {100 * out['outliers'] / n:.2g}%")
        print(f"low counts [2]     : {out['low_counts']}, {100 * out['low_counts'] / n:.2g}%")
    return out


def top_genes(res, n=10, sort_by='padj'):
    """Top genes of a results table, NA values last.

    Parameters
    ----------
    res : DESeqResults
    n : int
        Number of genes to return.
    sort_by : str
        'padj', 'pvalue', 'log2FoldChange' (by absolute value) or 'baseMean'.
    """
    tab = res['table']
    if sort_by not in RESULT_COLUMNS:
        raise ValueError(f"sort_by must be one of {RESULT_COLUMNS}")
    if sort_by == 'log2FoldChange':
        key = -tab['log2FoldChange'].abs()
    elif sort_by == 'baseMean':
        key = -tab['baseMean']
    else:
        key = tab[sort_by]
    ranked = tab.assign(_key=key.values).sort_values(
        ['_key', 'pvalue'], na_position='last', kind='mergesort')
    return ranked.drop(columns='_key').head(n)
