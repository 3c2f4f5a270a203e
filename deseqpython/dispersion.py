# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Dispersion estimation for deseqPython.

Gene-wise Cox-Reid adjusted profile likelihood estimates, a fitted
mean-dispersion trend, and empirical Bayes shrinkage of the gene-wise
estimates towards the trend (Love, Huber & Anders 2014).
"""

from dataclasses import dataclass
from functools import partial
import warnings

import numpy as np
from scipy import optimize, stats

from .errors import DispersionFitWarning, StageError
from .glm import fit_nb_glm_gene, nbinom_log_lik
from .smoothing import local_linear_fit
from .utils import map_genes, mad, trigamma

MIN_DISP = 1e-8
USABLE_FACTOR = 100
OUTLIER_SD = 2.0
MIN_PRIOR_VAR = 0.25
GRID_SIZE = 20
FIT_TYPES = ('parametric', 'local', 'mean')


def max_disp(nsamples):
    """Upper bound for dispersion estimates."""
    return max(10.0, float(nsamples))


def _readonly(x):
    if x is None:
        return None
    arr = np.array(x)
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted mean-dispersion relationship; call it with means.

    Attributes
    ----------
    fit_type : str
        'parametric', 'local' or 'mean'.
    coefficients : ndarray or None
        (asymptDisp, extraPois) for the parametric form a0 + a1/mean.
    log_means, log_disps : ndarray or None
        Smoothed curve for the local form, sorted by log mean.
    value : float or None
        Constant dispersion for the mean form.
    """
    fit_type: str
    coefficients: np.ndarray = None
    log_means: np.ndarray = None
    log_disps: np.ndarray = None
    value: float = None

    def __post_init__(self):
        for name in ('coefficients', 'log_means', 'log_disps'):
            object.__setattr__(self, name, _readonly(getattr(self, name)))

    def __call__(self, means):
        means = np.asarray(means, dtype=np.float64)
        if self.fit_type == 'parametric':
            a0, a1 = self.coefficients
            with np.errstate(divide='ignore'):
                out = a0 + a1 / means
        elif self.fit_type == 'local':
            with np.errstate(divide='ignore'):
                lm = np.log(means)
            out = np.exp(np.interp(lm, self.log_means, self.log_disps))
        else:
            out = np.full(means.shape, self.value, dtype=np.float64)
        return np.maximum(out, MIN_DISP)


@dataclass(frozen=True)
class DispersionFit:
    """Per-gene dispersion estimates at each step of the estimation.

    ``fitted``, ``map`` and ``final`` are None until the corresponding
    step has run. All-zero genes carry NaN throughout.
    """
    gene_est: np.ndarray
    mu: np.ndarray
    columns: tuple
    design: np.ndarray = None
    trend: DispersionTrend = None
    fitted: np.ndarray = None
    map: np.ndarray = None
    final: np.ndarray = None
    outlier: np.ndarray = None
    prior_var: float = None
    var_log_disp: float = None

    def __post_init__(self):
        for name in ('gene_est', 'mu', 'design', 'fitted', 'map', 'final', 'outlier'):
            object.__setattr__(self, name, _readonly(getattr(self, name)))

    def matches(self, columns, design):
        """Whether the estimates were made against this design matrix."""
        if tuple(columns) != tuple(self.columns):
            return False
        if self.design is None:
            return True
        design = np.asarray(design, dtype=np.float64)
        return design.shape == self.design.shape and np.array_equal(design, self.design)


def check_fit_design(ds, fit, action):
    """Raise StageError if ``fit`` was estimated under a different design."""
    if not fit.matches(ds['design.columns'], ds['design.matrix']):
        raise StageError(f"{action}: dispersions were estimated for a different "
                         "design; re-estimate them first")


# --- per-gene likelihood ---

def cox_reid_apl(log_alpha, y, mu, X, log_prior_mean=None, prior_var=None):
    """Cox-Reid adjusted profile log-likelihood of a log dispersion.

    With ``log_prior_mean`` and ``prior_var`` the log-normal prior density
    (up to a constant) is added, giving the log posterior.
    """
    alpha = np.exp(log_alpha)
    ll = np.sum(nbinom_log_lik(y, mu, alpha))
    w = 1.0 / (1.0 / mu + alpha)
    _, logdet = np.linalg.slogdet(X.T @ (w[:, None] * X))
    value = ll - 0.5 * logdet
    if log_prior_mean is not None:
        value -= (log_alpha - log_prior_mean) ** 2 / (2.0 * prior_var)
    return value


def _maximize_log_alpha(objective, lower, upper):
    """Grid search followed by bounded Brent refinement."""
    grid = np.linspace(lower, upper, GRID_SIZE)
    values = np.array([objective(a) for a in grid])
    values = np.where(np.isfinite(values), values, -np.inf)
    i = int(np.argmax(values))
    lo = grid[max(i - 1, 0)]
    hi = grid[min(i + 1, GRID_SIZE - 1)]
    res = optimize.minimize_scalar(lambda a: -objective(a), bounds=(lo, hi),
                                   method='bounded', options={'xatol': 1e-6})
    if res.success and np.isfinite(res.fun) and -res.fun >= values[i]:
        return float(res.x)
    return float(grid[i])


def _gene_dispersion_task(y, alpha_init, X, log_sf, min_disp, max_disp):
    """Gene-wise dispersion for one gene; returns (dispersion, mu)."""
    fit = fit_nb_glm_gene(y, X, log_sf, alpha_init)
    mu = fit.mu
    log_a = _maximize_log_alpha(lambda a: cox_reid_apl(a, y, mu, X),
                                np.log(min_disp / 10), np.log(max_disp))
    disp = float(np.clip(np.exp(log_a), min_disp, max_disp))
    return disp, mu


def _map_dispersion_task(y, mu, log_fitted, X, prior_var, min_disp, max_disp):
    log_a = _maximize_log_alpha(
        lambda a: cox_reid_apl(a, y, mu, X, log_prior_mean=log_fitted,
                               prior_var=prior_var),
        np.log(min_disp / 10), np.log(max_disp))
    return float(np.clip(np.exp(log_a), min_disp, max_disp))


# --- matrix-level estimation ---

def rough_disp_estimate(normalized, X):
    """Method-of-moments estimate from linear-model residuals."""
    m, p = X.shape
    beta = np.linalg.lstsq(X, normalized.T, rcond=None)[0]
    mu = np.maximum(1.0, (X @ beta).T)
    est = np.sum(((normalized - mu) ** 2 - mu) / mu ** 2, axis=1) / (m - p)
    return np.maximum(est, 0)


def moments_disp_estimate(normalized, size_factors):
    """Method-of-moments estimate ignoring the design."""
    xim = np.mean(1.0 / size_factors)
    bm = normalized.mean(axis=1)
    bv = normalized.var(axis=1, ddof=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        return (bv - xim * bm) / bm ** 2


def gene_dispersions(counts, X, size_factors, n_jobs=1):
    """Gene-wise dispersion estimates for a count matrix.

    Returns
    -------
    (ndarray, ndarray)
        Dispersions (NaN for all-zero genes) and fitted means.
    """
    counts = np.asarray(counts, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    sf = np.asarray(size_factors, dtype=np.float64)
    ngenes, m = counts.shape
    p = X.shape[1]
    if m <= p:
        raise ValueError(
            "the design matrix has as many coefficients as samples, so "
            "dispersions cannot be estimated")
    min_disp, upper = MIN_DISP, max_disp(m)

    all_zero = counts.sum(axis=1) == 0
    idx = np.where(~all_zero)[0]
    disp = np.full(ngenes, np.nan)
    mu = np.zeros((ngenes, m))
    if len(idx) == 0:
        return disp, mu

    normalized = counts[idx] / sf[None, :]
    rough = rough_disp_estimate(normalized, X)
    moments = moments_disp_estimate(normalized, sf)
    alpha_init = np.fmin(rough, moments)
    alpha_init = np.clip(np.nan_to_num(alpha_init, nan=min_disp), min_disp, upper)

    task = partial(_gene_dispersion_task, X=X, log_sf=np.log(sf),
                   min_disp=min_disp, max_disp=upper)
    out = map_genes(task, counts[idx], alpha_init, n_jobs=n_jobs)
    for g, (d, mu_g) in zip(idx, out):
        disp[g] = d
        mu[g] = mu_g
    return disp, mu


def fit_dispersion_trend(means, disps, fit_type='parametric'):
    """Fit the mean-dispersion trend.

    Genes with gene-wise estimates below ``100 * MIN_DISP`` (or non-finite)
    are not used. A parametric fit that does not converge or gives
    non-positive coefficients falls back to 'local'. With no usable genes a
    constant trend is returned with a warning.

    Returns
    -------
    DispersionTrend
    """
    if fit_type not in FIT_TYPES:
        raise ValueError(f"fit_type must be one of {FIT_TYPES}")
    means = np.asarray(means, dtype=np.float64)
    disps = np.asarray(disps, dtype=np.float64)
    usable = np.isfinite(disps) & (disps >= USABLE_FACTOR * MIN_DISP) & (means > 0)

    if not usable.any():
        finite = disps[np.isfinite(disps)]
        value = float(np.mean(finite)) if len(finite) else MIN_DISP
        warnings.warn(
            "all gene-wise dispersion estimates are within 2 orders of "
            "magnitude of the minimum value; using a constant trend",
            DispersionFitWarning, stacklevel=2)
        return DispersionTrend('mean', value=max(value, MIN_DISP))

    means, disps = means[usable], disps[usable]

    if fit_type == 'parametric':
        try:
            coefs = _parametric_dispersion_fit(means, disps)
            return DispersionTrend('parametric', coefficients=coefs)
        except ValueError as e:
            warnings.warn(f"{e}; using fit_type='local' instead",
                          DispersionFitWarning, stacklevel=2)
            fit_type = 'local'

    if fit_type == 'local':
        if len(means) < 3:
            warnings.warn("too few genes for a local fit; using fit_type='mean'",
                          DispersionFitWarning, stacklevel=2)
        else:
            lm = np.log(means)
            xs = np.unique(lm)
            ys = local_linear_fit(lm, np.log(disps), weights=means, span=0.7,
                                  x_eval=xs)
            return DispersionTrend('local', log_means=xs, log_disps=ys)

    value = stats.trim_mean(disps, 0.001)
    return DispersionTrend('mean', value=max(float(value), MIN_DISP))


def _parametric_dispersion_fit(means, disps):
    """Gamma-family GLM of disps on 1/means with identity link."""
    import statsmodels.api as sm
    from statsmodels.tools.sm_exceptions import DomainWarning

    coefs = np.array([0.1, 1.0])
    family = sm.families.Gamma(link=sm.families.links.Identity())
    for _ in range(10):
        resid = disps / (coefs[0] + coefs[1] / means)
        use = (resid > 1e-4) & (resid < 15)
        if use.sum() < 3:
            raise ValueError("too few genes for a parametric dispersion fit")
        exog = np.column_stack([np.ones(use.sum()), 1.0 / means[use]])
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', DomainWarning)
                warnings.simplefilter('ignore', RuntimeWarning)
                fit = sm.GLM(disps[use], exog, family=family).fit(start_params=coefs)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise ValueError(f"parametric dispersion fit failed ({e})")
        old = coefs
        coefs = np.asarray(fit.params, dtype=np.float64)
        if not np.all(np.isfinite(coefs)) or not np.all(coefs > 0):
            raise ValueError("parametric dispersion trend failed to fit, "
                             "coefficients are not positive")
        if np.sum(np.log(coefs / old) ** 2) < 1e-6:
            return coefs
    raise ValueError("parametric dispersion fit did not converge")


def map_dispersions(counts, X, mu, gene_est, fitted, n_jobs=1):
    """Maximum a posteriori dispersions shrunk towards the trend.

    Returns
    -------
    dict with 'map', 'final', 'outlier', 'prior.var', 'var.log.disp'.
    """
    counts = np.asarray(counts, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    ngenes, m = counts.shape
    p = X.shape[1]
    upper = max_disp(m)

    usable = np.isfinite(gene_est) & (gene_est >= USABLE_FACTOR * MIN_DISP)
    if usable.any():
        var_log_disp = mad(np.log(gene_est[usable]) - np.log(fitted[usable])) ** 2
    else:
        var_log_disp = np.nan
    if np.isfinite(var_log_disp):
        prior_var = max(var_log_disp - float(trigamma((m - p) / 2.0)), MIN_PRIOR_VAR)
    else:
        prior_var = MIN_PRIOR_VAR

    nonzero = np.isfinite(gene_est)
    idx = np.where(nonzero)[0]
    map_est = np.full(ngenes, np.nan)
    task = partial(_map_dispersion_task, X=X, prior_var=prior_var,
                   min_disp=MIN_DISP, max_disp=upper)
    out = map_genes(task, counts[idx], mu[idx], np.log(fitted[idx]), n_jobs=n_jobs)
    map_est[idx] = out

    outlier = np.zeros(ngenes, dtype=bool)
    if np.isfinite(var_log_disp):
        with np.errstate(invalid='ignore'):
            outlier[idx] = (np.log(gene_est[idx]) >
                            np.log(fitted[idx]) + OUTLIER_SD * np.sqrt(var_log_disp))

    final = np.where(outlier, gene_est, map_est)
    final = np.where(nonzero, np.clip(final, MIN_DISP, upper), np.nan)
    return {'map': map_est, 'final': final, 'outlier': outlier,
            'prior.var': prior_var, 'var.log.disp': var_log_disp}


# --- dataset-level steps ---

def _base_stats(counts, sf):
    normalized = counts / sf[None, :]
    bm = normalized.mean(axis=1)
    bv = normalized.var(axis=1, ddof=1) if counts.shape[1] > 1 else np.full(len(bm), np.nan)
    return bm, bv


def estimate_dispersions_gene_est(ds, n_jobs=1, verbose=False):
    """Gene-wise dispersion estimates for a dataset.

    Requires size factors. Any previous dispersion trend and later outputs
    are dropped; the dataset stays at 'SizeFactorsEstimated' until the
    trend is fitted.
    """
    ds.require('SizeFactorsEstimated', "Dispersion estimation")
    if ds.reached('DispersionsEstimated'):
        ds.invalidate('DispersionsEstimated')
    if verbose:
        print("gene-wise dispersion estimates")
    sf = np.asarray(ds['size.factors'], dtype=np.float64)
    counts = ds['counts']
    disp, mu = gene_dispersions(counts, ds['design.matrix'], sf, n_jobs=n_jobs)
    bm, bv = _base_stats(counts, sf)
    ds['dispersion.fit'] = DispersionFit(gene_est=disp, mu=mu,
                                         columns=tuple(ds['design.columns']),
                                         design=ds['design.matrix'])
    ds['base.mean'] = bm
    ds['base.var'] = bv
    ds['all.zero'] = counts.sum(axis=1) == 0
    return ds


def estimate_dispersions_fit(ds, fit_type='parametric', verbose=False):
    """Fit the mean-dispersion trend and advance to 'DispersionsEstimated'."""
    fit = ds.get('dispersion.fit')
    if fit is None:
        raise StageError("fitting the dispersion trend requires gene-wise "
                         "estimates; run estimate_dispersions_gene_est first")
    check_fit_design(ds, fit, "Fitting the dispersion trend")
    if verbose:
        print("mean-dispersion relationship")
    bm = ds['base.mean']
    nonzero = ~ds['all.zero']
    trend = fit_dispersion_trend(bm[nonzero], fit.gene_est[nonzero], fit_type)
    fitted = np.full(len(bm), np.nan)
    fitted[nonzero] = trend(bm[nonzero])
    new = DispersionFit(gene_est=fit.gene_est, mu=fit.mu, columns=fit.columns,
                        design=fit.design, trend=trend, fitted=fitted)
    ds.advance('DispersionsEstimated', dispersion_fit=new,
               base_mean=ds['base.mean'], base_var=ds['base.var'],
               all_zero=ds['all.zero'])
    return ds


def estimate_dispersions_map(ds, n_jobs=1, verbose=False):
    """Shrink gene-wise estimates towards the trend; advance to 'DispersionsShrunk'."""
    ds.require('DispersionsEstimated', "Dispersion shrinkage")
    if verbose:
        print("final dispersion estimates")
    fit = ds['dispersion.fit']
    check_fit_design(ds, fit, "Dispersion shrinkage")
    out = map_dispersions(ds['counts'], ds['design.matrix'], fit.mu,
                          fit.gene_est, fit.fitted, n_jobs=n_jobs)
    new = DispersionFit(gene_est=fit.gene_est, mu=fit.mu, columns=fit.columns,
                        design=fit.design, trend=fit.trend, fitted=fit.fitted,
                        map=out['map'], final=out['final'], outlier=out['outlier'],
                        prior_var=out['prior.var'],
                        var_log_disp=out['var.log.disp'])
    ds.advance('DispersionsShrunk', dispersion_fit=new)
    return ds


def estimate_dispersions(ds, fit_type='parametric', n_jobs=1, verbose=False):
    """Gene-wise estimates, trend and MAP shrinkage in one call."""
    estimate_dispersions_gene_est(ds, n_jobs=n_jobs, verbose=verbose)
    estimate_dispersions_fit(ds, fit_type=fit_type, verbose=verbose)
    estimate_dispersions_map(ds, n_jobs=n_jobs, verbose=verbose)
    return ds
