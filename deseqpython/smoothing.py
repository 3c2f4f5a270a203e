# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Smoothing functions for deseqPython.

Weighted local linear regression with a nearest-neighbour bandwidth and
tricube kernel, used for the 'local' dispersion trend.
"""

import numpy as np
from numba import njit, prange


@njit(cache=True)
def _local_linear_point(x0, x_sorted, y_sorted, w_sorted, n, nn):
    """Local linear fit evaluated at x0."""
    # Start the window at the nearest data point and grow it to nn points
    lo = np.searchsorted(x_sorted, x0)
    if lo >= n:
        lo = n - 1
    if lo > 0 and x0 - x_sorted[lo - 1] < x_sorted[lo] - x0:
        lo -= 1
    hi = lo + 1
    while hi - lo < nn:
        can_left = lo > 0
        can_right = hi < n
        if can_left and can_right:
            if x0 - x_sorted[lo - 1] <= x_sorted[hi] - x0:
                lo -= 1
            else:
                hi += 1
        elif can_left:
            lo -= 1
        elif can_right:
            hi += 1
        else:
            break

    h = 0.0
    for k in range(lo, hi):
        d = abs(x_sorted[k] - x0)
        if d > h:
            h = d
    h = h * 1.0000001 + 1e-10

    sum_w = 0.0
    sum_w_dx = 0.0
    sum_w_dx2 = 0.0
    rhs0 = 0.0
    rhs1 = 0.0
    for k in range(lo, hi):
        u = abs(x_sorted[k] - x0) / h
        t = 1.0 - u * u * u
        wk = t * t * t * w_sorted[k]
        dx = x_sorted[k] - x0
        sum_w += wk
        sum_w_dx += wk * dx
        sum_w_dx2 += wk * dx * dx
        rhs0 += wk * y_sorted[k]
        rhs1 += wk * dx * y_sorted[k]

    det = sum_w * sum_w_dx2 - sum_w_dx * sum_w_dx
    if abs(det) < 1e-12 * (sum_w * sum_w + 1e-300):
        # Degenerate window: weighted local mean
        if sum_w > 0:
            return rhs0 / sum_w
        return y_sorted[lo]
    return (sum_w_dx2 * rhs0 - sum_w_dx * rhs1) / det


@njit(cache=True, parallel=True)
def _local_linear_kernel(x_eval, x_sorted, y_sorted, w_sorted, n, nn, result):
    """Numba kernel for local linear regression at each evaluation point."""
    for i in prange(len(x_eval)):
        result[i] = _local_linear_point(x_eval[i], x_sorted, y_sorted, w_sorted, n, nn)


def local_linear_fit(x, y, weights=None, span=0.7, x_eval=None):
    """Weighted local linear regression of y on x.

    Parameters
    ----------
    x, y : array-like
        Predictor and response.
    weights : array-like, optional
        Prior weights, one per observation.
    span : float
        Fraction of observations in each local window.
    x_eval : array-like, optional
        Points at which to evaluate the fit; defaults to ``x``.

    Returns
    -------
    ndarray of fitted values at ``x_eval``.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    n = len(x)
    if weights is None:
        weights = np.ones(n)
    weights = np.broadcast_to(np.asarray(weights, dtype=np.float64), n).copy()
    if x_eval is None:
        x_eval = x
    x_eval = np.ascontiguousarray(np.asarray(x_eval, dtype=np.float64))

    if n == 0:
        raise ValueError("no observations to smooth")
    if n < 3:
        return np.full(len(x_eval), np.average(y, weights=weights))

    order = np.argsort(x, kind='mergesort')
    x_sorted = np.ascontiguousarray(x[order])
    y_sorted = np.ascontiguousarray(y[order])
    w_sorted = np.ascontiguousarray(weights[order])

    nn = min(n, max(3, int(np.ceil(span * n))))
    result = np.empty(len(x_eval), dtype=np.float64)
    _local_linear_kernel(x_eval, x_sorted, y_sorted, w_sorted, n, nn, result)
    return result
