# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
Visualization functions for deseqPython.

Sample distances and PCA on transformed counts, plus MA and
dispersion plots. All plot functions return (fig, ax).
"""

import numpy as np
import pandas as pd


def _as_frame(mat):
    if isinstance(mat, pd.DataFrame):
        return mat
    mat = np.asarray(mat, dtype=np.float64)
    return pd.DataFrame(mat, columns=[f"sample{j+1}" for j in range(mat.shape[1])])


def sample_distances(mat):
    """Euclidean distances between samples (columns) of a gene x sample matrix."""
    from scipy.spatial.distance import pdist, squareform

    df = _as_frame(mat)
    d = squareform(pdist(df.to_numpy(dtype=np.float64).T, metric='euclidean'))
    return pd.DataFrame(d, index=df.columns, columns=df.columns)


def pca(mat, ntop=500, n_components=2):
    """Principal components of samples using the most variable genes.

    Parameters
    ----------
    mat : DataFrame or ndarray
        Transformed expression (genes x samples), e.g. from
        ``variance_stabilizing_transformation``.
    ntop : int
        Number of genes with highest row variance to use.
    n_components : int

    Returns
    -------
    (DataFrame, ndarray)
        Sample coordinates (PC1, PC2, ...) and percent variance explained.
    """
    df = _as_frame(mat)
    x = df.to_numpy(dtype=np.float64)
    rv = np.var(x, axis=1, ddof=1)
    top = np.argsort(-rv, kind='mergesort')[:min(ntop, len(rv))]
    xt = x[top].T
    xt = xt - xt.mean(axis=0)
    u, s, _ = np.linalg.svd(xt, full_matrices=False)
    k = min(n_components, len(s))
    coords = u[:, :k] * s[:k]
    total = np.sum(s ** 2)
    percent = 100 * s[:k] ** 2 / total if total > 0 else np.zeros(k)
    cols = [f"PC{i+1}" for i in range(k)]
    return pd.DataFrame(coords, index=df.columns, columns=cols), percent


def plot_pca(mat, samples=None, color_by=None, ntop=500, main=None, **kwargs):
    """PCA plot of samples, optionally coloured by a sample covariate."""
    import matplotlib.pyplot as plt

    coords, percent = pca(mat, ntop=ntop)
    fig, ax = plt.subplots(figsize=(7, 6))
    if color_by is not None and samples is not None:
        groups = samples.loc[coords.index, color_by].astype(str)
        for g in pd.unique(groups):
            m = (groups == g).to_numpy()
            ax.scatter(coords.iloc[m, 0], coords.iloc[m, 1], label=g, **kwargs)
        ax.legend(title=color_by)
    else:
        ax.scatter(coords.iloc[:, 0], coords.iloc[:, 1], **kwargs)
    for name, (x, y) in zip(coords.index, coords.iloc[:, :2].to_numpy()):
        ax.annotate(str(name), (x, y), fontsize=8)
    ax.set_xlabel(f"PC1: {percent[0]:.0f}% variance")
    if len(percent) > 1:
        ax.set_ylabel(f"PC2: {percent[1]:.0f}% variance")
    if main:
        ax.set_title(main)
    plt.tight_layout()
    return fig, ax


def plot_sample_distances(mat, cmap='Blues_r', main=None):
    """Heatmap of Euclidean sample distances."""
    import matplotlib.pyplot as plt

    d = sample_distances(mat)
    fig, ax = plt.subplots(figsize=(7, 6))
    im = ax.imshow(d.to_numpy(), cmap=cmap)
    ax.set_xticks(range(len(d)))
    ax.set_xticklabels(d.columns, rotation=90)
    ax.set_yticks(range(len(d)))
    ax.set_yticklabels(d.index)
    fig.colorbar(im, ax=ax)
    if main:
        ax.set_title(main)
    plt.tight_layout()
    return fig, ax


def plot_ma(res, alpha=None, ylim=None, main=None):
    """Log2 fold change against mean of normalized counts.

    Genes with padj below ``alpha`` are drawn in red.
    """
    import matplotlib.pyplot as plt

    tab = res['table']
    if alpha is None:
        alpha = res.get('alpha', 0.1)
    keep = tab['baseMean'] > 0
    x = tab.loc[keep, 'baseMean'].to_numpy()
    y = tab.loc[keep, 'log2FoldChange'].to_numpy()
    sig = (tab.loc[keep, 'padj'] < alpha).to_numpy()

    fig, ax = plt.subplots(figsize=(8, 6))
    ax.scatter(x[~sig], y[~sig], s=2, alpha=0.5, c='grey')
    ax.scatter(x[sig], y[sig], s=4, alpha=0.7, c='red', label=f"padj < {alpha}")
    ax.set_xscale('log')
    ax.axhline(y=0, color='black', linestyle='--', linewidth=0.5)
    if ylim is not None:
        ax.set_ylim(ylim)
    ax.set_xlabel('mean of normalized counts')
    ax.set_ylabel('log2 fold change')
    if main:
        ax.set_title(main)
    plt.tight_layout()
    return fig, ax


def plot_dispersion_estimates(ds, main=None):
    """Gene-wise, fitted and final dispersions against mean normalized count."""
    import matplotlib.pyplot as plt

    ds.require('DispersionsEstimated', "Plotting dispersions")
    fit = ds['dispersion.fit']
    bm = np.asarray(ds['base.mean'])
    keep = bm > 0

    fig, ax = plt.subplots(figsize=(8, 6))
    ax.scatter(bm[keep], fit.gene_est[keep], s=2, c='black', label='gene-est')
    if fit.final is not None:
        ax.scatter(bm[keep], fit.final[keep], s=2, c='dodgerblue', label='final')
        if fit.outlier is not None:
            out = keep & fit.outlier
            ax.scatter(bm[out], fit.gene_est[out], s=12, facecolors='none',
                       edgecolors='dodgerblue')
    o = np.argsort(bm[keep])
    ax.plot(bm[keep][o], fit.fitted[keep][o], c='red', linewidth=2, label='fitted')
    ax.set_xscale('log')
    ax.set_yscale('log')
    ax.set_xlabel('mean of normalized counts')
    ax.set_ylabel('dispersion')
    ax.legend()
    if main:
        ax.set_title(main)
    plt.tight_layout()
    return fig, ax
