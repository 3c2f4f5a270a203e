# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
I/O functions for deseqPython.

Readers for count tables (plain matrices, featureCounts and htseq-count
output) and sample sheets, and a writer for results tables.
"""

import os
import numpy as np
import pandas as pd

_FEATURECOUNTS_META = ['Geneid', 'Chr', 'Start', 'End', 'Strand', 'Length']


def _check_exists(path):
    if not os.path.exists(path):
        raise FileNotFoundError(f"file not found: {path}")


def _guess_sep(path, sep):
    if sep is not None:
        return sep
    name = path[:-3] if path.endswith('.gz') else path
    return ',' if name.endswith('.csv') else '\t'


def _sample_label(name):
    base = os.path.basename(str(name))
    for ext in ('.bam', '.sam', '.cram'):
        if base.endswith(ext):
            return base[:-len(ext)]
    return base


def read_count_table(path, sep=None, verbose=False):
    """Read a gene x sample count matrix.

    Accepts a plain table (gene ids in the first column, one column per
    sample) or featureCounts output, whose annotation columns are dropped
    and whose BAM path headers are reduced to sample names.

    Returns
    -------
    DataFrame of int64 counts indexed by gene id.
    """
    path = os.fspath(path)
    _check_exists(path)
    if verbose:
        print(f"Reading {os.path.basename(path)}...")
    df = pd.read_csv(path, sep=_guess_sep(path, sep), comment='#')

    if 'Geneid' in df.columns and 'Length' in df.columns:
        df = df.set_index('Geneid')
        df = df.drop(columns=[c for c in _FEATURECOUNTS_META if c in df.columns])
        df.columns = [_sample_label(c) for c in df.columns]
    else:
        df = df.set_index(df.columns[0])

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"non-numeric count columns in {path}: {non_numeric[:5]}")
    df.index = df.index.map(str)
    df.index.name = 'gene_id'
    return df.astype(np.int64)


def read_htseq_counts(files, labels=None, verbose=False):
    """Combine per-sample htseq-count outputs into one count matrix.

    Special counter rows (``__no_feature`` etc.) are dropped.
    """
    if isinstance(files, (str, os.PathLike)):
        files = [files]
    files = [os.fspath(f) for f in files]
    if labels is None:
        labels = [os.path.splitext(os.path.basename(f))[0] for f in files]
    if len(labels) != len(files):
        raise ValueError("labels must have one entry per file")

    columns = []
    for f, label in zip(files, labels):
        _check_exists(f)
        if verbose:
            print(f"Reading {os.path.basename(f)}...")
        col = pd.read_csv(f, sep='\t', header=None, index_col=0,
                          names=['gene_id', label]).iloc[:, 0]
        col = col[~col.index.astype(str).str.startswith('__')]
        columns.append(col)

    mat = pd.concat(columns, axis=1, join='outer')
    if mat.isna().any().any():
        raise ValueError("htseq-count files list different genes")
    mat.index = mat.index.map(str)
    mat.index.name = 'gene_id'
    return mat.astype(np.int64)


def read_sample_table(path, index_col=0, sep=None):
    """Read a sample sheet, one row per sample, indexed by sample id."""
    path = os.fspath(path)
    _check_exists(path)
    df = pd.read_csv(path, sep=_guess_sep(path, sep), index_col=index_col)
    df.index = df.index.map(str)
    if df.index.has_duplicates:
        raise ValueError(f"duplicated sample ids in {path}")
    return df


def write_results(res, path, sep=None):
    """Write a DESeqResults table (or DataFrame) to a delimited file."""
    path = os.fspath(path)
    table = res['table'] if isinstance(res, dict) else res
    table.to_csv(path, sep=_guess_sep(path, sep), index_label='gene_id', na_rep='NA')
    return path
