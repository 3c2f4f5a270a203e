# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""Shared fixtures for deseqPython tests."""

import os

# numba's TBB threading layer deadlocks while unloading at interpreter exit
# after the process-pool tests fork; pin a layer that shuts down cleanly.
os.environ.setdefault("NUMBA_THREADING_LAYER", "workqueue")

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


def simulate_nb_counts(rng, ngenes=300, size_factors=(0.8, 1.0, 1.25, 0.9, 1.1, 1.0),
                       n_de=20, fold=4.0):
    """NB counts for 3 + 3 samples; the first ``n_de`` genes are up in group B."""
    sf = np.asarray(size_factors)
    base = np.exp(rng.uniform(np.log(5), np.log(2000), ngenes))
    disp = 0.05 + 1.0 / base
    mu = base[:, None] * sf[None, :]
    mu[:n_de, 3:] *= fold
    r = 1.0 / disp[:, None]
    counts = rng.negative_binomial(r, r / (r + mu))
    # One gene with no reads at all
    counts[-1] = 0
    return pd.DataFrame(counts, index=[f"g{i+1}" for i in range(ngenes)],
                        columns=[f"s{j+1}" for j in range(len(sf))])


@pytest.fixture(scope="session")
def simulate():
    """The NB count simulator, for tests that need their own data."""
    return simulate_nb_counts


@pytest.fixture
def nb_counts(rng):
    """300 genes x 6 samples, NB with trended dispersion, 20 DE genes, 1 all-zero gene."""
    return simulate_nb_counts(rng)


@pytest.fixture
def samples6():
    """Sample table for 3 + 3 samples."""
    return pd.DataFrame({'condition': ['A', 'A', 'A', 'B', 'B', 'B']},
                        index=[f"s{j+1}" for j in range(6)])


@pytest.fixture(scope="module")
def fitted_ds():
    """Simulated dataset run through the full pipeline (shared; copy before mutating)."""
    import deseqpython as dp
    counts = simulate_nb_counts(np.random.RandomState(42))
    samples = pd.DataFrame({'condition': ['A', 'A', 'A', 'B', 'B', 'B']},
                           index=list(counts.columns))
    ds = dp.make_deseq_dataset(counts, samples, dp.Design(['condition']))
    return dp.deseq(ds)


@pytest.fixture
def toy_counts():
    """4 genes x 4 samples: gene1 is 4-fold up in group B, genes 2-4 flat."""
    return pd.DataFrame(
        [[10, 10, 40, 40],
         [20, 20, 20, 20],
         [20, 20, 20, 20],
         [20, 20, 20, 20]],
        index=['gene1', 'gene2', 'gene3', 'gene4'],
        columns=['A1', 'A2', 'B1', 'B2'])


@pytest.fixture
def toy_samples():
    return pd.DataFrame({'condition': ['A', 'A', 'B', 'B']},
                        index=['A1', 'A2', 'B1', 'B2'])


@pytest.fixture
def toy_ds(toy_counts, toy_samples):
    import deseqpython as dp
    return dp.make_deseq_dataset(toy_counts, toy_samples, dp.Design(['condition']))
