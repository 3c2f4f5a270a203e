# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""
deseqPython: gene-level RNA-seq differential expression in Python.

Read counting, median-of-ratios normalization, variance stabilization and
negative binomial GLM testing with empirical Bayes shrinkage.
"""

__version__ = "0.1.0"

# --- Classes ---
from .classes import DESeqDataSet, DESeqResults, STAGES
from .errors import (
    DegenerateSampleError,
    RankDeficientDesignError,
    SampleMismatchError,
    StageError,
    GLMConvergenceWarning,
    DispersionFitWarning,
)

# --- Counting ---
from .counting import (
    Exon,
    GeneAnnotation,
    AlignmentRecord,
    read_gtf,
    read_alignments,
    count_reads,
    count_matrix,
)

# --- Dataset construction & accessors ---
from .design import Design, model_matrix, is_fullrank, non_estimable
from .dataset import (
    make_deseq_dataset,
    set_design,
    set_size_factors,
    get_counts,
    get_size_factors,
    get_dispersions,
    results_names,
)

# --- Normalization ---
from .normalization import estimate_size_factors

# --- Expression ---
from .expression import normalized_counts, log_normalized_counts, base_mean, base_var

# --- Dispersion estimation ---
from .dispersion import (
    DispersionTrend,
    DispersionFit,
    estimate_dispersions,
    estimate_dispersions_gene_est,
    estimate_dispersions_fit,
    estimate_dispersions_map,
    fit_dispersion_trend,
)

# --- Variance stabilization ---
from .vst import variance_stabilizing_transformation, normalized_log_transform

# --- GLM fitting ---
from .glm import GeneFit, NBGLMFit, fit_nb_glm_gene, nb_glm_fit, nbinom_deviance

# --- Testing ---
from .wald_test import deseq, nbinom_wald_test

# --- Results ---
from .results import results, lfc_shrink, summary, top_genes

# --- I/O ---
from .io import read_count_table, read_htseq_counts, read_sample_table, write_results

# --- Visualization ---
from .visualization import (
    sample_distances,
    pca,
    plot_pca,
    plot_sample_distances,
    plot_ma,
    plot_dispersion_estimates,
)
