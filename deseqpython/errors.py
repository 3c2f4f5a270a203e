# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""Exception and warning types raised by deseqPython."""


class DegenerateSampleError(ValueError):
    """Size factor undefined for a sample (all-zero or no usable ratios)."""

    def __init__(self, message, sample=None):
        super().__init__(message)
        self.sample = sample


class RankDeficientDesignError(ValueError):
    """Design matrix columns are not independently estimable."""

    def __init__(self, message, columns=()):
        super().__init__(message)
        self.columns = list(columns)


class SampleMismatchError(ValueError):
    """Count columns and sample table rows disagree."""


class StageError(RuntimeError):
    """A pipeline step was run before its prerequisite."""


class GLMConvergenceWarning(UserWarning):
    """Per-gene GLM fit did not converge; the gene is reported as NA."""


class DispersionFitWarning(UserWarning):
    """Dispersion trend could not be fitted as requested."""
