"""
Exception types raised by hetsim.
"""


class HetsimError(Exception):
    """Base class for all hetsim errors."""


class ConfigurationError(HetsimError, ValueError):
    """
    Malformed model or run configuration.

    Raised immediately, before any simulation or optimization work starts
    (e.g. wrong number of FreeRate parameters, proportions that do not sum
    to one).
    """


class NumericalError(HetsimError, ArithmeticError):
    """
    A numerical invariant was violated.

    Indicates a corrupted model or a bug: zero pattern likelihood, an EM
    step that lowers the log-likelihood beyond the allowed slack, or an
    invariant site reaching the substitution sampler.
    """


class OutputError(HetsimError, OSError):
    """Writing simulated sequences failed."""

    def __init__(self, path, reason):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Cannot write output file {self.path}: {reason}")
