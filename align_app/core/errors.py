"""Exception types raised by the alignment engine.

Numeric degeneracies (zero normalisation denominator, empty overlap) and
rejected sub-pixel fits are not exceptions: they resolve to zero scores or
the integer peak and are only logged.
"""


class AlignmentError(Exception):
    """Base class for alignment failures."""


class InvalidInputError(AlignmentError, ValueError):
    """Missing, empty, non-2D or incompatible images."""


class ConfigurationError(AlignmentError, ValueError):
    """Inconsistent search bounds or unsupported option values."""
