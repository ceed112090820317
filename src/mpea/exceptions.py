"""Error taxonomy for the enrichment engine."""


class InvalidInput(ValueError):
    """Raised when scores, gene sets or options cannot be analysed."""


class NoSignificantResults(Exception):
    """Raised when no term passes the significance threshold."""

    def __init__(self, message: str = "No significant terms were found"):
        super().__init__(message)


class NumericalDegeneracyWarning(UserWarning):
    """Brown's covariance estimate was unusable and Fisher's method was used instead."""
