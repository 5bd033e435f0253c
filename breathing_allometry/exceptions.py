"""Exceptions raised by the analysis pipeline."""


class AnalysisError(Exception):
    """Base class for pipeline errors."""


class DataDownloadError(AnalysisError):
    """An input file could not be fetched or found locally."""


class DataValidationError(AnalysisError):
    """The input table is missing required columns or has no usable rows."""


class ModelFitError(AnalysisError):
    """The mixed-effects model could not be fitted."""
