"""
breathing_allometry: Mammalian breathing rate vs body mass

Loads breathing-frequency measurements, fits a mixed-effects allometric
model across taxonomic levels and reports diagnostics, slope contrasts
and figures.
"""

__version__ = "0.1.0"
__description__ = "Allometric mixed-effects analysis of mammalian breathing rate"

from .config import AnalysisConfig
from .exceptions import (
    AnalysisError,
    DataDownloadError,
    DataValidationError,
    ModelFitError,
)

__all__ = [
    "AnalysisConfig",
    "AnalysisError",
    "DataDownloadError",
    "DataValidationError",
    "ModelFitError",
]
