"""
Input acquisition for the breathing-rate dataset.

Fetches the cleaned measurement CSV and the supplementary species workbook
from their published URLs, caching both under data/raw/.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple

import requests

from .config import AnalysisConfig
from .exceptions import DataDownloadError

logger = logging.getLogger(__name__)


class DataDownloader:
    """Downloads input files over HTTP with a shared session."""

    def __init__(self, timeout: float = 30.0, session: Optional[requests.Session] = None):
        """
        Initialize downloader.

        Args:
            timeout: Per-request timeout in seconds
            session: Optional pre-configured session (mainly for tests)
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': 'breathing-allometry/0.1 (+reproducible analysis)',
            'Accept': 'text/csv, application/vnd.openxmlformats-officedocument.spreadsheetml.sheet, */*',
        })

    def fetch(self, url: str, destination: Path, refresh: bool = False) -> Path:
        """Download url to destination unless a cached copy exists."""
        destination = Path(destination)
        if destination.exists() and not refresh:
            logger.info(f"Using cached {destination.name}")
            return destination

        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DataDownloadError(f"Failed to fetch {url}: {e}") from e

        if not response.content:
            raise DataDownloadError(f"Empty response from {url}")

        destination.write_bytes(response.content)
        logger.info(f"Saved {len(response.content):,} bytes to {destination}")
        return destination


def _resolve(downloader: DataDownloader, url: Optional[str], path: Path, refresh: bool) -> Path:
    if url:
        return downloader.fetch(url, path, refresh=refresh)
    if not path.exists():
        raise DataDownloadError(
            f"No URL configured and no local copy at {path}. "
            "Set BREATHING_DATA_URL / BREATHING_SUPPLEMENT_URL or place the file there."
        )
    logger.info(f"No URL configured, using local {path}")
    return path


def fetch_inputs(config: AnalysisConfig, refresh: bool = False,
                 downloader: Optional[DataDownloader] = None) -> Tuple[Path, Path]:
    """Return local paths to the measurement CSV and the species workbook."""
    downloader = downloader or DataDownloader()
    data_path = _resolve(downloader, config.data_url, config.data_path, refresh)
    supplement_path = _resolve(downloader, config.supplement_url, config.supplement_path, refresh)
    return data_path, supplement_path
