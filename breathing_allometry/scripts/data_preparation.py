#!/usr/bin/env python3
"""
Data Preparation for Breathing Rate Allometry
Loads raw breathing-frequency measurements and the species workbook,
normalises categories, derives log-scale columns and writes the cleaned table.
"""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd

from ..config import (
    AnalysisConfig,
    CATEGORY_COLUMNS,
    COLUMN_ALIASES,
    SPELLING_CORRECTIONS,
    SUPPLEMENT_SHEETS,
    TAXONOMY_COLUMNS,
    setup_directories,
)
from ..exceptions import DataValidationError

logger = logging.getLogger(__name__)

NUMERIC_COLUMNS = ['body_mass_kg', 'body_mass_g', 'breathing_frequency', 'temperature_c']
MISSING_TOKENS = {'', 'na', 'n/a', 'nan', 'none', 'null', '-', '?'}


def standardize_column_name(name) -> str:
    """Standardize a raw header to the canonical snake_case column name."""
    standardized = str(name).strip().lower()

    # Clean up the name
    standardized = re.sub(r'[^\w\s]', '', standardized)
    standardized = re.sub(r'\s+', '_', standardized.strip())

    return COLUMN_ALIASES.get(standardized, standardized)


def _standardize_headers(df: pd.DataFrame) -> pd.DataFrame:
    df = df.rename(columns=standardize_column_name)
    # Two raw headers may collapse onto one canonical name; keep the first.
    return df.loc[:, ~df.columns.duplicated()]


def load_measurements(path) -> pd.DataFrame:
    """Load the breathing-rate CSV with standardized headers."""
    try:
        df = pd.read_csv(path)
    except Exception as e:
        raise DataValidationError(f"Could not read measurements from {path}: {e}") from e

    df = _standardize_headers(df)
    logger.info(f"Loaded {len(df)} measurements with columns {list(df.columns)}")
    return df


def load_supplement(path) -> Dict[str, pd.DataFrame]:
    """
    Load the named sheets of the supplementary species workbook.

    Sheets absent from the workbook are left out of the result;
    merge_supplement warns about them.
    """
    try:
        with pd.ExcelFile(path) as workbook:
            available = set(workbook.sheet_names)
            sheets = {name: workbook.parse(name) for name in SUPPLEMENT_SHEETS if name in available}
    except Exception as e:
        raise DataValidationError(f"Could not read supplement workbook {path}: {e}") from e

    supplement = {name: _standardize_headers(frame) for name, frame in sheets.items()}
    for name, frame in supplement.items():
        logger.info(f"Loaded supplement sheet '{name}': {len(frame)} rows")
    return supplement


def _normalize_text(series: pd.Series, corrections: Optional[Dict[str, str]] = None) -> pd.Series:
    """Lower-case, strip, correct spelling and re-capitalize a text column."""
    mask = series.notna()
    cleaned = series[mask].astype(str).str.strip().str.lower()
    cleaned = cleaned.str.replace(r'\s+', ' ', regex=True)
    cleaned = cleaned.where(~cleaned.isin(MISSING_TOKENS))
    if corrections:
        cleaned = cleaned.replace(corrections)
    cleaned = cleaned.str.capitalize()

    result = pd.Series(np.nan, index=series.index, dtype=object)
    result.loc[cleaned.index] = cleaned
    return result


def normalize_categories(df: pd.DataFrame) -> pd.DataFrame:
    """Normalize capitalization and spelling of taxonomic and categorical fields."""
    df = df.copy()

    for col in TAXONOMY_COLUMNS + CATEGORY_COLUMNS + ['species', 'common_name']:
        if col not in df.columns:
            continue
        if pd.api.types.is_numeric_dtype(df[col]):
            continue
        df[col] = _normalize_text(df[col], SPELLING_CORRECTIONS.get(col))

    # Genus can be recovered from the binomial when the column is absent or blank
    if 'species' in df.columns:
        genus_from_species = df['species'].str.split(' ').str[0]
        if 'genus' in df.columns:
            df['genus'] = df['genus'].fillna(genus_from_species)
        else:
            df['genus'] = genus_from_species

    if 'subject_id' in df.columns:
        df['subject_id'] = df['subject_id'].where(df['subject_id'].isna(),
                                                  df['subject_id'].astype(str).str.strip())

    return df


def merge_supplement(df: pd.DataFrame, supplement: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """Fill species-level attributes and references from the workbook."""
    if 'species' not in df.columns:
        logger.warning("Measurements have no species column; supplement not merged")
        return df

    species_sheet, sources_sheet = (supplement.get(name) for name in SUPPLEMENT_SHEETS)

    for sheet_name, sheet, columns in [
        (SUPPLEMENT_SHEETS[0], species_sheet, ['common_name', 'habitat']),
        (SUPPLEMENT_SHEETS[1], sources_sheet, ['reference']),
    ]:
        if sheet is None or 'species' not in sheet.columns:
            logger.warning(f"Supplement sheet '{sheet_name}' missing or has no species column")
            continue

        available = [c for c in columns if c in sheet.columns]
        if not available:
            continue

        lookup = normalize_categories(sheet[['species'] + available])
        lookup = lookup.dropna(subset=['species']).drop_duplicates(subset='species')
        lookup = lookup[['species'] + available]

        df = df.merge(lookup, on='species', how='left', suffixes=('', '_supplement'))
        for col in available:
            supplement_col = f'{col}_supplement'
            if supplement_col in df.columns:
                # Values already in the measurement table win
                df[col] = df[col].fillna(df[supplement_col])
                df = df.drop(columns=supplement_col)

        matched = df['species'].isin(lookup['species']).sum()
        logger.info(f"Merged '{sheet_name}' sheet: {matched}/{len(df)} rows matched")

    return df


def derive_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Convert units and add log10 mass and frequency."""
    df = df.copy()

    for col in NUMERIC_COLUMNS:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors='coerce')

    # Mass reported in grams
    if 'body_mass_g' in df.columns:
        mass_from_grams = df['body_mass_g'] / 1000.0
        if 'body_mass_kg' in df.columns:
            df['body_mass_kg'] = df['body_mass_kg'].fillna(mass_from_grams)
        else:
            df['body_mass_kg'] = mass_from_grams

    # Log transform; non-positive values cannot be logged
    if 'body_mass_kg' in df.columns:
        df['log_mass'] = np.log10(df['body_mass_kg'].where(df['body_mass_kg'] > 0))
    if 'breathing_frequency' in df.columns:
        df['log_frequency'] = np.log10(
            df['breathing_frequency'].where(df['breathing_frequency'] > 0))

    return df


def drop_incomplete(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """Drop rows with missing values in any of the modelling columns."""
    columns = list(columns)
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise DataValidationError(f"Required columns missing from dataset: {missing}")

    df_clean = df.dropna(subset=columns).reset_index(drop=True)
    dropped = len(df) - len(df_clean)
    if dropped:
        logger.info(f"Dropped {dropped} rows with missing values in {columns}")

    if df_clean.empty:
        raise DataValidationError("No complete observations remain after filtering")

    return df_clean


def prepare_dataset(measurements_path, supplement_path,
                    config: Optional[AnalysisConfig] = None) -> pd.DataFrame:
    """Load, clean and filter the breathing-rate data."""
    config = config or AnalysisConfig()

    df = load_measurements(measurements_path)
    df = normalize_categories(df)

    if supplement_path is not None:
        supplement = load_supplement(supplement_path)
        df = merge_supplement(df, supplement)

    df = derive_columns(df)
    return drop_incomplete(df, config.model_columns)


def write_cleaned(df: pd.DataFrame, path) -> Path:
    """Write the cleaned table and check it reads back intact."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)

    written_rows = len(pd.read_csv(path))
    if written_rows != len(df):
        raise DataValidationError(
            f"Cleaned CSV has {written_rows} rows, expected {len(df)}")

    logger.info(f"Cleaned data written to {path} ({len(df)} rows)")
    return path


def summarize_dataset(df: pd.DataFrame, config: Optional[AnalysisConfig] = None) -> Dict:
    """Descriptive summary of the cleaned dataset."""
    config = config or AnalysisConfig()
    summary = {
        'n_observations': int(len(df)),
        'n_species': int(df['species'].nunique()) if 'species' in df.columns else None,
        'n_families': int(df['family'].nunique()) if 'family' in df.columns else None,
        'n_orders': int(df['order'].nunique()) if 'order' in df.columns else None,
        'mass_range_kg': [float(df['body_mass_kg'].min()), float(df['body_mass_kg'].max())],
        'frequency_range': [float(df['breathing_frequency'].min()),
                            float(df['breathing_frequency'].max())],
    }
    if 'subject_id' in df.columns:
        summary['n_subjects'] = int(df['subject_id'].nunique())

    for col in [config.contrast_factor] + [c for c in config.categorical_covariates
                                           if c != config.contrast_factor]:
        if col in df.columns:
            summary[f'{col}_counts'] = df[col].value_counts().to_dict()

    return summary


def main(config: Optional[AnalysisConfig] = None, refresh: bool = False) -> pd.DataFrame:
    """Main execution function."""
    from ..download import fetch_inputs

    config = config or AnalysisConfig.from_env()
    print("Starting data preparation...")

    setup_directories(config)
    measurements_path, supplement_path = fetch_inputs(config, refresh=refresh)

    df = prepare_dataset(measurements_path, supplement_path, config)
    write_cleaned(df, config.cleaned_path)

    summary = summarize_dataset(df, config)
    print(f"\nData Preparation Summary:")
    print(f"Observations: {summary['n_observations']}")
    print(f"Species: {summary['n_species']}  Families: {summary['n_families']}  "
          f"Orders: {summary['n_orders']}")
    print(f"Body mass range: {summary['mass_range_kg'][0]:.4g} - {summary['mass_range_kg'][1]:.4g} kg")

    return df


if __name__ == "__main__":
    main()
