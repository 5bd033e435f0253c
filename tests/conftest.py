"""
Pytest configuration and fixtures

Builds a synthetic breathing-rate dataset with a known allometric structure:
random intercepts for order, family and species, a -0.25 exponent for
terrestrial and arboreal species and a steeper -0.35 exponent for aquatic
species. Raw headers and category spellings are deliberately messy.
"""
import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

from breathing_allometry.config import AnalysisConfig, setup_directories
from breathing_allometry.scripts.data_preparation import prepare_dataset
from breathing_allometry.scripts.mixed_effects_analysis import (
    fit_mixed_model,
    run_analysis,
    save_results,
)

TRUE_SLOPES = {'Terrestrial': -0.25, 'Aquatic': -0.35, 'Arboreal': -0.25}

# raw spellings as they appear in field sheets
HABITAT_SPELLINGS = {
    'Terrestrial': ['Terrestrial', 'terestrial', ' TERRESTRIAL '],
    'Aquatic': ['Aquatic', 'aquatic', 'Marine'],
    'Arboreal': ['Arboreal', 'aboreal', 'arboreal'],
}
ACTIVITY_SPELLINGS = {
    'Rest': ['Rest', 'resting', 'at rest'],
    'Active': ['Active', 'active', 'exercise'],
}


def make_raw_measurements(seed=2024, n_orders=6, families_per_order=2,
                          species_per_family=3, obs_per_species=4):
    """Synthetic raw measurement table with source-style headers."""
    rng = np.random.default_rng(seed)
    habitats = list(TRUE_SLOPES)
    rows = []
    species_counter = 0

    for o in range(n_orders):
        order_name = f'order{o}ia'
        order_effect = rng.normal(0, 0.08)
        for f in range(families_per_order):
            family_name = f'Family{o}{f}idae'
            family_effect = rng.normal(0, 0.05)
            for s in range(species_per_family):
                genus = f'Genus{o}{f}{s}'
                species = f'{genus} species{s}'
                habitat = habitats[species_counter % len(habitats)]
                species_counter += 1
                log_mass = rng.uniform(-2.0, 3.0)
                species_effect = rng.normal(0, 0.05)

                for i in range(obs_per_species):
                    activity = 'Active' if i % 2 else 'Rest'
                    temperature = rng.normal(22, 3)
                    obs_log_mass = log_mass + rng.normal(0, 0.05)
                    log_freq = (1.7 + TRUE_SLOPES[habitat] * obs_log_mass
                                + (0.15 if activity == 'Active' else 0.0)
                                + 0.005 * (temperature - 22)
                                + order_effect + family_effect + species_effect
                                + rng.normal(0, 0.05))
                    rows.append({
                        'Order': order_name.upper() if i == 0 else order_name,
                        'Family': family_name,
                        'Genus': genus,
                        'Species': species.lower() if i == 1 else species,
                        'Individual': f'{genus[:3]}-{species_counter}-{i}',
                        'Mass (g)': 10 ** obs_log_mass * 1000,
                        'fR (breaths/min)': 10 ** log_freq,
                        'Ta (°C)': temperature,
                        'Activity': ACTIVITY_SPELLINGS[activity][i % 3],
                        'Habitat': HABITAT_SPELLINGS[habitat][i % 3],
                        'Location': ['Lab', 'feild', 'Zoo'][i % 3],
                        'Common name': f'common {genus.lower()}',
                        'Sex': ['M', 'f', 'Female'][i % 3],
                        'Age': 'Adult',
                    })

    return pd.DataFrame(rows)


def make_supplement(raw: pd.DataFrame):
    species = sorted(raw['Species'].str.capitalize().unique())
    species_sheet = pd.DataFrame({
        'Species': species,
        'Common name': [f'supplement name {i}' for i in range(len(species))],
        'Habitat': ['terrestrial'] * len(species),
    })
    sources_sheet = pd.DataFrame({
        'Species': species,
        'Source': [f'Author {i} et al. (19{50 + i % 50})' for i in range(len(species))],
    })
    return species_sheet, sources_sheet


@pytest.fixture(scope="session")
def raw_measurements():
    """Raw measurements with a handful of unusable rows appended."""
    raw = make_raw_measurements()
    bad = raw.iloc[:4].copy()
    bad.loc[bad.index[0], 'Mass (g)'] = np.nan
    bad.loc[bad.index[1], 'fR (breaths/min)'] = 0.0
    bad.loc[bad.index[2], 'Habitat'] = 'n/a'
    bad.loc[bad.index[3], 'Ta (°C)'] = np.nan
    return pd.concat([raw, bad], ignore_index=True)


@pytest.fixture(scope="session")
def input_files(tmp_path_factory, raw_measurements):
    """CSV and two-sheet workbook on disk."""
    base = tmp_path_factory.mktemp("inputs")
    csv_path = base / 'breathing_rates.csv'
    raw_measurements.to_csv(csv_path, index=False)

    species_sheet, sources_sheet = make_supplement(raw_measurements)
    xlsx_path = base / 'species_supplement.xlsx'
    with pd.ExcelWriter(xlsx_path) as writer:
        species_sheet.to_excel(writer, sheet_name='Species', index=False)
        sources_sheet.to_excel(writer, sheet_name='Sources', index=False)

    return csv_path, xlsx_path


@pytest.fixture
def config(tmp_path):
    """Config writing into a per-test directory, small and fast."""
    return AnalysisConfig(output_root=tmp_path, n_simulations=100, figure_dpi=60)


@pytest.fixture(scope="session")
def session_config(tmp_path_factory):
    return AnalysisConfig(output_root=tmp_path_factory.mktemp("analysis"),
                          n_simulations=100, figure_dpi=60)


@pytest.fixture(scope="session")
def clean_data(input_files, session_config):
    csv_path, xlsx_path = input_files
    return prepare_dataset(csv_path, xlsx_path, session_config)


@pytest.fixture(scope="session")
def fitted_model(clean_data, session_config):
    return fit_mixed_model(clean_data, session_config)


@pytest.fixture(scope="session")
def saved_analysis(clean_data, session_config):
    """Full analysis run with results written under the session output root."""
    setup_directories(session_config)
    fitted, results, tables = run_analysis(clean_data, session_config)
    save_results(clean_data, fitted, results, tables, session_config)
    return fitted, results, tables
