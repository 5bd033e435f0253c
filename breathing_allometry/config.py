"""
Analysis configuration.

Paths, model specification and reporting options for the breathing-rate
allometry pipeline. Defaults reproduce the published analysis; URLs and
the output root can be overridden from the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple


# Canonical column name for each alias seen in source spreadsheets.
# Keys are already passed through standardize_column_name.
COLUMN_ALIASES = {
    'mass': 'body_mass_kg',
    'mass_kg': 'body_mass_kg',
    'body_mass': 'body_mass_kg',
    'bodymass_kg': 'body_mass_kg',
    'mass_g': 'body_mass_g',
    'body_mass_g': 'body_mass_g',
    'fr': 'breathing_frequency',
    'f_r': 'breathing_frequency',
    'fr_breathsmin': 'breathing_frequency',
    'breathing_rate': 'breathing_frequency',
    'breaths_per_min': 'breathing_frequency',
    'breaths_min': 'breathing_frequency',
    'respiratory_rate': 'breathing_frequency',
    'respiratory_frequency': 'breathing_frequency',
    'ta': 'temperature_c',
    'ta_c': 'temperature_c',
    'temperature': 'temperature_c',
    'ambient_temperature': 'temperature_c',
    'ambient_temperature_c': 'temperature_c',
    'individual': 'subject_id',
    'individual_id': 'subject_id',
    'subject': 'subject_id',
    'id': 'subject_id',
    'animal_id': 'subject_id',
    'activity_level': 'activity',
    'state': 'activity',
    'habitat_category': 'habitat',
    'measurement_location': 'location',
    'setting': 'location',
    'common': 'common_name',
    'vernacular_name': 'common_name',
    'gender': 'sex',
    'age_class': 'age',
    'source': 'reference',
    'citation': 'reference',
    'binomial': 'species',
    'scientific_name': 'species',
}

# Applied to lower-cased, stripped values before re-capitalisation.
SPELLING_CORRECTIONS = {
    'activity': {
        'resting': 'rest',
        'at rest': 'rest',
        'sleeping': 'sleep',
        'asleep': 'sleep',
        'activ': 'active',
        'exercise': 'active',
        'exercising': 'active',
    },
    'habitat': {
        'terestrial': 'terrestrial',
        'terrestial': 'terrestrial',
        'aquatc': 'aquatic',
        'marine': 'aquatic',
        'semi aquatic': 'semi-aquatic',
        'semiaquatic': 'semi-aquatic',
        'semi-aquatc': 'semi-aquatic',
        'aboreal': 'arboreal',
    },
    'location': {
        'lab': 'laboratory',
        'labratory': 'laboratory',
        'laboratoy': 'laboratory',
        'feild': 'field',
        'in the wild': 'field',
        'zoological park': 'zoo',
    },
    'sex': {
        'm': 'male',
        'f': 'female',
        'males': 'male',
        'females': 'female',
        'u': 'unknown',
    },
    'order': {
        'chiropteran': 'chiroptera',
    },
}

TAXONOMY_COLUMNS = ['order', 'family', 'genus']
CATEGORY_COLUMNS = ['activity', 'habitat', 'location', 'sex', 'age']

SUPPLEMENT_SHEETS = ('Species', 'Sources')

# Methods accepted by statsmodels.stats.multitest.multipletests
CORRECTION_METHODS = ('bonferroni', 'sidak', 'holm-sidak', 'holm', 'simes-hochberg',
                      'hommel', 'fdr_bh', 'fdr_by', 'fdr_tsbh', 'fdr_tsbky')


@dataclass
class AnalysisConfig:
    """Settings shared by every pipeline stage."""

    data_url: Optional[str] = None
    supplement_url: Optional[str] = None
    output_root: Path = Path('.')

    data_filename: str = 'breathing_rates.csv'
    supplement_filename: str = 'species_supplement.xlsx'
    cleaned_filename: str = 'cleaned_breathing_data.csv'

    # Model specification
    formula: str = 'log_frequency ~ log_mass * C(habitat) + C(activity) + temperature_c'
    common_slope_formula: str = 'log_frequency ~ log_mass + C(habitat) + C(activity) + temperature_c'
    response: str = 'log_frequency'
    slope_variable: str = 'log_mass'
    contrast_factor: str = 'habitat'
    categorical_covariates: List[str] = field(default_factory=lambda: ['habitat', 'activity'])
    numeric_covariates: List[str] = field(default_factory=lambda: ['temperature_c'])
    group_column: str = 'order'
    vc_columns: List[str] = field(default_factory=lambda: ['family', 'species'])
    reml: bool = True
    max_iterations: int = 500

    # Diagnostics and post-hoc
    n_simulations: int = 250
    seed: int = 42
    correction_method: str = 'holm'
    confidence_level: float = 0.95
    alpha: float = 0.05
    reference_exponent: float = -0.25

    # Output
    figure_formats: Tuple[str, ...] = ('png', 'pdf', 'svg')
    figure_dpi: int = 300

    @classmethod
    def from_env(cls, **overrides) -> 'AnalysisConfig':
        """Build a config, taking URLs and output root from the environment."""
        env = {}
        if os.environ.get('BREATHING_DATA_URL'):
            env['data_url'] = os.environ['BREATHING_DATA_URL']
        if os.environ.get('BREATHING_SUPPLEMENT_URL'):
            env['supplement_url'] = os.environ['BREATHING_SUPPLEMENT_URL']
        if os.environ.get('BREATHING_OUTPUT_DIR'):
            env['output_root'] = Path(os.environ['BREATHING_OUTPUT_DIR'])
        env.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**env)

    @property
    def raw_dir(self) -> Path:
        return Path(self.output_root) / 'data' / 'raw'

    @property
    def processed_dir(self) -> Path:
        return Path(self.output_root) / 'data' / 'processed'

    @property
    def figures_dir(self) -> Path:
        return Path(self.output_root) / 'figures' / 'mixed_effects'

    @property
    def reports_dir(self) -> Path:
        return Path(self.output_root) / 'reports'

    @property
    def data_path(self) -> Path:
        return self.raw_dir / self.data_filename

    @property
    def supplement_path(self) -> Path:
        return self.raw_dir / self.supplement_filename

    @property
    def cleaned_path(self) -> Path:
        return self.processed_dir / self.cleaned_filename

    @property
    def model_columns(self) -> List[str]:
        """Columns that must be complete before fitting."""
        columns = [self.response, self.slope_variable]
        columns += self.categorical_covariates + self.numeric_covariates
        columns += [self.group_column] + self.vc_columns
        # preserve order, drop duplicates
        return list(dict.fromkeys(columns))

    def vc_formula(self) -> Dict[str, str]:
        return {name: f'0 + C({name})' for name in self.vc_columns}


def setup_directories(config: AnalysisConfig):
    """Create necessary directories if they don't exist."""
    dirs = [config.raw_dir, config.processed_dir, config.figures_dir, config.reports_dir]
    for dir_path in dirs:
        Path(dir_path).mkdir(parents=True, exist_ok=True)
