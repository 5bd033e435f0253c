import json
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from breathing_allometry.exceptions import DataValidationError, ModelFitError
from breathing_allometry.scripts import mixed_effects_analysis
from breathing_allometry.scripts.mixed_effects_analysis import (
    CONTRAST_COLUMNS,
    estimate_slopes,
    extract_random_effects,
    fit_mixed_model,
    model_summary,
    prediction_grid,
    slope_contrasts,
    variance_components,
    wald_anova,
)

from .conftest import TRUE_SLOPES


def test_fit_mixed_model(fitted_model, clean_data, session_config):
    assert fitted_model.nobs == len(clean_data)
    assert len(fitted_model.model.group_labels) == clean_data['order'].nunique()
    assert sorted(fitted_model.model.exog_vc.names) == ['family', 'species']
    # order-level random intercept alongside the nested components
    assert fitted_model.model.k_re == 1
    assert np.asarray(fitted_model.cov_re).shape == (1, 1)


def test_fit_mixed_model_bad_formula(clean_data, session_config):
    with pytest.raises(ModelFitError):
        fit_mixed_model(clean_data, session_config, formula='log_frequency ~ not_a_column')


def test_model_summary(fitted_model, session_config):
    summary = model_summary(fitted_model, session_config.formula)

    assert summary['method'] == 'REML'
    assert summary['n_groups'] == 6
    assert set(summary['fixed_effects']) == set(summary['fixed_effects_se'])
    for term, estimate in summary['fixed_effects'].items():
        assert summary['fixed_effects_ci_lower'][term] <= estimate <= summary['fixed_effects_ci_upper'][term]
    # serializable as written by save_results
    json.dumps(summary)


def test_wald_anova_has_one_row_per_term(fitted_model, clean_data, session_config):
    anova = wald_anova(fitted_model, clean_data, session_config)

    assert set(anova['term']) == {'log_mass', 'C(habitat)', 'log_mass:C(habitat)',
                                  'C(activity)', 'temperature_c'}
    degrees = dict(zip(anova['term'], anova['df']))
    assert degrees['C(habitat)'] == 2
    assert degrees['log_mass:C(habitat)'] == 2
    assert degrees['C(activity)'] == 1
    assert (anova['chi2'] >= 0).all()
    assert anova['p_value'].between(0, 1).all()

    activity = anova.set_index('term').loc['C(activity)']
    assert activity['p_value'] < 0.001
    assert bool(activity['significant'])


def test_estimate_slopes_recovers_exponents(fitted_model, clean_data, session_config):
    slopes = estimate_slopes(fitted_model, clean_data, session_config).set_index('level')

    assert set(slopes.index) == set(TRUE_SLOPES)
    for level, true_slope in TRUE_SLOPES.items():
        assert slopes.loc[level, 'slope'] == pytest.approx(true_slope, abs=0.1)
        assert slopes.loc[level, 'ci_lower'] < slopes.loc[level, 'slope'] < slopes.loc[level, 'ci_upper']
    assert slopes['n'].sum() == len(clean_data)
    assert (slopes['reference_exponent'] == session_config.reference_exponent).all()


def test_reference_level_slope_matches_main_effect(fitted_model, clean_data, session_config):
    slopes = estimate_slopes(fitted_model, clean_data, session_config).set_index('level')
    # Aquatic is the treatment-coding baseline
    assert slopes.loc['Aquatic', 'slope'] == pytest.approx(fitted_model.fe_params['log_mass'])
    assert slopes.loc['Aquatic', 'se'] == pytest.approx(fitted_model.bse['log_mass'], rel=1e-6)


def test_slope_contrasts(fitted_model, clean_data, session_config):
    contrasts = slope_contrasts(fitted_model, clean_data, session_config)
    slopes = estimate_slopes(fitted_model, clean_data, session_config).set_index('level')

    # k levels give k(k-1)/2 pairs
    assert len(contrasts) == 3
    assert list(contrasts.columns) == CONTRAST_COLUMNS
    assert (contrasts['p_adjusted'] >= contrasts['p_value'] - 1e-12).all()
    assert contrasts['p_adjusted'].between(0, 1).all()

    for _, row in contrasts.iterrows():
        expected = slopes.loc[row['level_a'], 'slope'] - slopes.loc[row['level_b'], 'slope']
        assert row['estimate'] == pytest.approx(expected)

    aquatic = contrasts.set_index('contrast').loc['Aquatic - Terrestrial']
    assert aquatic['estimate'] == pytest.approx(-0.10, abs=0.08)


def test_slope_contrasts_bonferroni(fitted_model, clean_data, session_config):
    config = replace(session_config, correction_method='bonferroni')
    contrasts = slope_contrasts(fitted_model, clean_data, config)

    expected = np.minimum(contrasts['p_value'] * len(contrasts), 1.0)
    np.testing.assert_allclose(contrasts['p_adjusted'], expected)


def test_prediction_grid(fitted_model, clean_data, session_config):
    predictions = prediction_grid(fitted_model, clean_data, session_config, n_points=25)

    assert len(predictions) == 3 * 25
    assert (predictions['pi_lower'] <= predictions['ci_lower']).all()
    assert (predictions['ci_lower'] <= predictions['predicted']).all()
    assert (predictions['predicted'] <= predictions['ci_upper']).all()
    assert (predictions['ci_upper'] <= predictions['pi_upper']).all()
    np.testing.assert_allclose(predictions['body_mass_kg'], 10 ** predictions['log_mass'])
    np.testing.assert_allclose(predictions['predicted_frequency'], 10 ** predictions['predicted'])

    # each level covers only its own observed mass range
    for level, group in predictions.groupby('habitat'):
        observed = clean_data.loc[clean_data['habitat'] == level, 'log_mass']
        assert group['log_mass'].min() == pytest.approx(observed.min())
        assert group['log_mass'].max() == pytest.approx(observed.max())


def test_prediction_line_follows_slope(fitted_model, clean_data, session_config):
    predictions = prediction_grid(fitted_model, clean_data, session_config, n_points=10)
    slopes = estimate_slopes(fitted_model, clean_data, session_config).set_index('level')

    for level, group in predictions.groupby('habitat'):
        fitted_slope = np.polyfit(group['log_mass'], group['predicted'], 1)[0]
        assert fitted_slope == pytest.approx(slopes.loc[level, 'slope'])


def test_variance_components(fitted_model, session_config):
    components = variance_components(fitted_model, session_config)

    assert set(components['variances']) == {'order', 'family', 'species', 'residual'}
    assert all(v >= 0 for v in components['variances'].values())
    assert sum(components['percent_of_total'].values()) == pytest.approx(100.0)
    assert 0 <= components['icc_group'] <= components['icc_taxonomic'] <= 1


def test_extract_random_effects(fitted_model, clean_data):
    effects = extract_random_effects(fitted_model)
    assert set(effects) == set(clean_data['order'].astype(str))


def test_run_analysis_outputs(saved_analysis, session_config):
    _, results, tables = saved_analysis

    assert set(results) >= {'model', 'model_comparison', 'variance_components',
                            'random_effects', 'diagnostics', 'data_summary', 'settings'}
    assert set(tables) == {'anova', 'slope_estimates', 'slope_contrasts',
                           'predictions', 'scaled_residuals'}

    comparison = results['model_comparison']
    assert set(comparison['models']) == {'separate_slopes', 'common_slope'}
    lrt = comparison['likelihood_ratio_test']
    assert lrt['df'] == 2
    assert 0 <= lrt['p_value'] <= 1


def test_save_results_writes_files(saved_analysis, session_config):
    processed = session_config.processed_dir
    for name in ['mixed_effects_data.csv', 'mixed_effects_results.json', 'anova.csv',
                 'slope_estimates.csv', 'slope_contrasts.csv', 'predictions.csv',
                 'scaled_residuals.csv']:
        assert (processed / name).exists()

    with open(processed / 'mixed_effects_results.json') as f:
        saved = json.load(f)
    assert 'scaled_residuals' not in saved['tables']
    assert len(saved['tables']['slope_contrasts']) == 3

    data = pd.read_csv(processed / 'mixed_effects_data.csv')
    np.testing.assert_allclose(data['fitted'] + data['residual'], data['log_frequency'])


def test_main_requires_cleaned_data(config):
    with pytest.raises(DataValidationError, match="run data preparation first"):
        mixed_effects_analysis.main(config)
