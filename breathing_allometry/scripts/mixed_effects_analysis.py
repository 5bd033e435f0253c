#!/usr/bin/env python3
"""
Mixed Effects Models for Breathing Rate Allometry
Fits log breathing frequency against log body mass with nested taxonomic
random intercepts, then tests terms, compares habitat slopes and builds
prediction intervals.
"""

import itertools
import json
import logging
import pickle
import warnings
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from patsy import build_design_matrices, dmatrix
from scipy import stats
from statsmodels.formula.api import mixedlm
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from ..config import AnalysisConfig, setup_directories
from ..exceptions import DataValidationError, ModelFitError
from .data_preparation import summarize_dataset
from .residual_diagnostics import run_diagnostics

logger = logging.getLogger(__name__)


def fit_mixed_model(df: pd.DataFrame, config: AnalysisConfig,
                    formula: Optional[str] = None, reml: Optional[bool] = None):
    """Fit the allometric mixed model with nested taxonomic intercepts."""
    formula = formula or config.formula
    reml = config.reml if reml is None else reml
    vc_formula = config.vc_formula() or None

    logger.info(f"Fitting {formula} ({'REML' if reml else 'ML'}), "
                f"groups={config.group_column}, nested={config.vc_columns}")

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always', ConvergenceWarning)
        try:
            # with vc_formula set, the group intercept must be requested explicitly
            model = mixedlm(formula, df, groups=df[config.group_column],
                            re_formula='1', vc_formula=vc_formula)
            fitted = model.fit(reml=reml, method=['lbfgs'], maxiter=config.max_iterations)
        except Exception as e:
            raise ModelFitError(f"Mixed model failed to fit ({formula}): {e}") from e

    for w in caught:
        if issubclass(w.category, ConvergenceWarning):
            logger.warning(f"Convergence: {w.message}")

    if not fitted.converged:
        logger.warning("Optimizer did not report convergence; interpret with care")

    return fitted


def _optional_float(value) -> Optional[float]:
    value = float(value)
    return None if np.isnan(value) else value


def model_summary(fitted, formula: str) -> Dict:
    """Serializable summary of a fitted model."""
    conf_int = fitted.conf_int().loc[fitted.fe_params.index]
    return {
        'formula': formula,
        'method': 'REML' if fitted.method == 'REML' else 'ML',
        'converged': bool(fitted.converged),
        'n_observations': int(fitted.nobs),
        'n_groups': int(len(fitted.model.group_labels)),
        'log_likelihood': _optional_float(fitted.llf),
        'aic': _optional_float(fitted.aic),
        'bic': _optional_float(fitted.bic),
        'residual_var': float(fitted.scale),
        'fixed_effects': fitted.fe_params.to_dict(),
        'fixed_effects_se': fitted.bse.loc[fitted.fe_params.index].to_dict(),
        'fixed_effects_pvalues': fitted.pvalues.loc[fitted.fe_params.index].to_dict(),
        'fixed_effects_ci_lower': conf_int[0].to_dict(),
        'fixed_effects_ci_upper': conf_int[1].to_dict(),
        'summary': str(fitted.summary()),
    }


def fit_comparison_models(df: pd.DataFrame, config: AnalysisConfig) -> Tuple[Dict, Dict]:
    """Compare separate habitat slopes against a common slope by ML."""
    models = {}
    results = {}

    candidates = [
        ('separate_slopes', config.formula),
        ('common_slope', config.common_slope_formula),
    ]

    for name, formula in candidates:
        logger.info(f"  Comparison model: {name}")
        try:
            fitted = fit_mixed_model(df, config, formula=formula, reml=False)
            models[name] = fitted
            results[name] = {
                'formula': formula,
                'AIC': float(fitted.aic),
                'BIC': float(fitted.bic),
                'Log-Likelihood': float(fitted.llf),
                'n_fixed_effects': int(len(fitted.fe_params)),
                'converged': bool(fitted.converged),
            }
        except ModelFitError as e:
            logger.error(f"    Error fitting {name}: {e}")
            results[name] = {'error': str(e)}

    lrt = None
    if 'separate_slopes' in models and 'common_slope' in models:
        full, reduced = models['separate_slopes'], models['common_slope']
        statistic = max(2 * (full.llf - reduced.llf), 0.0)
        df_diff = len(full.fe_params) - len(reduced.fe_params)
        if df_diff > 0:
            lrt = {
                'statistic': float(statistic),
                'df': int(df_diff),
                'p_value': float(stats.chi2.sf(statistic, df_diff)),
            }

    return models, {'models': results, 'likelihood_ratio_test': lrt}


def variance_components(fitted, config: AnalysisConfig) -> Dict:
    """Variance of each random-effect level and the residual, with shares."""
    components = {config.group_column: float(np.asarray(fitted.cov_re)[0, 0])}

    if fitted.model.k_vc > 0:
        for name, value in zip(fitted.model.exog_vc.names, np.asarray(fitted.vcomp)):
            components[name] = float(value)

    components['residual'] = float(fitted.scale)

    total = sum(components.values())
    shares = {name: value / total * 100 for name, value in components.items()} if total > 0 else {}
    random_total = total - components['residual']

    return {
        'variances': components,
        'percent_of_total': shares,
        'total_variance': total,
        'icc_group': components[config.group_column] / total if total > 0 else None,
        'icc_taxonomic': random_total / total if total > 0 else None,
    }


def extract_random_effects(fitted) -> Dict[str, float]:
    """Group-level random intercepts (BLUPs)."""
    re_dict = {}
    for group, effects in fitted.random_effects.items():
        if hasattr(effects, 'iloc'):
            re_dict[str(group)] = float(effects.iloc[0]) if len(effects) > 0 else 0.0
        else:
            re_dict[str(group)] = float(effects)
    return re_dict


def _fixed_effects(fitted) -> Tuple[pd.Series, np.ndarray]:
    """Fixed-effect estimates and their covariance matrix."""
    beta = fitted.fe_params
    k_fe = len(beta)
    cov = np.asarray(fitted.cov_params())[:k_fe, :k_fe]
    return beta, cov


def _design_info(df: pd.DataFrame, fitted, formula: str):
    """Patsy design info for the fixed-effects part of the formula."""
    rhs = formula.split('~', 1)[1]
    design_info = dmatrix(rhs, df, return_type='dataframe').design_info
    if list(design_info.column_names) != list(fitted.fe_params.index):
        raise ModelFitError(
            "Design columns do not match fitted fixed effects: "
            f"{design_info.column_names} vs {list(fitted.fe_params.index)}")
    return design_info


def wald_anova(fitted, df: pd.DataFrame, config: AnalysisConfig,
               formula: Optional[str] = None) -> pd.DataFrame:
    """Type III Wald chi-square test for each fixed-effect term."""
    formula = formula or config.formula
    beta, cov = _fixed_effects(fitted)
    design_info = _design_info(df, fitted, formula)

    rows = []
    for term, columns in design_info.term_name_slices.items():
        if term == 'Intercept':
            continue
        b = beta.values[columns]
        v = cov[columns, columns]
        chi2 = float(b @ np.linalg.pinv(v) @ b)
        df_term = int(np.linalg.matrix_rank(v))
        rows.append({
            'term': term,
            'chi2': chi2,
            'df': df_term,
            'p_value': float(stats.chi2.sf(chi2, df_term)),
        })

    anova = pd.DataFrame(rows, columns=['term', 'chi2', 'df', 'p_value'])
    anova['significant'] = anova['p_value'] < config.alpha
    return anova


def _factor_levels(df: pd.DataFrame, config: AnalysisConfig) -> Dict[str, List]:
    factors = list(dict.fromkeys([config.contrast_factor] + list(config.categorical_covariates)))
    return {factor: sorted(df[factor].dropna().unique()) for factor in factors}


def _marginal_design(design_info, df: pd.DataFrame, config: AnalysisConfig,
                     level, slope_values) -> pd.DataFrame:
    """
    Design rows for one contrast level at each slope value, averaged with
    equal weight over the other categorical covariates. Numeric covariates
    are held at their sample mean.
    """
    levels = _factor_levels(df, config)
    levels[config.contrast_factor] = [level]
    combos = list(itertools.product(*levels.values()))
    slope_values = np.asarray(slope_values, dtype=float)

    grid = pd.DataFrame(combos * len(slope_values), columns=list(levels))
    grid[config.slope_variable] = np.repeat(slope_values, len(combos))
    for col in config.numeric_covariates:
        grid[col] = df[col].mean()

    X = build_design_matrices([design_info], grid, return_type='dataframe')[0]
    return X.groupby(grid[config.slope_variable].values).mean()


def _slope_vectors(fitted, df: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """Linear combination of fixed effects giving d(response)/d(slope) per level."""
    design_info = _design_info(df, fitted, config.formula)
    x0 = float(df[config.slope_variable].mean())
    vectors = {}
    for level in _factor_levels(df, config)[config.contrast_factor]:
        rows = _marginal_design(design_info, df, config, level, [x0, x0 + 1.0])
        vectors[level] = rows.iloc[1] - rows.iloc[0]
    return pd.DataFrame(vectors).T


def _z_critical(config: AnalysisConfig) -> float:
    return float(stats.norm.ppf(1 - (1 - config.confidence_level) / 2))


def estimate_slopes(fitted, df: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """Allometric exponent for each level of the contrast factor."""
    beta, cov = _fixed_effects(fitted)
    vectors = _slope_vectors(fitted, df, config)
    z_crit = _z_critical(config)
    counts = df[config.contrast_factor].value_counts()

    rows = []
    for level, vector in vectors.iterrows():
        L = vector.values
        estimate = float(L @ beta.values)
        se = float(np.sqrt(L @ cov @ L))
        z = estimate / se
        z_ref = (estimate - config.reference_exponent) / se
        rows.append({
            'level': level,
            'n': int(counts.get(level, 0)),
            'slope': estimate,
            'se': se,
            'z': z,
            'p_value': float(2 * stats.norm.sf(abs(z))),
            'ci_lower': estimate - z_crit * se,
            'ci_upper': estimate + z_crit * se,
            'reference_exponent': config.reference_exponent,
            'p_vs_reference': float(2 * stats.norm.sf(abs(z_ref))),
        })

    return pd.DataFrame(rows)


CONTRAST_COLUMNS = ['contrast', 'level_a', 'level_b', 'estimate', 'se', 'z',
                    'p_value', 'p_adjusted', 'ci_lower', 'ci_upper', 'significant']


def slope_contrasts(fitted, df: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """Pairwise differences between level slopes with multiplicity correction."""
    beta, cov = _fixed_effects(fitted)
    vectors = _slope_vectors(fitted, df, config)
    z_crit = _z_critical(config)

    rows = []
    for level_a, level_b in itertools.combinations(vectors.index, 2):
        L = (vectors.loc[level_a] - vectors.loc[level_b]).values
        estimate = float(L @ beta.values)
        se = float(np.sqrt(L @ cov @ L))
        z = estimate / se
        rows.append({
            'contrast': f'{level_a} - {level_b}',
            'level_a': level_a,
            'level_b': level_b,
            'estimate': estimate,
            'se': se,
            'z': z,
            'p_value': float(2 * stats.norm.sf(abs(z))),
            'ci_lower': estimate - z_crit * se,
            'ci_upper': estimate + z_crit * se,
        })

    if not rows:
        logger.warning(f"Fewer than two levels of {config.contrast_factor}; no slope contrasts")
        return pd.DataFrame(columns=CONTRAST_COLUMNS)

    contrasts = pd.DataFrame(rows)
    reject, p_adjusted, _, _ = multipletests(contrasts['p_value'], alpha=config.alpha,
                                             method=config.correction_method)
    contrasts['p_adjusted'] = p_adjusted
    contrasts['significant'] = reject
    return contrasts[CONTRAST_COLUMNS]


def prediction_grid(fitted, df: pd.DataFrame, config: AnalysisConfig,
                    n_points: int = 100) -> pd.DataFrame:
    """
    Population-level predictions per contrast level over its observed mass range.

    The confidence interval reflects fixed-effect uncertainty only; the
    prediction interval adds residual and all random-effect variance, i.e.
    a new observation from a new species in a new order.
    """
    beta, cov = _fixed_effects(fitted)
    design_info = _design_info(df, fitted, config.formula)
    z_crit = _z_critical(config)
    extra_var = variance_components(fitted, config)['total_variance']

    frames = []
    for level in _factor_levels(df, config)[config.contrast_factor]:
        observed = df.loc[df[config.contrast_factor] == level, config.slope_variable]
        if observed.empty:
            continue
        x = np.linspace(observed.min(), observed.max(), n_points)
        X = _marginal_design(design_info, df, config, level, x)

        mean = X.values @ beta.values
        se_fit = np.sqrt(np.einsum('ij,jk,ik->i', X.values, cov, X.values))
        se_pred = np.sqrt(se_fit ** 2 + extra_var)

        frames.append(pd.DataFrame({
            config.contrast_factor: level,
            config.slope_variable: X.index.values,
            'predicted': mean,
            'se_fit': se_fit,
            'ci_lower': mean - z_crit * se_fit,
            'ci_upper': mean + z_crit * se_fit,
            'pi_lower': mean - z_crit * se_pred,
            'pi_upper': mean + z_crit * se_pred,
        }))

    predictions = pd.concat(frames, ignore_index=True)

    # Back-transform from log10 scale
    predictions['body_mass_kg'] = 10 ** predictions[config.slope_variable]
    for col in ['predicted', 'ci_lower', 'ci_upper', 'pi_lower', 'pi_upper']:
        predictions[f'{col}_frequency'] = 10 ** predictions[col]

    return predictions


def _records(frame: pd.DataFrame) -> List[Dict]:
    return json.loads(frame.to_json(orient='records'))


def save_results(df: pd.DataFrame, fitted, results: Dict, tables: Dict[str, pd.DataFrame],
                 config: AnalysisConfig):
    """Save all analysis results."""
    out = config.processed_dir

    # Save processed dataframe with model output
    model_df = df.copy()
    model_df['fitted'] = np.asarray(fitted.fittedvalues)
    model_df['residual'] = np.asarray(fitted.resid)
    model_df.to_csv(out / 'mixed_effects_data.csv', index=False)

    for name, table in tables.items():
        table.to_csv(out / f'{name}.csv', index=False)

    full_results = dict(results)
    full_results['tables'] = {name: _records(table) for name, table in tables.items()
                              if name != 'scaled_residuals'}

    with open(out / 'mixed_effects_results.json', 'w') as f:
        json.dump(full_results, f, indent=2, default=str)

    try:
        with open(out / 'mixed_effects_models.pkl', 'wb') as f:
            pickle.dump({'primary': fitted}, f)
    except (pickle.PicklingError, TypeError, AttributeError, NotImplementedError) as e:
        logger.warning(f"Could not pickle fitted model: {e}")

    logger.info(f"Results saved to {out}/")


def print_summary(results: Dict, tables: Dict[str, pd.DataFrame]):
    model = results['model']
    print(f"\nMixed Effects Analysis Summary:")
    print(f"Observations: {model['n_observations']}  Groups: {model['n_groups']}")
    print(f"Converged: {model['converged']}")

    icc = results['variance_components']['icc_taxonomic']
    if icc is not None:
        print(f"Variance explained by taxonomy: {icc:.1%}")

    print("\nAllometric exponents:")
    for _, row in tables['slope_estimates'].iterrows():
        print(f"  {row['level']}: {row['slope']:.3f} "
              f"[{row['ci_lower']:.3f}, {row['ci_upper']:.3f}] (n={row['n']})")

    significant = tables['slope_contrasts']
    significant = significant[significant['significant'].astype(bool)]
    print(f"\nSignificant slope contrasts: {len(significant)}/{len(tables['slope_contrasts'])}")
    for _, row in significant.iterrows():
        print(f"  {row['contrast']}: {row['estimate']:.3f} (p_adj={row['p_adjusted']:.4f})")

    lrt = results['model_comparison'].get('likelihood_ratio_test')
    if lrt:
        print(f"\nLRT separate vs common slope: chi2={lrt['statistic']:.2f}, "
              f"df={lrt['df']}, p={lrt['p_value']:.4g}")


def run_analysis(df: pd.DataFrame, config: AnalysisConfig) -> Tuple[object, Dict, Dict[str, pd.DataFrame]]:
    """Fit the model and compute every post-hoc table."""
    print("Fitting mixed effects models...")
    fitted = fit_mixed_model(df, config)
    comparison_models, comparison = fit_comparison_models(df, config)

    print("Testing fixed effects and slopes...")
    anova = wald_anova(fitted, df, config)
    slopes = estimate_slopes(fitted, df, config)
    contrasts = slope_contrasts(fitted, df, config)
    predictions = prediction_grid(fitted, df, config)

    print("Simulating residual diagnostics...")
    diagnostics = run_diagnostics(fitted, df, config)

    results = {
        'model': model_summary(fitted, config.formula),
        'model_comparison': comparison,
        'variance_components': variance_components(fitted, config),
        'random_effects': extract_random_effects(fitted),
        'diagnostics': diagnostics['tests'],
        'data_summary': summarize_dataset(df, config),
        'settings': {
            'contrast_factor': config.contrast_factor,
            'slope_variable': config.slope_variable,
            'correction_method': config.correction_method,
            'confidence_level': config.confidence_level,
            'n_simulations': config.n_simulations,
            'seed': config.seed,
        },
    }
    tables = {
        'anova': anova,
        'slope_estimates': slopes,
        'slope_contrasts': contrasts,
        'predictions': predictions,
        'scaled_residuals': diagnostics['residuals'],
    }
    return fitted, results, tables


def main(config: Optional[AnalysisConfig] = None):
    """Main execution function."""
    config = config or AnalysisConfig.from_env()
    print("Starting Mixed Effects Analysis...")

    setup_directories(config)

    if not Path(config.cleaned_path).exists():
        raise DataValidationError(
            f"{config.cleaned_path} not found; run data preparation first")
    df = pd.read_csv(config.cleaned_path)

    fitted, results, tables = run_analysis(df, config)
    save_results(df, fitted, results, tables, config)
    print_summary(results, tables)

    print("Mixed effects analysis complete!")
    return fitted, results, tables


if __name__ == "__main__":
    main()
