#!/usr/bin/env python3
"""
Simulation-based residual diagnostics for the allometric mixed model.

New responses are simulated from the fitted model, drawing fresh random
intercepts at every taxonomic level. Each observation's position among its
simulations gives a scaled residual that is U(0, 1) when the model is
correctly specified, whatever the random-effect structure.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.diagnostic import het_breuschpagan

from ..config import AnalysisConfig

logger = logging.getLogger(__name__)


def _level_codes(df: pd.DataFrame, group_column: str, column: Optional[str] = None) -> np.ndarray:
    keys = df[group_column].astype(str)
    if column is not None:
        # nested levels are only unique within their group
        keys = keys + '|' + df[column].astype(str)
    codes, _ = pd.factorize(keys)
    return codes


def simulate_responses(fitted, df: pd.DataFrame, config: AnalysisConfig,
                       n_sim: Optional[int] = None, rng=None) -> np.ndarray:
    """Unconditional parametric simulations, shape (n_sim, n_obs)."""
    n_sim = n_sim or config.n_simulations
    rng = rng if rng is not None else np.random.default_rng(config.seed)

    mu = np.asarray(fitted.model.exog) @ np.asarray(fitted.fe_params)
    simulated = np.tile(mu, (n_sim, 1))

    components = [(None, float(np.asarray(fitted.cov_re)[0, 0]))]
    if fitted.model.k_vc > 0:
        components += list(zip(fitted.model.exog_vc.names, np.asarray(fitted.vcomp, dtype=float)))

    for column, variance in components:
        codes = _level_codes(df, config.group_column, column)
        draws = rng.normal(0.0, np.sqrt(max(variance, 0.0)), size=(n_sim, codes.max() + 1))
        simulated += draws[:, codes]

    simulated += rng.normal(0.0, np.sqrt(fitted.scale), size=simulated.shape)
    return simulated


def scaled_residuals(observed, simulated: np.ndarray, rng=None) -> np.ndarray:
    """Randomized PIT residuals: position of each observation among its simulations."""
    rng = rng if rng is not None else np.random.default_rng()
    observed = np.asarray(observed, dtype=float)
    n_sim = simulated.shape[0]

    below = (simulated < observed).sum(axis=0)
    ties = (simulated == observed).sum(axis=0)
    return (below + rng.uniform(size=observed.shape) * (ties + 1)) / (n_sim + 1)


def uniformity_test(residuals) -> Dict:
    """Kolmogorov-Smirnov test of scaled residuals against U(0, 1)."""
    result = stats.kstest(np.asarray(residuals), 'uniform')
    return {'statistic': float(result.statistic), 'p_value': float(result.pvalue)}


def dispersion_test(observed, simulated: np.ndarray) -> Dict:
    """
    Compare the spread of observed residuals around the simulated mean with
    the spread of the simulations themselves. Ratio > 1 is overdispersion.
    """
    observed = np.asarray(observed, dtype=float)
    sim_mean = simulated.mean(axis=0)
    observed_stat = np.var(observed - sim_mean)
    simulated_stats = np.var(simulated - sim_mean, axis=1)

    p_greater = np.mean(simulated_stats >= observed_stat)
    p_less = np.mean(simulated_stats <= observed_stat)
    return {
        'ratio': float(observed_stat / simulated_stats.mean()),
        'p_value': float(min(1.0, 2 * min(p_greater, p_less))),
    }


def outlier_test(observed, simulated: np.ndarray) -> Dict:
    """Binomial test for observations outside the whole simulation envelope."""
    observed = np.asarray(observed, dtype=float)
    n_sim = simulated.shape[0]
    outside = (observed < simulated.min(axis=0)) | (observed > simulated.max(axis=0))

    expected_rate = 2.0 / (n_sim + 1)
    n_outliers = int(outside.sum())
    result = stats.binomtest(n_outliers, len(observed), expected_rate)
    return {
        'n_outliers': n_outliers,
        'observed_rate': n_outliers / len(observed),
        'expected_rate': expected_rate,
        'p_value': float(result.pvalue),
        'outlier_mask': outside,
    }


def homogeneity_test(residuals, groups) -> Dict:
    """Levene test for equal scaled-residual spread across groups."""
    frame = pd.DataFrame({'residual': np.asarray(residuals), 'group': np.asarray(groups)})
    samples = [g['residual'].values for _, g in frame.groupby('group') if len(g) >= 2]
    if len(samples) < 2:
        return {'statistic': None, 'p_value': None, 'skipped': 'fewer than two groups'}

    result = stats.levene(*samples)
    return {'statistic': float(result.statistic), 'p_value': float(result.pvalue)}


def conditional_residual_tests(fitted) -> Dict:
    """Normality and heteroscedasticity of the conditional residuals."""
    resid = np.asarray(fitted.resid)
    tests = {}

    if 3 <= len(resid) <= 5000:
        statistic, p_value = stats.shapiro(resid)
        tests['normality'] = {'statistic': float(statistic), 'p_value': float(p_value)}
    else:
        tests['normality'] = {'statistic': None, 'p_value': None,
                              'skipped': f'Shapiro-Wilk needs 3-5000 residuals, got {len(resid)}'}

    lm, lm_pvalue, fvalue, f_pvalue = het_breuschpagan(resid, np.asarray(fitted.model.exog))
    tests['heteroscedasticity'] = {'statistic': float(lm), 'p_value': float(lm_pvalue),
                                   'f_statistic': float(fvalue), 'f_p_value': float(f_pvalue)}
    return tests


def run_diagnostics(fitted, df: pd.DataFrame, config: AnalysisConfig) -> Dict:
    """Simulate, compute scaled residuals and run every residual test."""
    rng = np.random.default_rng(config.seed)
    observed = np.asarray(fitted.model.endog, dtype=float)

    simulated = simulate_responses(fitted, df, config, rng=rng)
    residuals = scaled_residuals(observed, simulated, rng=rng)

    outliers = outlier_test(observed, simulated)
    outlier_mask = outliers.pop('outlier_mask')

    tests = {
        'uniformity': uniformity_test(residuals),
        'dispersion': dispersion_test(observed, simulated),
        'outliers': outliers,
        'homogeneity': homogeneity_test(residuals, df[config.contrast_factor]),
    }
    tests.update(conditional_residual_tests(fitted))

    for name, test in tests.items():
        p_value = test.get('p_value')
        test['passed'] = None if p_value is None else bool(p_value >= config.alpha)
        if test['passed'] is False:
            logger.warning(f"Residual check '{name}' flagged a problem (p={p_value:.4g})")

    residual_table = pd.DataFrame({
        'observed': observed,
        'simulated_mean': simulated.mean(axis=0),
        'fitted': np.asarray(fitted.fittedvalues),
        'conditional_residual': np.asarray(fitted.resid),
        'scaled_residual': residuals,
        'outlier': outlier_mask,
        config.contrast_factor: df[config.contrast_factor].values,
        config.group_column: df[config.group_column].values,
    })
    if 'species' in df.columns:
        residual_table['species'] = df['species'].values

    return {
        'residuals': residual_table,
        'tests': tests,
        'n_simulations': int(simulated.shape[0]),
    }
