#!/usr/bin/env python3
"""
Mixed Effects Models Visualization
Creates static figures for the breathing-rate allometry analysis, each saved
as raster (PNG) and vector (PDF, SVG) files.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.patches import Patch
from scipy import stats

from ..config import AnalysisConfig, setup_directories
from ..exceptions import DataValidationError

logger = logging.getLogger(__name__)

# Set style
plt.style.use('seaborn-v0_8-whitegrid')
sns.set_palette("husl")


def save_figure(fig, output_dir: Path, name: str, config: AnalysisConfig) -> Dict[str, Path]:
    """Save a figure in every configured format and close it."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = {}
    for fmt in config.figure_formats:
        path = output_dir / f'{name}.{fmt}'
        fig.savefig(path, dpi=config.figure_dpi, bbox_inches='tight')
        paths[fmt] = path
    plt.close(fig)
    return paths


def load_results(config: AnalysisConfig):
    """Load mixed effects analysis results and tables."""
    processed = config.processed_dir
    results_path = processed / 'mixed_effects_results.json'
    if not results_path.exists():
        raise DataValidationError(f"{results_path} not found; run the analysis first")

    df = pd.read_csv(processed / 'mixed_effects_data.csv')

    with open(results_path, 'r') as f:
        results = json.load(f)

    tables = {}
    for name in ['anova', 'slope_estimates', 'slope_contrasts', 'predictions', 'scaled_residuals']:
        path = processed / f'{name}.csv'
        tables[name] = pd.read_csv(path) if path.exists() else pd.DataFrame()

    return df, results, tables


def _level_palette(levels) -> Dict:
    colors = sns.color_palette("husl", len(levels))
    return dict(zip(levels, colors))


def plot_allometry(df, predictions, config: AnalysisConfig, output_dir) -> Dict[str, Path]:
    """Log-log breathing frequency vs body mass with fitted lines per level."""
    factor = config.contrast_factor
    levels = sorted(df[factor].dropna().unique())
    palette = _level_palette(levels)

    fig, ax = plt.subplots(figsize=(11, 8))

    for level in levels:
        subset = df[df[factor] == level]
        ax.scatter(subset['log_mass'], subset['log_frequency'], s=25, alpha=0.5,
                   color=palette[level], label=f'{level} (n={len(subset)})')

        pred = predictions[predictions[factor] == level] if len(predictions) else pd.DataFrame()
        if len(pred):
            ax.plot(pred[config.slope_variable], pred['predicted'],
                    color=palette[level], linewidth=2.5)
            ax.fill_between(pred[config.slope_variable], pred['ci_lower'], pred['ci_upper'],
                            color=palette[level], alpha=0.2)

    ax.set_xlabel('log$_{10}$ Body Mass (kg)')
    ax.set_ylabel('log$_{10}$ Breathing Frequency (breaths/min)')
    ax.set_title(f'Breathing Frequency Allometry by {factor.title()}', fontweight='bold')
    ax.legend(title=factor.title(), loc='upper right')
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    return save_figure(fig, output_dir, 'allometry_scatter', config)


def plot_prediction_intervals(df, predictions, config: AnalysisConfig, output_dir) -> Dict[str, Path]:
    """Back-transformed predictions with confidence and prediction bands."""
    factor = config.contrast_factor
    levels = sorted(predictions[factor].unique()) if len(predictions) else []
    palette = _level_palette(levels)

    n_cols = min(3, max(len(levels), 1))
    n_rows = int(np.ceil(max(len(levels), 1) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(6 * n_cols, 5 * n_rows),
                             squeeze=False, sharex=True, sharey=True)
    axes = axes.ravel()

    for ax, level in zip(axes, levels):
        pred = predictions[predictions[factor] == level]
        observed = df[df[factor] == level]

        ax.fill_between(pred['body_mass_kg'], pred['pi_lower_frequency'], pred['pi_upper_frequency'],
                        color=palette[level], alpha=0.15, label='Prediction interval')
        ax.fill_between(pred['body_mass_kg'], pred['ci_lower_frequency'], pred['ci_upper_frequency'],
                        color=palette[level], alpha=0.35, label='Confidence interval')
        ax.plot(pred['body_mass_kg'], pred['predicted_frequency'], color=palette[level], linewidth=2)
        ax.scatter(observed['body_mass_kg'], observed['breathing_frequency'],
                   s=15, alpha=0.6, color='black')

        ax.set_xscale('log')
        ax.set_yscale('log')
        ax.set_title(f'{level} (n={len(observed)})', fontweight='bold')
        ax.set_xlabel('Body Mass (kg)')
        ax.set_ylabel('Breathing Frequency (breaths/min)')
        ax.grid(True, which='both', alpha=0.3)

    for ax in axes[len(levels):]:
        ax.axis('off')

    if levels:
        axes[0].legend(loc='upper right', fontsize=9)

    plt.suptitle('Predicted Breathing Frequency', fontsize=16, fontweight='bold')
    plt.tight_layout()
    return save_figure(fig, output_dir, 'prediction_intervals', config)


def plot_residual_diagnostics(residuals, results, config: AnalysisConfig, output_dir) -> Dict[str, Path]:
    """Scaled (simulation-based) residual checks."""
    fig, ((ax1, ax2), (ax3, ax4)) = plt.subplots(2, 2, figsize=(15, 12))
    tests = results.get('diagnostics', {})
    scaled = np.sort(residuals['scaled_residual'].values)

    # Plot 1: QQ against uniform
    expected = (np.arange(1, len(scaled) + 1) - 0.5) / len(scaled)
    ax1.scatter(expected, scaled, s=12, alpha=0.6)
    ax1.plot([0, 1], [0, 1], 'r--', linewidth=2)
    ax1.set_xlabel('Expected (uniform)')
    ax1.set_ylabel('Observed scaled residual')
    ax1.set_title('Uniform QQ Plot', fontweight='bold')
    ax1.grid(True, alpha=0.3)

    test_lines = []
    for name in ['uniformity', 'dispersion', 'outliers']:
        test = tests.get(name, {})
        if test.get('p_value') is not None:
            test_lines.append(f"{name.title()}: p = {test['p_value']:.3f}")
    if test_lines:
        ax1.text(0.05, 0.95, '\n'.join(test_lines), transform=ax1.transAxes,
                 verticalalignment='top', bbox=dict(boxstyle='round', facecolor='white'))

    # Plot 2: residuals vs rank-transformed prediction
    ranked = residuals.assign(prediction_rank=residuals['simulated_mean'].rank(pct=True))
    ranked = ranked.sort_values('prediction_rank')
    colors = np.where(ranked['outlier'].astype(bool), 'red', 'steelblue')
    ax2.scatter(ranked['prediction_rank'], ranked['scaled_residual'], s=12, alpha=0.6, c=colors)

    window = max(len(ranked) // 10, 5)
    for q in [0.25, 0.5, 0.75]:
        rolling = ranked['scaled_residual'].rolling(window, center=True, min_periods=3).quantile(q)
        ax2.plot(ranked['prediction_rank'], rolling, color='darkred', linewidth=1.5)
        ax2.axhline(y=q, color='black', linestyle='--', alpha=0.5)

    ax2.set_xlabel('Model prediction (rank transformed)')
    ax2.set_ylabel('Scaled residual')
    ax2.set_title('Residuals vs Predicted', fontweight='bold')
    ax2.set_ylim(0, 1)
    ax2.grid(True, alpha=0.3)

    # Plot 3: histogram
    ax3.hist(residuals['scaled_residual'], bins=20, range=(0, 1), alpha=0.7,
             color='skyblue', edgecolor='black')
    ax3.axhline(y=len(residuals) / 20, color='red', linestyle='--', linewidth=2, label='Expected')
    ax3.set_xlabel('Scaled residual')
    ax3.set_ylabel('Count')
    ax3.set_title('Scaled Residual Distribution', fontweight='bold')
    ax3.legend()
    ax3.grid(True, alpha=0.3)

    # Plot 4: residuals by contrast level
    factor = config.contrast_factor
    sns.boxplot(data=residuals, x=factor, y='scaled_residual', ax=ax4, color='lightblue')
    ax4.axhline(y=0.5, color='black', linestyle='--', alpha=0.5)
    ax4.set_xlabel(factor.title())
    ax4.set_ylabel('Scaled residual')
    homogeneity = tests.get('homogeneity', {})
    title = f'Residuals by {factor.title()}'
    if homogeneity.get('p_value') is not None:
        title += f"\nLevene p = {homogeneity['p_value']:.3f}"
    ax4.set_title(title, fontweight='bold')
    ax4.tick_params(axis='x', rotation=45)
    ax4.grid(True, alpha=0.3)

    plt.tight_layout()
    return save_figure(fig, output_dir, 'residual_diagnostics', config)


def plot_conditional_residuals(df, results, config: AnalysisConfig, output_dir) -> Dict[str, Path]:
    """Conventional residual plots and the random-intercept caterpillar."""
    fig, ((ax1, ax2), (ax3, ax4)) = plt.subplots(2, 2, figsize=(15, 12))

    # Plot 1: Residuals vs fitted
    ax1.scatter(df['fitted'], df['residual'], alpha=0.5, s=20)
    ax1.axhline(y=0, color='black', linestyle='--', alpha=0.7)
    ax1.set_xlabel('Fitted values')
    ax1.set_ylabel('Conditional residuals')
    ax1.set_title('Residuals vs Fitted', fontweight='bold')
    ax1.grid(True, alpha=0.3)

    # Plot 2: Normal QQ
    stats.probplot(df['residual'], dist="norm", plot=ax2)
    ax2.set_title('Normal Q-Q Plot', fontweight='bold')
    ax2.grid(True, alpha=0.3)

    # Plot 3: Histogram with normal overlay
    ax3.hist(df['residual'], bins=30, alpha=0.7, density=True, color='skyblue')
    mu, sigma = df['residual'].mean(), df['residual'].std()
    x = np.linspace(df['residual'].min(), df['residual'].max(), 100)
    ax3.plot(x, stats.norm.pdf(x, mu, sigma), 'r-', linewidth=2, label='Normal Distribution')
    ax3.set_xlabel('Conditional residual')
    ax3.set_ylabel('Density')
    ax3.set_title('Residual Distribution', fontweight='bold')
    ax3.legend()
    ax3.grid(True, alpha=0.3)

    # Plot 4: Random effects caterpillar
    random_effects = results.get('random_effects', {})
    if random_effects:
        effects = pd.Series(random_effects).sort_values()
        colors = ['indianred' if v < 0 else 'steelblue' for v in effects.values]
        ax4.barh(range(len(effects)), effects.values, color=colors, alpha=0.7)
        ax4.set_yticks(range(len(effects)))
        ax4.set_yticklabels(effects.index, fontsize=8)
        ax4.axvline(x=0, color='black', linestyle='--', alpha=0.5)
        ax4.set_xlabel('Random intercept (log$_{10}$ breaths/min)')
        ax4.set_title(f'Random Effects: {config.group_column.title()}', fontweight='bold')
        ax4.grid(True, alpha=0.3)
    else:
        ax4.text(0.5, 0.5, 'Random effects not available',
                 ha='center', va='center', transform=ax4.transAxes)

    plt.tight_layout()
    return save_figure(fig, output_dir, 'conditional_residuals', config)


def plot_slope_contrasts(slopes, contrasts, config: AnalysisConfig, output_dir) -> Dict[str, Path]:
    """Forest plots of allometric exponents and their pairwise differences."""
    n_contrasts = len(contrasts)
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(16, max(6, 0.5 * max(len(slopes), n_contrasts) + 3)))

    # Plot 1: slopes per level
    if len(slopes):
        y = np.arange(len(slopes))
        ax1.errorbar(slopes['slope'], y,
                     xerr=[slopes['slope'] - slopes['ci_lower'], slopes['ci_upper'] - slopes['slope']],
                     fmt='o', color='navy', capsize=4, markersize=8)
        ax1.axvline(x=config.reference_exponent, color='red', linestyle='--', alpha=0.7,
                    label=f'Reference exponent ({config.reference_exponent})')
        ax1.set_yticks(y)
        ax1.set_yticklabels([f"{level} (n={n})" for level, n in zip(slopes['level'], slopes['n'])])
        ax1.set_xlabel('Allometric exponent')
        ax1.set_title(f'Slopes by {config.contrast_factor.title()}', fontweight='bold')
        ax1.legend(loc='lower right')
        ax1.grid(True, alpha=0.3)

    # Plot 2: pairwise differences
    if n_contrasts:
        y = np.arange(n_contrasts)
        significant = contrasts['significant'].astype(bool).values
        colors = np.where(significant, 'red', 'gray')
        for yi, (_, row), color in zip(y, contrasts.iterrows(), colors):
            ax2.errorbar(row['estimate'], yi,
                         xerr=[[row['estimate'] - row['ci_lower']], [row['ci_upper'] - row['estimate']]],
                         fmt='o', color=color, capsize=4, markersize=7)
            ax2.text(row['ci_upper'], yi, f"  p_adj={row['p_adjusted']:.3f}", va='center', fontsize=9)

        ax2.axvline(x=0, color='black', linestyle='--', alpha=0.5)
        ax2.set_yticks(y)
        ax2.set_yticklabels(contrasts['contrast'])
        ax2.set_xlabel('Difference in exponent')
        ax2.set_title(f'Pairwise Slope Contrasts ({config.correction_method})', fontweight='bold')
        legend_elements = [Patch(facecolor='red', label=f'p_adj < {config.alpha}'),
                           Patch(facecolor='gray', label=f'p_adj ≥ {config.alpha}')]
        ax2.legend(handles=legend_elements, loc='lower right')
        ax2.grid(True, alpha=0.3)
    else:
        ax2.text(0.5, 0.5, 'No pairwise contrasts available',
                 ha='center', va='center', transform=ax2.transAxes)

    plt.tight_layout()
    return save_figure(fig, output_dir, 'slope_contrasts', config)


def plot_variance_decomposition(results, config: AnalysisConfig, output_dir) -> Dict[str, Path]:
    """Share of total variance at each taxonomic level."""
    shares = results.get('variance_components', {}).get('percent_of_total', {})
    fig, ax = plt.subplots(figsize=(10, 6))

    if shares:
        names = list(shares.keys())
        values = [shares[n] for n in names]
        bars = ax.bar(range(len(names)), values, alpha=0.7,
                      color=sns.color_palette("husl", len(names)))
        ax.set_xticks(range(len(names)))
        ax.set_xticklabels([n.replace('_', ' ').title() for n in names])
        ax.set_ylabel('Variance Explained (%)')
        ax.set_title('Variance Decomposition', fontweight='bold')
        ax.grid(True, alpha=0.3)

        # Add value labels on bars
        for bar, value in zip(bars, values):
            ax.text(bar.get_x() + bar.get_width() / 2., bar.get_height() + 0.5,
                    f'{value:.1f}%', ha='center', va='bottom', fontweight='bold')
    else:
        ax.text(0.5, 0.5, 'Variance data not available',
                ha='center', va='center', transform=ax.transAxes)

    plt.tight_layout()
    return save_figure(fig, output_dir, 'variance_decomposition', config)


def create_static_figures(df, results, tables, config: AnalysisConfig,
                          output_dir: Optional[Path] = None) -> Dict[str, Dict[str, Path]]:
    output_dir = Path(output_dir or config.figures_dir)
    figures = {}

    print("Plotting allometric relationship...")
    figures['allometry_scatter'] = plot_allometry(df, tables['predictions'], config, output_dir)
    figures['prediction_intervals'] = plot_prediction_intervals(df, tables['predictions'], config, output_dir)

    print("Plotting residual diagnostics...")
    figures['residual_diagnostics'] = plot_residual_diagnostics(
        tables['scaled_residuals'], results, config, output_dir)
    figures['conditional_residuals'] = plot_conditional_residuals(df, results, config, output_dir)

    print("Plotting slope contrasts...")
    figures['slope_contrasts'] = plot_slope_contrasts(
        tables['slope_estimates'], tables['slope_contrasts'], config, output_dir)
    figures['variance_decomposition'] = plot_variance_decomposition(results, config, output_dir)

    return figures


def main(config: Optional[AnalysisConfig] = None):
    """Main visualization function."""
    config = config or AnalysisConfig.from_env()
    print("Creating mixed effects analysis visualizations...")

    setup_directories(config)
    df, results, tables = load_results(config)
    figures = create_static_figures(df, results, tables, config)

    print(f"All visualizations saved to {config.figures_dir}/")
    print("Generated files:")
    for file in sorted(config.figures_dir.iterdir()):
        print(f"  - {file.name}")

    return figures


if __name__ == "__main__":
    main()
