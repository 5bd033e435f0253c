"""
HTML report for the breathing-rate allometry analysis.

Collects the data summary, model fit, omnibus tests, slope contrasts and
residual checks into one self-contained page with the static figures
embedded as PNG and the plotly figures as interactive divs.
"""

import base64
import html
import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from ..config import AnalysisConfig

logger = logging.getLogger(__name__)

REPORT_FILENAME = 'breathing_allometry_report.html'

STYLE = """
body { font-family: Helvetica, Arial, sans-serif; margin: 2em auto; max-width: 1100px; color: #2c3e50; }
h1 { border-bottom: 3px solid #2c3e50; padding-bottom: 0.3em; }
h2 { border-bottom: 1px solid #bdc3c7; padding-bottom: 0.2em; margin-top: 2em; }
table.report-table { border-collapse: collapse; margin: 1em 0; font-size: 0.9em; }
table.report-table th, table.report-table td { border: 1px solid #ddd; padding: 4px 10px; text-align: right; }
table.report-table th { background: #E6E6FA; }
pre { background: #f4f6f7; padding: 1em; overflow-x: auto; font-size: 0.8em; }
.figure { margin: 1.5em 0; text-align: center; }
.figure img { max-width: 100%; }
"""


def _significance(p_value) -> str:
    if p_value is None or pd.isna(p_value):
        return ""
    return "***" if p_value < 0.001 else "**" if p_value < 0.01 else "*" if p_value < 0.05 else ""


def _table(frame: pd.DataFrame) -> str:
    if frame is None or frame.empty:
        return '<p><em>Not available.</em></p>'
    return frame.to_html(index=False, classes='report-table', border=0,
                         float_format=lambda x: f'{x:.4g}', na_rep='')


def _embed_png(path: Path) -> Optional[str]:
    path = Path(path)
    if not path.exists():
        return None
    encoded = base64.b64encode(path.read_bytes()).decode('utf-8')
    return f'<img src="data:image/png;base64,{encoded}" alt="{html.escape(path.stem)}"/>'


def _data_section(results: Dict, config: AnalysisConfig) -> List[str]:
    summary = results.get('data_summary', {})
    lines = ['<h2>Data Summary</h2>', '<ul>']
    lines.append(f"<li>Observations: {summary.get('n_observations', 'N/A')}</li>")
    for key, label in [('n_species', 'Species'), ('n_families', 'Families'),
                       ('n_orders', 'Orders'), ('n_subjects', 'Individuals')]:
        if summary.get(key) is not None:
            lines.append(f'<li>{label}: {summary[key]}</li>')
    if summary.get('mass_range_kg'):
        low, high = summary['mass_range_kg']
        lines.append(f'<li>Body mass range: {low:.4g} – {high:.4g} kg</li>')
    if summary.get('frequency_range'):
        low, high = summary['frequency_range']
        lines.append(f'<li>Breathing frequency range: {low:.4g} – {high:.4g} breaths/min</li>')
    lines.append('</ul>')

    counts = summary.get(f'{config.contrast_factor}_counts')
    if counts:
        frame = pd.DataFrame(sorted(counts.items()), columns=[config.contrast_factor.title(), 'N'])
        lines.append(_table(frame))
    return lines


def _model_section(results: Dict) -> List[str]:
    model = results.get('model', {})
    lines = ['<h2>Mixed Effects Model</h2>',
             f"<p><strong>Formula:</strong> <code>{html.escape(model.get('formula', ''))}</code></p>",
             f"<p><strong>Estimation:</strong> {model.get('method', 'N/A')}, "
             f"converged: {model.get('converged', 'N/A')}, "
             f"groups: {model.get('n_groups', 'N/A')}</p>"]

    fixed = model.get('fixed_effects', {})
    if fixed:
        frame = pd.DataFrame({
            'Term': list(fixed.keys()),
            'Estimate': list(fixed.values()),
            'SE': [model.get('fixed_effects_se', {}).get(k) for k in fixed],
            'CI lower': [model.get('fixed_effects_ci_lower', {}).get(k) for k in fixed],
            'CI upper': [model.get('fixed_effects_ci_upper', {}).get(k) for k in fixed],
            'p': [model.get('fixed_effects_pvalues', {}).get(k) for k in fixed],
        })
        frame[''] = frame['p'].apply(_significance)
        lines.append(_table(frame))

    components = results.get('variance_components', {})
    if components.get('variances'):
        frame = pd.DataFrame({
            'Component': list(components['variances'].keys()),
            'Variance': list(components['variances'].values()),
            '% of total': [components.get('percent_of_total', {}).get(k)
                           for k in components['variances']],
        })
        lines.append('<h3>Variance Components</h3>')
        lines.append(_table(frame))
        if components.get('icc_taxonomic') is not None:
            lines.append(f"<p>Share of variance explained by taxonomy: "
                         f"{components['icc_taxonomic']:.1%}</p>")

    comparison = results.get('model_comparison', {})
    models = comparison.get('models', {})
    rows = [{'Model': name.replace('_', ' ').title(), **{k: v for k, v in metrics.items() if k != 'formula'}}
            for name, metrics in models.items()]
    if rows:
        lines.append('<h3>Model Comparison (ML)</h3>')
        lines.append(_table(pd.DataFrame(rows)))
    lrt = comparison.get('likelihood_ratio_test')
    if lrt:
        lines.append(f"<p>Likelihood-ratio test, separate vs common slope: "
                     f"χ² = {lrt['statistic']:.2f}, df = {lrt['df']}, p = {lrt['p_value']:.4g}</p>")

    if model.get('summary'):
        lines.append('<details><summary>Full model summary</summary>'
                     f"<pre>{html.escape(model['summary'])}</pre></details>")
    return lines


def _diagnostics_section(results: Dict) -> List[str]:
    tests = results.get('diagnostics', {})
    rows = []
    for name, test in tests.items():
        passed = test.get('passed')
        rows.append({
            'Check': name.replace('_', ' ').title(),
            'Statistic': test.get('statistic', test.get('ratio', test.get('n_outliers'))),
            'p': test.get('p_value'),
            'Result': 'n/a' if passed is None else ('pass' if passed else 'flagged'),
        })
    return ['<h2>Residual Diagnostics</h2>',
            f"<p>Scaled residuals from {results.get('settings', {}).get('n_simulations', 'N/A')} "
            "simulations of the fitted model.</p>",
            _table(pd.DataFrame(rows))]


def generate_html_report(results: Dict, tables: Dict[str, pd.DataFrame],
                         config: AnalysisConfig,
                         static_figures: Optional[Dict[str, Dict[str, Path]]] = None,
                         interactive_figures: Optional[Dict] = None,
                         output_path: Optional[Path] = None) -> Path:
    """Write the analysis report as a single HTML file."""
    output_path = Path(output_path or config.reports_dir / REPORT_FILENAME)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    static_figures = static_figures or {}
    interactive_figures = interactive_figures or {}

    sections = [
        '<!DOCTYPE html>', '<html lang="en">', '<head>', '<meta charset="utf-8"/>',
        '<title>Breathing Rate Allometry Report</title>',
        f'<style>{STYLE}</style>', '</head>', '<body>',
        '<h1>Allometry of Mammalian Breathing Rate</h1>',
        f"<p>Analysis date: {pd.Timestamp.now().strftime('%Y-%m-%d %H:%M:%S')}</p>",
    ]

    sections += _data_section(results, config)
    sections += _model_section(results)

    sections.append('<h2>Omnibus Tests (Type III Wald χ²)</h2>')
    anova = tables.get('anova', pd.DataFrame()).copy()
    if not anova.empty:
        anova[''] = anova['p_value'].apply(_significance)
    sections.append(_table(anova))

    factor = config.contrast_factor.title()
    sections.append(f'<h2>Allometric Exponents by {factor}</h2>')
    sections.append(f'<p>Marginal slopes of log<sub>10</sub> breathing frequency on '
                    f'log<sub>10</sub> body mass; tested against the reference exponent '
                    f'{config.reference_exponent}.</p>')
    sections.append(_table(tables.get('slope_estimates')))

    sections.append(f'<h2>Pairwise Slope Contrasts ({html.escape(config.correction_method)} adjusted)</h2>')
    sections.append(_table(tables.get('slope_contrasts')))

    sections += _diagnostics_section(results)

    sections.append('<h2>Figures</h2>')
    for name, paths in static_figures.items():
        image = _embed_png(paths.get('png')) if paths.get('png') else None
        if image:
            title = html.escape(name.replace('_', ' ').title())
            sections.append(f'<div class="figure"><h3>{title}</h3>{image}</div>')

    if interactive_figures:
        sections.append('<h2>Interactive Figures</h2>')
        for i, (name, fig) in enumerate(interactive_figures.items()):
            sections.append('<div class="figure">')
            sections.append(fig.to_html(full_html=False, include_plotlyjs='cdn' if i == 0 else False))
            sections.append('</div>')

    sections += ['</body>', '</html>']

    output_path.write_text('\n'.join(sections), encoding='utf-8')
    logger.info(f"HTML report written to {output_path}")
    return output_path
