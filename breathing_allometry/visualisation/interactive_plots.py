"""
Interactive Allometry Visualizations
Plotly versions of the allometry scatter and slope contrasts, written as
standalone HTML so points can be inspected species by species.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from ..config import AnalysisConfig

logger = logging.getLogger(__name__)

HOVER_COLUMNS = ['species', 'common_name', 'order', 'family', 'location', 'activity',
                 'body_mass_kg', 'breathing_frequency', 'temperature_c']


def _hex_to_rgba(color: str, alpha: float) -> str:
    color = color.lstrip('#')
    r, g, b = (int(color[i:i + 2], 16) for i in (0, 2, 4))
    return f'rgba({r}, {g}, {b}, {alpha})'


def allometry_figure(df: pd.DataFrame, predictions: pd.DataFrame,
                     config: AnalysisConfig) -> go.Figure:
    """Scatter of breathing frequency vs mass with fitted lines and PI ribbons."""
    factor = config.contrast_factor
    hover = [c for c in HOVER_COLUMNS if c in df.columns]
    levels = sorted(df[factor].dropna().unique())
    colors = dict(zip(levels, px.colors.qualitative.Plotly * (len(levels) // 10 + 1)))

    fig = px.scatter(df, x='body_mass_kg', y='breathing_frequency', color=factor,
                     category_orders={factor: levels}, color_discrete_map=colors,
                     hover_data=hover, log_x=True, log_y=True, opacity=0.6,
                     labels={'body_mass_kg': 'Body Mass (kg)',
                             'breathing_frequency': 'Breathing Frequency (breaths/min)',
                             factor: factor.title()},
                     title='Breathing Frequency vs Body Mass')

    for level in levels:
        pred = predictions[predictions[factor] == level] if len(predictions) else pd.DataFrame()
        if pred.empty:
            continue
        color = colors[level]

        # Prediction interval ribbon
        fig.add_trace(go.Scatter(
            x=pd.concat([pred['body_mass_kg'], pred['body_mass_kg'][::-1]]),
            y=pd.concat([pred['pi_upper_frequency'], pred['pi_lower_frequency'][::-1]]),
            fill='toself', fillcolor=_hex_to_rgba(color, 0.12),
            line=dict(width=0), hoverinfo='skip', showlegend=False,
            legendgroup=str(level), name=f'{level} PI'))

        fig.add_trace(go.Scatter(
            x=pred['body_mass_kg'], y=pred['predicted_frequency'], mode='lines',
            line=dict(color=color, width=3), legendgroup=str(level),
            name=f'{level} fit',
            hovertemplate='Mass %{x:.3g} kg<br>Predicted %{y:.1f} breaths/min<extra></extra>'))

    fig.update_layout(height=700, showlegend=True, template='plotly_white')
    return fig


def contrasts_figure(slopes: pd.DataFrame, contrasts: pd.DataFrame,
                     config: AnalysisConfig) -> go.Figure:
    """Side-by-side slope estimates and pairwise differences."""
    fig = make_subplots(rows=1, cols=2, horizontal_spacing=0.2,
                        subplot_titles=(f'Slopes by {config.contrast_factor.title()}',
                                        f'Pairwise Contrasts ({config.correction_method})'))

    if len(slopes):
        fig.add_trace(go.Scatter(
            x=slopes['slope'], y=slopes['level'].astype(str), mode='markers',
            marker=dict(size=11, color='navy'),
            error_x=dict(type='data', symmetric=False,
                         array=slopes['ci_upper'] - slopes['slope'],
                         arrayminus=slopes['slope'] - slopes['ci_lower']),
            customdata=slopes[['n', 'p_vs_reference']].values,
            hovertemplate='%{y}: %{x:.3f}<br>n=%{customdata[0]}'
                          '<br>p vs reference=%{customdata[1]:.4f}<extra></extra>',
            name='Slope'), row=1, col=1)
        fig.add_vline(x=config.reference_exponent, line_dash='dash', line_color='red', row=1, col=1)

    if len(contrasts):
        colors = ['red' if sig else 'gray' for sig in contrasts['significant'].astype(bool)]
        fig.add_trace(go.Scatter(
            x=contrasts['estimate'], y=contrasts['contrast'], mode='markers',
            marker=dict(size=10, color=colors),
            error_x=dict(type='data', symmetric=False,
                         array=contrasts['ci_upper'] - contrasts['estimate'],
                         arrayminus=contrasts['estimate'] - contrasts['ci_lower']),
            customdata=contrasts[['p_value', 'p_adjusted']].values,
            hovertemplate='%{y}: %{x:.3f}<br>p=%{customdata[0]:.4f}'
                          '<br>p_adj=%{customdata[1]:.4f}<extra></extra>',
            name='Difference'), row=1, col=2)
        fig.add_vline(x=0, line_dash='dash', line_color='black', row=1, col=2)

    fig.update_xaxes(title_text='Allometric exponent', row=1, col=1)
    fig.update_xaxes(title_text='Difference in exponent', row=1, col=2)
    fig.update_layout(height=max(450, 40 * max(len(slopes), len(contrasts)) + 200),
                      showlegend=False, template='plotly_white')
    return fig


def create_interactive_figures(df: pd.DataFrame, tables: Dict[str, pd.DataFrame],
                               config: AnalysisConfig,
                               output_dir: Optional[Path] = None) -> Dict[str, go.Figure]:
    """Build the interactive figures and write each to HTML."""
    output_dir = Path(output_dir or config.figures_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    figures = {
        'allometry_interactive': allometry_figure(df, tables['predictions'], config),
        'slope_contrasts_interactive': contrasts_figure(
            tables['slope_estimates'], tables['slope_contrasts'], config),
    }

    for name, fig in figures.items():
        save_path = output_dir / f'{name}.html'
        fig.write_html(str(save_path), include_plotlyjs='cdn')
        logger.info(f"Saved interactive figure {save_path}")

    return figures
