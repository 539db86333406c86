import logging
import math
from pathlib import Path

import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from excess_deaths import MEASURE_COLUMNS

logger = logging.getLogger(__name__)

OBSERVED_COLOR = '#1f1f1f'
EXPECTED_COLOR = '#007acc'
BAND_COLOR = 'rgba(0,122,204,0.2)'
EXCESS_COLOR = '#DC143C'

MEASURE_TITLES = {
    'all_cause': 'Excess deaths (all causes)',
    'non_covid': 'Excess deaths excluding COVID-19',
}


class ChartRenderError(RuntimeError):
    """Raised when a chart cannot be written."""


def get_color_for_year(year, current_year):
    """Return color based on year range"""
    if year == current_year:
        return '#1E90FF'  # Blue
    elif 2015 <= year <= 2019:
        return '#2E8B57'  # Green
    elif 2020 <= year < current_year:
        return '#DC143C'  # Red
    else:
        return '#808080'  # Gray


def _jurisdiction_rows(table: pd.DataFrame, jurisdiction: str) -> pd.DataFrame:
    rows = table[table['jurisdiction'] == jurisdiction].sort_values('weekendingdate')
    if rows.empty:
        raise ValueError(f"No records for {jurisdiction}")
    return rows


def _add_band(fig, x, lower, upper, name, row=None, col=None):
    """Shaded interval between two series."""
    kwargs = {} if row is None else {'row': row, 'col': col}
    fig.add_trace(go.Scatter(x=x, y=upper, mode='lines', line=dict(width=0),
                             hoverinfo='skip', showlegend=False), **kwargs)
    fig.add_trace(go.Scatter(x=x, y=lower, mode='lines', line=dict(width=0), fill='tonexty',
                             fillcolor=BAND_COLOR, name=name, hoverinfo='skip'), **kwargs)


def observed_vs_expected_figure(table: pd.DataFrame, jurisdiction: str) -> go.Figure:
    """Observed weekly deaths against the fitted expectation and its prediction interval."""
    rows = _jurisdiction_rows(table, jurisdiction)

    fig = go.Figure()
    _add_band(fig, rows['weekendingdate'], rows['lwr'], rows['upr'], '95% prediction interval')

    fig.add_trace(go.Scatter(
        x=rows['weekendingdate'], y=rows['fit'], mode='lines', name='Expected',
        line=dict(color=EXPECTED_COLOR, width=2),
        hovertemplate='Week ending %{x|%Y-%m-%d}<br>Expected: %{y:,.0f}<extra></extra>'
    ))

    if 'provisional' in rows.columns and rows['provisional'].any():
        final = rows[~rows['provisional']]
        provisional = rows[rows['provisional']]
    else:
        final, provisional = rows, rows.iloc[0:0]

    fig.add_trace(go.Scatter(
        x=final['weekendingdate'], y=final['allcause'], mode='lines', name='Observed',
        line=dict(color=OBSERVED_COLOR, width=2),
        hovertemplate='Week ending %{x|%Y-%m-%d}<br>Observed: %{y:,.0f}<extra></extra>'
    ))
    if not provisional.empty:
        fig.add_trace(go.Scatter(
            x=provisional['weekendingdate'], y=provisional['allcause'], mode='lines',
            name='Observed (provisional)', line=dict(color=OBSERVED_COLOR, width=2, dash='dot'),
            hovertemplate='Week ending %{x|%Y-%m-%d}<br>Observed: %{y:,.0f}<extra></extra>'
        ))

    fig.update_layout(
        title=f'Observed vs. Expected Weekly Deaths - {jurisdiction}',
        xaxis_title='Week Ending',
        yaxis_title='Deaths',
        hovermode='x unified',
        template='plotly_white',
        height=500,
        margin=dict(l=50, r=50, t=50, b=50)
    )
    return fig


def anomaly_timeline_figure(table: pd.DataFrame, jurisdiction: str,
                            measure: str = 'all_cause') -> go.Figure:
    """Weekly excess deaths with their interval around a zero line."""
    value_col, lower_col, upper_col = MEASURE_COLUMNS[measure]
    rows = _jurisdiction_rows(table, jurisdiction)

    fig = go.Figure()
    fig.add_hline(y=0, line_dash="dash", line_color="gray", opacity=0.5)
    _add_band(fig, rows['weekendingdate'], rows[lower_col], rows[upper_col], '95% interval')
    fig.add_trace(go.Scatter(
        x=rows['weekendingdate'], y=rows[value_col], mode='lines', name=MEASURE_TITLES[measure],
        line=dict(color=EXCESS_COLOR, width=2),
        hovertemplate='Week ending %{x|%Y-%m-%d}<br>Excess: %{y:,.0f}<extra></extra>'
    ))

    fig.update_layout(
        title=f'{MEASURE_TITLES[measure]} - {jurisdiction}',
        xaxis_title='Week Ending',
        yaxis_title='Observed minus Expected Deaths',
        hovermode='x unified',
        template='plotly_white',
        height=500,
        margin=dict(l=50, r=50, t=50, b=50)
    )
    return fig


def window_bar_figure(window: pd.DataFrame, measure: str = 'all_cause', columns: int = 3) -> go.Figure:
    """One panel per jurisdiction, weekly excess deaths as bars with error bars."""
    if window.empty:
        raise ValueError("No records to chart")
    value_col, lower_col, upper_col = MEASURE_COLUMNS[measure]

    jurisdictions = sorted(window['jurisdiction'].unique())
    columns = min(columns, len(jurisdictions))
    n_rows = math.ceil(len(jurisdictions) / columns)

    fig = make_subplots(rows=n_rows, cols=columns, subplot_titles=jurisdictions,
                        shared_xaxes=True, vertical_spacing=0.12)

    for i, jurisdiction in enumerate(jurisdictions):
        rows = window[window['jurisdiction'] == jurisdiction].sort_values('weekendingdate')
        fig.add_trace(go.Bar(
            x=rows['weekendingdate'],
            y=rows[value_col],
            name=jurisdiction,
            marker_color=EXCESS_COLOR,
            error_y=dict(type='data', symmetric=False,
                         array=rows[upper_col] - rows[value_col],
                         arrayminus=rows[value_col] - rows[lower_col]),
            hovertemplate='Week ending %{x|%Y-%m-%d}<br>Excess: %{y:,.0f}<extra></extra>',
            showlegend=False
        ), row=i // columns + 1, col=i % columns + 1)

    fig.update_layout(
        title=MEASURE_TITLES[measure],
        template='plotly_white',
        height=300 * n_rows + 100,
        margin=dict(l=50, r=50, t=80, b=50)
    )
    return fig


def cause_comparison_figure(long_table: pd.DataFrame, jurisdiction: str, current_year: int,
                            columns: int = 4) -> go.Figure:
    """Small multiples per cause: deaths by MMWR week, one line per year."""
    rows = long_table[long_table['jurisdiction'] == jurisdiction]
    if rows.empty:
        raise ValueError(f"No cause records for {jurisdiction}")

    causes = sorted(rows['cause'].unique())
    columns = min(columns, len(causes))
    n_rows = math.ceil(len(causes) / columns)

    fig = make_subplots(rows=n_rows, cols=columns, subplot_titles=causes, vertical_spacing=0.08)

    years = sorted(rows['mmwryear'].unique())
    legend_years = set()
    for i, cause in enumerate(causes):
        cause_rows = rows[rows['cause'] == cause]
        for year in years:
            year_data = cause_rows[cause_rows['mmwryear'] == year].sort_values('mmwrweek')
            if year_data['deaths'].notna().sum() == 0:
                continue
            fig.add_trace(go.Scatter(
                x=year_data['mmwrweek'],
                y=year_data['deaths'],
                mode='lines',
                name=str(year),
                legendgroup=str(year),
                line=dict(color=get_color_for_year(year, current_year),
                          width=3 if year == current_year else 1),
                hovertemplate=f'<b>{year}</b><br>Week: %{{x}}<br>Deaths: %{{y:,.0f}}<extra></extra>',
                showlegend=(year not in legend_years)
            ), row=i // columns + 1, col=i % columns + 1)
            legend_years.add(year)

    fig.update_layout(
        title=f'Weekly Deaths by Cause, {current_year} vs. Prior Years - {jurisdiction}',
        template='plotly_white',
        height=250 * n_rows + 100,
        margin=dict(l=50, r=50, t=80, b=50)
    )
    return fig


def save_figure(fig: go.Figure, path) -> Path:
    """Write a figure as HTML or, for image suffixes, through kaleido."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() == '.html':
            fig.write_html(str(path), include_plotlyjs='cdn')
        else:
            fig.write_image(str(path))
    except (OSError, ValueError, RuntimeError) as e:
        logger.error(f"Could not write chart {path}: {e}")
        raise ChartRenderError(f"Could not write chart {path}: {e}") from e

    logger.info(f"Saved chart {path}")
    return path
