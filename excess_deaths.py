import logging
from typing import Iterable, Dict, Any

import pandas as pd

from weekly_mortality_loader import COVID_COLUMN

logger = logging.getLogger(__name__)

# Texas and the neighboring states used in the regional comparison
STORM_STATES = ['Texas', 'New Mexico', 'Oklahoma', 'Arkansas', 'Louisiana', 'Mississippi']

# Weeks shown around the February 2021 winter storm
STORM_CHART_START = pd.Timestamp('2021-01-02')
STORM_CHART_END = pd.Timestamp('2021-04-03')

# Six weeks starting with the storm week (Feb 14-20, 2021)
STORM_HEADLINE_START = pd.Timestamp('2021-02-20')
STORM_HEADLINE_END = pd.Timestamp('2021-03-27')

MEASURE_COLUMNS = {
    'all_cause': ('all_cause_anomaly', 'anomaly_lower', 'anomaly_upper'),
    'non_covid': ('non_covid_anomaly', 'non_covid_lower', 'non_covid_upper'),
}


def compute_anomalies(expected: pd.DataFrame) -> pd.DataFrame:
    """
    Add observed-minus-expected columns to a table of fitted expectations.

    Subtracting the prediction interval flips it: the lower expected bound
    gives the upper anomaly bound and vice versa. The non-COVID anomaly
    removes that week's COVID-19 underlying-cause deaths as a fixed offset
    from the anomaly and both of its bounds. Missing COVID counts stay missing.
    """
    df = expected.copy()
    observed = df['allcause'].astype(float)

    df['all_cause_anomaly'] = observed - df['fit']
    df['anomaly_lower'] = observed - df['upr']
    df['anomaly_upper'] = observed - df['lwr']

    covid = df[COVID_COLUMN].astype(float)
    df['non_covid_anomaly'] = df['all_cause_anomaly'] - covid
    df['non_covid_lower'] = df['anomaly_lower'] - covid
    df['non_covid_upper'] = df['anomaly_upper'] - covid

    return df


def select_window(anomalies: pd.DataFrame, jurisdictions: Iterable[str],
                  start, end) -> pd.DataFrame:
    """Rows for the given jurisdictions with week-ending dates in [start, end]."""
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)
    if start > end:
        raise ValueError(f"Window start {start:%Y-%m-%d} is after end {end:%Y-%m-%d}")

    jurisdictions = list(jurisdictions)
    mask = (anomalies['jurisdiction'].isin(jurisdictions)
            & anomalies['weekendingdate'].between(start, end))
    window = anomalies[mask].sort_values(['jurisdiction', 'weekendingdate']).reset_index(drop=True)

    logger.info(f"Window {start:%Y-%m-%d} to {end:%Y-%m-%d}: {len(window)} records "
                f"for {window['jurisdiction'].nunique()} of {len(jurisdictions)} jurisdictions")
    return window


def summarize_window(anomalies: pd.DataFrame, jurisdiction: str, start, end,
                     measure: str = 'all_cause') -> Dict[str, Any]:
    """
    Total excess deaths for one jurisdiction over a range of weeks.

    The range is the sum of the weekly lower bounds to the sum of the weekly
    upper bounds. This is a simplification, not a proper interval for a sum,
    and is kept as is because published figures use it.
    """
    if measure not in MEASURE_COLUMNS:
        raise ValueError(f"Unknown measure {measure!r}, expected one of {sorted(MEASURE_COLUMNS)}")
    value_col, lower_col, upper_col = MEASURE_COLUMNS[measure]

    window = select_window(anomalies, [jurisdiction], start, end)
    if window.empty:
        raise ValueError(f"No {jurisdiction} records between {pd.Timestamp(start):%Y-%m-%d} "
                         f"and {pd.Timestamp(end):%Y-%m-%d}")

    missing = int(window[value_col].isna().sum())
    if missing:
        logger.warning(f"{jurisdiction} {measure}: {missing} of {len(window)} weeks have no value, "
                       f"window total is undefined")

    # A week without a value leaves the total undefined
    summary = {
        'jurisdiction': jurisdiction,
        'measure': measure,
        'start': pd.Timestamp(start),
        'end': pd.Timestamp(end),
        'weeks': len(window),
        'missing_weeks': missing,
        'excess_deaths': float(window[value_col].sum(min_count=len(window))),
        'lower': float(window[lower_col].sum(min_count=len(window))),
        'upper': float(window[upper_col].sum(min_count=len(window))),
    }

    logger.info(f"{jurisdiction} {measure} excess deaths {summary['start']:%Y-%m-%d} to "
                f"{summary['end']:%Y-%m-%d}: {summary['excess_deaths']:,.0f} "
                f"({summary['lower']:,.0f} to {summary['upper']:,.0f})")
    return summary
