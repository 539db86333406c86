import numpy as np
import pandas as pd
import pytest

from weekly_mortality_loader import COVID_COLUMN, validate_weekly_deaths

STORM_WEEK = pd.Timestamp('2021-02-20')
COVID_WEEKLY_DEATHS = 40.0


def _mmwr_week(date):
    wednesday = date - pd.Timedelta(days=3)
    return (wednesday.dayofyear - 1) // 7 + 1


def build_weekly_deaths(jurisdiction='Texas', start='2015-01-03', end='2021-06-26', base=3500,
                        seed=0, storm_excess=0):
    """Synthetic weekly counts: linear trend + yearly cycle + noise, optional storm spike."""
    dates = pd.date_range(start, end, freq='W-SAT')
    rng = np.random.default_rng(seed)
    weeks = np.array([_mmwr_week(d) for d in dates])
    days = (dates - pd.Timestamp('2015-01-03')).days.to_numpy()

    allcause = (base + 0.05 * days + 0.08 * base * np.cos(2 * np.pi * (weeks - 1) / 52)
                + rng.normal(0, 15, len(dates)))
    allcause = allcause + np.where(dates == STORM_WEEK, storm_excess, 0)

    covid = np.where(dates >= pd.Timestamp('2020-03-01'), COVID_WEEKLY_DEATHS, np.nan)

    return pd.DataFrame({
        'jurisdiction': jurisdiction,
        'weekendingdate': dates,
        'mmwrweek': weeks,
        'allcause': np.round(allcause),
        'septicemia_a40_a41': np.round(base * 0.01 + rng.normal(0, 3, len(dates))),
        'diseases_of_heart_i00_i09': np.round(base * 0.2 + rng.normal(0, 10, len(dates))),
        'symptoms_signs_and_abnormal': np.round(base * 0.005 + rng.normal(0, 2, len(dates))),
        COVID_COLUMN: covid,
    })


@pytest.fixture
def make_weekly():
    return build_weekly_deaths


@pytest.fixture
def weekly_deaths():
    raw = pd.concat([
        build_weekly_deaths('Texas', base=3500, seed=1, storm_excess=600),
        build_weekly_deaths('Oklahoma', base=750, seed=2),
    ], ignore_index=True)
    return validate_weekly_deaths(raw)


@pytest.fixture
def weekly_csv(tmp_path, weekly_deaths):
    path = tmp_path / 'weekly_deaths_by_cause.csv'
    out = weekly_deaths.drop(columns=['mmwryear']).copy()
    out['weekendingdate'] = out['weekendingdate'].dt.strftime('%Y-%m-%dT00:00:00.000')
    out.to_csv(path, index=False)
    return path
