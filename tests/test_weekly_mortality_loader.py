from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest
import requests

from weekly_mortality_loader import (
    COVID_COLUMN, MalformedInputError, WeeklyMortalityLoader,
    flag_provisional_weeks, get_mmwr_year, load_weekly_deaths, validate_weekly_deaths,
)


def _write_csv(tmp_path, df):
    path = tmp_path / 'input.csv'
    df.to_csv(path, index=False)
    return path


# --- Loading and validation ---

def test_load_parses_iso_dates_and_derives_mmwr_year(weekly_csv):
    df = load_weekly_deaths(weekly_csv)

    assert df['weekendingdate'].dtype.kind == 'M'
    assert df['weekendingdate'].min() == pd.Timestamp('2015-01-03')
    # The week ending 2015-01-03 is week 53 of MMWR year 2014
    first = df[(df['jurisdiction'] == 'Texas')].iloc[0]
    assert first['mmwryear'] == 2014
    assert first['mmwrweek'] == 53
    assert set(df['jurisdiction']) == {'Texas', 'Oklahoma'}


def test_load_sorts_by_jurisdiction_and_week(weekly_csv):
    df = load_weekly_deaths(weekly_csv)
    expected = df.sort_values(['jurisdiction', 'weekendingdate']).reset_index(drop=True)
    pd.testing.assert_frame_equal(df, expected)


def test_missing_required_column_fails(tmp_path, make_weekly):
    raw = make_weekly().drop(columns=['allcause'])
    with pytest.raises(MalformedInputError, match='allcause'):
        load_weekly_deaths(_write_csv(tmp_path, raw))


def test_missing_covid_column_fails(make_weekly):
    raw = make_weekly().drop(columns=[COVID_COLUMN])
    with pytest.raises(MalformedInputError, match=COVID_COLUMN):
        validate_weekly_deaths(raw)


def test_unparseable_date_fails(make_weekly):
    raw = make_weekly()
    raw['weekendingdate'] = raw['weekendingdate'].dt.strftime('%Y-%m-%d')
    raw.loc[3, 'weekendingdate'] = 'last saturday'
    with pytest.raises(MalformedInputError, match='Unparseable'):
        validate_weekly_deaths(raw)


def test_out_of_range_week_fails(make_weekly):
    raw = make_weekly()
    raw.loc[0, 'mmwrweek'] = 54
    with pytest.raises(MalformedInputError, match='MMWR week'):
        validate_weekly_deaths(raw)


def test_negative_or_missing_deaths_fail(make_weekly):
    raw = make_weekly()
    raw.loc[0, 'allcause'] = -1
    with pytest.raises(MalformedInputError):
        validate_weekly_deaths(raw)

    raw = make_weekly()
    raw.loc[0, 'allcause'] = np.nan
    with pytest.raises(MalformedInputError):
        validate_weekly_deaths(raw)


def test_missing_jurisdiction_fails(tmp_path, make_weekly):
    raw = make_weekly()
    raw.loc[3, 'jurisdiction'] = None
    # An empty cell reads back as NaN
    with pytest.raises(MalformedInputError, match='jurisdiction'):
        load_weekly_deaths(_write_csv(tmp_path, raw))

    raw = make_weekly()
    raw.loc[3, 'jurisdiction'] = '   '
    with pytest.raises(MalformedInputError, match='jurisdiction'):
        validate_weekly_deaths(raw)


def test_duplicate_weeks_fail(make_weekly):
    raw = make_weekly()
    raw = pd.concat([raw, raw.iloc[[5]]], ignore_index=True)
    with pytest.raises(MalformedInputError, match='duplicate'):
        validate_weekly_deaths(raw)


def test_empty_input_fails(make_weekly):
    with pytest.raises(MalformedInputError):
        validate_weekly_deaths(make_weekly().iloc[0:0])


def test_suppressed_cause_counts_stay_missing(make_weekly):
    raw = make_weekly()
    raw['septicemia_a40_a41'] = raw['septicemia_a40_a41'].astype(object)
    raw.loc[0, 'septicemia_a40_a41'] = ''
    df = validate_weekly_deaths(raw)
    assert np.isnan(df.loc[0, 'septicemia_a40_a41'])
    # COVID deaths before 2020 are not reported
    assert df[df['weekendingdate'] < '2020-01-01'][COVID_COLUMN].isna().all()


def test_get_mmwr_year():
    assert get_mmwr_year('2015-01-03') == 2014
    assert get_mmwr_year('2015-01-10') == 2015
    assert get_mmwr_year('2021-01-02') == 2020
    assert get_mmwr_year('2021-02-20') == 2021


def test_flag_provisional_weeks_marks_most_recent(weekly_deaths):
    df = flag_provisional_weeks(weekly_deaths, lag_weeks=8)

    latest = df['weekendingdate'].max()
    provisional = df[df['provisional']]
    assert provisional['weekendingdate'].min() == latest - pd.Timedelta(weeks=7)
    assert provisional.groupby('jurisdiction').size().tolist() == [8, 8]
    assert len(df) == len(weekly_deaths)
    assert 'provisional' not in weekly_deaths.columns


# --- CDC compile step ---

def _raw_release():
    return pd.DataFrame({
        'jurisdiction_of_occurrence': ['Texas', 'Texas', 'New York City', 'New York'],
        'mmwryear': [2014, 2015, 2015, 2015],
        'mmwrweek': [52, 1, 1, 1],
        'week_ending_date': ['2014-12-27T00:00:00.000', '2015-01-10T00:00:00.000',
                             '2015-01-10T00:00:00.000', '2015-01-10T00:00:00.000'],
        'allcause': [3600, 3700, 1200, 1700],
        'septicemia_a40_a41': [40, 41, 12, np.nan],
        'flag_allcause': [None, None, None, None],
    })


def test_process_weekly_counts_renames_and_drops_pre_2015():
    loader = WeeklyMortalityLoader()
    df = loader.process_weekly_counts(_raw_release(), 'cdc_2014_2019_weekly')

    assert len(df) == 3
    assert {'jurisdiction', 'weekendingdate', 'allcause', 'septicemia_a40_a41'} <= set(df.columns)
    assert 'flag_allcause' not in df.columns
    assert (df['data_source'] == 'cdc_2014_2019_weekly').all()


def test_combine_nyc_with_ny_sums_counts():
    loader = WeeklyMortalityLoader()
    df = loader.process_weekly_counts(_raw_release(), 'cdc_2014_2019_weekly')
    combined = loader.combine_nyc_with_ny(df)

    ny = combined[combined['jurisdiction'] == 'New York']
    assert len(ny) == 1
    assert ny['allcause'].iloc[0] == 2900
    assert ny['septicemia_a40_a41'].iloc[0] == 12
    assert 'New York City' not in set(combined['jurisdiction'])


def test_merge_keeps_later_release_for_duplicate_weeks():
    loader = WeeklyMortalityLoader()
    older = loader.process_weekly_counts(_raw_release(), 'cdc_2014_2019_weekly')
    newer = older.copy()
    newer['allcause'] = newer['allcause'] + 10
    newer['data_source'] = 'cdc_2020_present_weekly'

    merged = loader.merge_and_clean_datasets(older, newer)
    assert len(merged) == 3
    assert (merged['data_source'] == 'cdc_2020_present_weekly').all()
    assert list(merged['jurisdiction']) == sorted(merged['jurisdiction'])


def test_download_dataset_parses_csv():
    loader = WeeklyMortalityLoader()
    mock_resp = MagicMock()
    mock_resp.text = 'jurisdiction_of_occurrence,allcause\nTexas,3700\n'
    mock_resp.raise_for_status = MagicMock()

    with patch.object(loader.session, 'get', return_value=mock_resp) as mock_get:
        df = loader.download_dataset('cdc_2020_present_weekly')

    mock_get.assert_called_once()
    assert df.to_dict('records') == [{'jurisdiction_of_occurrence': 'Texas', 'allcause': 3700}]


def test_download_dataset_retries_then_gives_up():
    loader = WeeklyMortalityLoader()
    with patch.object(loader.session, 'get', side_effect=requests.ConnectionError('offline')) as mock_get, \
            patch('weekly_mortality_loader.time.sleep') as mock_sleep:
        df = loader.download_dataset('cdc_2014_2019_weekly', max_retries=3)

    assert df.empty
    assert mock_get.call_count == 3
    assert mock_sleep.call_count == 2


def test_compile_fails_when_nothing_downloads(tmp_path):
    loader = WeeklyMortalityLoader()
    with patch.object(loader, 'download_dataset', return_value=pd.DataFrame()):
        with pytest.raises(MalformedInputError):
            loader.compile_weekly_counts(str(tmp_path / 'out.csv'))


def test_compile_writes_loadable_csv(tmp_path):
    loader = WeeklyMortalityLoader()
    raw = _raw_release()
    raw[COVID_COLUMN] = np.nan
    output = tmp_path / 'data' / 'weekly.csv'

    with patch.object(loader, 'download_dataset', return_value=raw):
        loader.compile_weekly_counts(str(output))

    df = load_weekly_deaths(output)
    assert len(df) == 3
    assert df['weekendingdate'].iloc[0] == pd.Timestamp('2015-01-10')
