import requests
import pandas as pd
import numpy as np
import time
from datetime import timedelta
import logging
import os
from io import StringIO

# Set up logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

COVID_COLUMN = 'covid_19_u071_underlying_cause_of_death'

REQUIRED_COLUMNS = ['jurisdiction', 'weekendingdate', 'mmwrweek', 'allcause', COVID_COLUMN]

# Cause columns in the order CDC publishes them
CAUSE_COLUMNS = [
    'septicemia_a40_a41',
    'malignant_neoplasms_c00_c97',
    'diabetes_mellitus_e10_e14',
    'alzheimer_disease_g30',
    'influenza_and_pneumonia_j09_j18',
    'chronic_lower_respiratory',
    'other_diseases_of_respiratory',
    'nephritis_nephrotic_syndrome',
    'symptoms_signs_and_abnormal',
    'diseases_of_heart_i00_i09',
    'cerebrovascular_diseases',
    'covid_19_u071_multiple_cause_of_death',
    COVID_COLUMN,
]

FIRST_WEEK_ENDING = pd.Timestamp('2015-01-01')


class MalformedInputError(ValueError):
    """Raised when the weekly mortality table cannot be used as analysis input."""


def get_mmwr_year(week_ending):
    """
    Return the MMWR year for a week-ending (Saturday) date.
    MMWR week 1 is the first week with at least four days in the new year,
    so the year is the one that contains the Wednesday of the week.
    """
    wednesday = pd.Timestamp(week_ending) - timedelta(days=3)
    return wednesday.year


def load_weekly_deaths(path) -> pd.DataFrame:
    """Load and validate the weekly deaths CSV used by the excess deaths analysis."""
    logger.info(f"Reading weekly mortality data from {path}...")

    try:
        df = pd.read_csv(path)
    except FileNotFoundError:
        logger.error(f"File {path} not found (current directory: {os.getcwd()})")
        raise
    except pd.errors.ParserError as e:
        raise MalformedInputError(f"Could not parse {path} as CSV: {e}") from e

    logger.info(f"Loaded {len(df)} records with columns: {df.columns.tolist()}")
    return validate_weekly_deaths(df)


def validate_weekly_deaths(df: pd.DataFrame) -> pd.DataFrame:
    """Check required columns and types; return a cleaned copy."""
    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        logger.error(f"Input is missing required columns: {missing}")
        raise MalformedInputError(f"Missing required columns: {', '.join(missing)}")

    if df.empty:
        raise MalformedInputError("Input contains no records")

    df = df.copy()

    # Dates: ISO-8601, optionally with a time part
    raw_dates = df['weekendingdate']
    parsed = pd.to_datetime(raw_dates.astype(str), format='ISO8601', errors='coerce')
    bad_dates = parsed.isna()
    if bad_dates.any():
        examples = raw_dates[bad_dates].astype(str).unique()[:5].tolist()
        logger.error(f"{bad_dates.sum()} records have unparseable week-ending dates: {examples}")
        raise MalformedInputError(f"Unparseable week-ending dates: {examples}")
    if parsed.dt.tz is not None:
        parsed = parsed.dt.tz_convert('UTC').dt.tz_localize(None)
    df['weekendingdate'] = parsed.dt.normalize()

    not_saturday = df['weekendingdate'].dt.dayofweek != 5
    if not_saturday.any():
        logger.warning(f"{not_saturday.sum()} week-ending dates do not fall on a Saturday")

    jurisdiction = df['jurisdiction'].astype('string').str.strip()
    bad_jurisdictions = jurisdiction.isna() | (jurisdiction == '')
    if bad_jurisdictions.any():
        logger.error(f"{bad_jurisdictions.sum()} records have no jurisdiction")
        raise MalformedInputError("Every record needs a jurisdiction")
    df['jurisdiction'] = jurisdiction.astype(str)

    df['mmwrweek'] = pd.to_numeric(df['mmwrweek'], errors='coerce')
    bad_weeks = df['mmwrweek'].isna() | ~df['mmwrweek'].between(1, 53) | (df['mmwrweek'] % 1 != 0)
    if bad_weeks.any():
        logger.error(f"{bad_weeks.sum()} records have invalid MMWR weeks")
        raise MalformedInputError("MMWR week must be an integer between 1 and 53")
    df['mmwrweek'] = df['mmwrweek'].astype(int)

    df['allcause'] = pd.to_numeric(df['allcause'], errors='coerce')
    bad_counts = df['allcause'].isna() | (df['allcause'] < 0)
    if bad_counts.any():
        logger.error(f"{bad_counts.sum()} records have missing or negative all-cause deaths")
        raise MalformedInputError("All-cause deaths must be present and non-negative")

    if 'mmwryear' in df.columns:
        df['mmwryear'] = pd.to_numeric(df['mmwryear'], errors='coerce')
        missing_year = df['mmwryear'].isna()
        df.loc[missing_year, 'mmwryear'] = df.loc[missing_year, 'weekendingdate'].apply(get_mmwr_year)
    else:
        df['mmwryear'] = df['weekendingdate'].apply(get_mmwr_year)
    df['mmwryear'] = df['mmwryear'].astype(int)

    # Suppressed cells stay NaN
    for col in CAUSE_COLUMNS + ['naturalcause']:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors='coerce')

    duplicated = df.duplicated(subset=['jurisdiction', 'weekendingdate'])
    if duplicated.any():
        logger.error(f"{duplicated.sum()} duplicate (jurisdiction, week) records")
        raise MalformedInputError("Input has duplicate jurisdiction/week-ending date records")

    df = df.sort_values(['jurisdiction', 'weekendingdate']).reset_index(drop=True)

    logger.info(f"Validated weekly mortality data:")
    logger.info(f"   {len(df)} total records")
    logger.info(f"   Jurisdictions: {df['jurisdiction'].nunique()}")
    logger.info(f"   Weeks: {df['weekendingdate'].min():%Y-%m-%d} to {df['weekendingdate'].max():%Y-%m-%d}")
    return df


def flag_provisional_weeks(df: pd.DataFrame, lag_weeks: int = 8) -> pd.DataFrame:
    """Mark the most recent weeks, which CDC still revises, as provisional."""
    df = df.copy()
    if df.empty:
        df['provisional'] = pd.Series(dtype=bool)
        return df

    cutoff = df['weekendingdate'].max() - timedelta(weeks=lag_weeks)
    df['provisional'] = df['weekendingdate'] > cutoff
    logger.info(f"Flagged {df['provisional'].sum()} records after {cutoff:%Y-%m-%d} as provisional")
    return df


class WeeklyMortalityLoader:
    """
    Compiles CDC weekly death counts by jurisdiction and cause from 2015-present by combining:
    1. Weekly Counts of Deaths by State and Select Causes, 2014-2019
    2. Weekly Counts of Deaths by State and Select Causes, 2020-present

    Outputs a single CSV in the column layout load_weekly_deaths expects.
    """

    def __init__(self):
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'Storm-Excess-Deaths/1.0',
            'Accept': 'text/csv,application/json'
        })

        # Data sources (Socrata resource endpoints return snake_case field names)
        self.data_sources = {
            'cdc_2014_2019_weekly': {
                'url': 'https://data.cdc.gov/resource/3yf8-kanr.csv?$limit=100000',
                'description': 'CDC Weekly Counts of Deaths by State and Select Causes, 2014-2019'
            },
            'cdc_2020_present_weekly': {
                'url': 'https://data.cdc.gov/resource/muzy-jte6.csv?$limit=100000',
                'description': 'CDC Weekly Counts of Deaths by State and Select Causes, 2020-present'
            }
        }

        # Both releases name a few fields differently
        self.column_mapping = {
            'jurisdiction_of_occurrence': 'jurisdiction',
            'week_ending_date': 'weekendingdate',
            'all_cause': 'allcause',
            'natural_cause': 'naturalcause',
            'influenza_and_pneumonia_j10': 'influenza_and_pneumonia_j09_j18',
            'cerebrovascular_diseases_i60': 'cerebrovascular_diseases',
        }

    def download_dataset(self, source_key: str, max_retries: int = 3) -> pd.DataFrame:
        """Download a dataset with retry logic."""
        source = self.data_sources[source_key]
        url = source['url']
        description = source['description']

        logger.info(f"Downloading {description}...")

        for attempt in range(max_retries):
            try:
                response = self.session.get(url, timeout=60)
                response.raise_for_status()

                df = pd.read_csv(StringIO(response.text))
                logger.info(f"Successfully downloaded {len(df)} records from {source_key}")
                return df

            except (requests.RequestException, pd.errors.ParserError) as e:
                logger.warning(f"Download attempt {attempt + 1} failed for {source_key}: {e}")
                if attempt == max_retries - 1:
                    logger.error(f"Failed to download {source_key} after {max_retries} attempts")
                    return pd.DataFrame()
                time.sleep(2 ** attempt)  # Exponential backoff

        return pd.DataFrame()

    def process_weekly_counts(self, df: pd.DataFrame, source_key: str) -> pd.DataFrame:
        """Rename a raw CDC release to the canonical columns and keep 2015 onwards."""
        if df.empty:
            return df

        logger.info(f"Processing {source_key}...")

        df = df.rename(columns=self.column_mapping)

        if 'weekendingdate' not in df.columns or 'jurisdiction' not in df.columns:
            logger.warning(f"{source_key}: no jurisdiction/week-ending date columns in {df.columns.tolist()}")
            return pd.DataFrame()

        df['weekendingdate'] = pd.to_datetime(df['weekendingdate'].astype(str), format='ISO8601',
                                              errors='coerce').dt.normalize()
        df = df[df['weekendingdate'].notna() & (df['weekendingdate'] >= FIRST_WEEK_ENDING)].copy()

        columns_to_keep = ['jurisdiction', 'mmwryear', 'mmwrweek', 'weekendingdate',
                           'allcause', 'naturalcause'] + CAUSE_COLUMNS
        available_columns = [col for col in columns_to_keep if col in df.columns]
        df = df[available_columns].copy()
        df['data_source'] = source_key

        logger.info(f"Processed {source_key}: {len(df)} records, {df['jurisdiction'].nunique()} jurisdictions")
        return df

    def combine_nyc_with_ny(self, df: pd.DataFrame) -> pd.DataFrame:
        """Fold New York City into New York state, summing every count column."""
        if df.empty:
            return df

        is_nyc = df['jurisdiction'] == 'New York City'
        if not is_nyc.any():
            return df

        logger.info("Combining New York City with New York state...")
        df = df.copy()
        df.loc[is_nyc, 'jurisdiction'] = 'New York'

        count_cols = [col for col in ['allcause', 'naturalcause'] + CAUSE_COLUMNS if col in df.columns]
        key_cols = ['jurisdiction', 'weekendingdate']
        other_cols = [col for col in df.columns if col not in count_cols + key_cols]

        aggregations = {col: lambda s: s.sum(min_count=1) for col in count_cols}
        aggregations.update({col: 'first' for col in other_cols})
        df = df.groupby(key_cols, as_index=False).agg(aggregations)

        ny_total_deaths = df[df['jurisdiction'] == 'New York']['allcause'].sum()
        logger.info(f"Combined New York total deaths: {ny_total_deaths:,.0f}")
        return df

    def merge_and_clean_datasets(self, *datasets, combine_nyc: bool = False) -> pd.DataFrame:
        """Merge the processed releases into a single deduplicated table."""
        logger.info("Merging and cleaning datasets...")

        datasets_to_merge = [dataset for dataset in datasets if dataset is not None and not dataset.empty]
        if not datasets_to_merge:
            logger.error("No datasets available for merging")
            return pd.DataFrame()

        df = pd.concat(datasets_to_merge, ignore_index=True, sort=False)
        logger.info(f"Combined dataset: {len(df)} records")

        # Later releases revise earlier ones
        df = df.drop_duplicates(subset=['jurisdiction', 'weekendingdate'], keep='last')
        logger.info(f"After deduplication: {len(df)} records")

        if combine_nyc:
            df = self.combine_nyc_with_ny(df)

        derived_years = df['weekendingdate'].apply(get_mmwr_year)
        if 'mmwryear' in df.columns:
            df['mmwryear'] = df['mmwryear'].fillna(derived_years)
        else:
            df['mmwryear'] = derived_years

        df = df.sort_values(['jurisdiction', 'weekendingdate']).reset_index(drop=True)
        logger.info(f"Final cleaned dataset: {len(df)} records")
        return df

    def save_to_csv(self, df: pd.DataFrame, filename: str):
        """Save the compiled table with ISO dates."""
        try:
            parent = os.path.dirname(filename)
            if parent:
                os.makedirs(parent, exist_ok=True)

            out = df.copy()
            out['weekendingdate'] = out['weekendingdate'].dt.strftime('%Y-%m-%d')
            out.to_csv(filename, index=False)

            file_size_mb = os.path.getsize(filename) / 1024 / 1024

            print("\n" + "=" * 70)
            print("WEEKLY MORTALITY DATA SAVED")
            print("=" * 70)
            print(f"File: {filename}")
            print(f"File size: {file_size_mb:.2f} MB")
            print(f"Records: {len(out):,}")
            print(f"Jurisdictions: {out['jurisdiction'].nunique()}")
            print(f"Weeks: {out['weekendingdate'].min()} to {out['weekendingdate'].max()}")
            print(f"Total deaths: {np.nansum(out['allcause']):,.0f}")

        except OSError as e:
            logger.error(f"Error saving file: {e}")
            raise

    def compile_weekly_counts(self, output_filename: str = 'data/weekly_deaths_by_cause.csv',
                              combine_nyc: bool = False) -> pd.DataFrame:
        """Download both CDC releases and write the combined analysis input."""
        all_datasets = []

        for step, source_key in enumerate(self.data_sources, start=1):
            print(f"Step {step}: Downloading {self.data_sources[source_key]['description']}...")
            raw = self.download_dataset(source_key)
            processed = self.process_weekly_counts(raw, source_key)
            if not processed.empty:
                all_datasets.append(processed)
                print(f"✓ Processed {len(processed)} records")
            else:
                print(f"⚠ No usable records from {source_key}")

        if not all_datasets:
            raise MalformedInputError("No weekly mortality data could be downloaded")

        final_df = self.merge_and_clean_datasets(*all_datasets, combine_nyc=combine_nyc)
        self.save_to_csv(final_df, output_filename)
        return final_df


def main():
    """Download and compile the weekly deaths input file."""
    try:
        loader = WeeklyMortalityLoader()
        loader.compile_weekly_counts()

    except KeyboardInterrupt:
        print("\n\nProcess interrupted by user.")
    except Exception as e:
        print(f"\n\nAn error occurred: {e}")
        print("Please check your internet connection and try again.")
        logger.exception("Full error details:")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
