import logging
from typing import List, Dict, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import dmatrix, build_design_matrices

logger = logging.getLogger(__name__)

TRAINING_CUTOFF = pd.Timestamp('2020-01-01')

# Probabilities for the seasonal knot quantiles
KNOT_PROBABILITIES = np.linspace(0, 1, 10)

# Boundary knots cover every possible MMWR week so forecast weeks stay inside the basis
FIRST_MMWR_WEEK = 1
LAST_MMWR_WEEK = 53

PREDICTION_ALPHA = 0.05

EPOCH = pd.Timestamp('1970-01-01')


class InsufficientTrainingDataError(ValueError):
    """Raised when a jurisdiction has too few pre-2020 weeks to fit the seasonal model."""

    def __init__(self, jurisdiction: str, training_weeks: int, required_weeks: int):
        self.jurisdiction = jurisdiction
        self.training_weeks = training_weeks
        self.required_weeks = required_weeks
        super().__init__(
            f"Insufficient training data for {jurisdiction}: {training_weeks} weeks before "
            f"{TRAINING_CUTOFF:%Y-%m-%d}, at least {required_weeks} required"
        )


def seasonal_knots(mmwr_weeks) -> List[float]:
    """Interior knots at the quantiles of the training weeks, boundaries and repeats removed."""
    quantiles = np.quantile(np.asarray(mmwr_weeks, dtype=float), KNOT_PROBABILITIES)
    interior = [float(q) for q in np.unique(quantiles) if FIRST_MMWR_WEEK < q < LAST_MMWR_WEEK]
    return interior


def spline_formula(knots: List[float]) -> str:
    knots_literal = '(' + ''.join(f'{k!r}, ' for k in knots) + ')'
    return (f"bs(mmwrweek, knots={knots_literal}, degree=3, include_intercept=False, "
            f"lower_bound={FIRST_MMWR_WEEK}, upper_bound={LAST_MMWR_WEEK}) - 1")


def _trend(dates: pd.Series) -> np.ndarray:
    # Days since epoch, matching a numeric calendar date
    return ((dates - EPOCH).dt.days).to_numpy(dtype=float)


def _design(spline_basis: pd.DataFrame, dates: pd.Series) -> pd.DataFrame:
    X = spline_basis.reset_index(drop=True).copy()
    X.columns = [f'season_{i}' for i in range(X.shape[1])]
    X.insert(0, 'trend', _trend(dates.reset_index(drop=True)))
    X = sm.add_constant(X, has_constant='add')
    return X.astype(float)


def fit_expected_deaths(jurisdiction_df: pd.DataFrame,
                        training_cutoff: pd.Timestamp = TRAINING_CUTOFF) -> pd.DataFrame:
    """
    Fit the expected deaths model for one jurisdiction and predict every week.

    The model is allcause ~ linear trend in week-ending date + B-spline of
    MMWR week, trained on weeks before the cutoff and applied to all weeks.

    Args:
        jurisdiction_df: All weekly records of a single jurisdiction
        training_cutoff: Weeks ending strictly before this date are used for training

    Returns:
        Copy of the input sorted by week-ending date with fit, lwr and upr columns

    Raises:
        InsufficientTrainingDataError: too few training weeks for the requested knots
    """
    full = jurisdiction_df.sort_values('weekendingdate').reset_index(drop=True)
    jurisdiction = full['jurisdiction'].iloc[0] if not full.empty else '<empty>'

    train = full[full['weekendingdate'] < training_cutoff]
    required_weeks = len(KNOT_PROBABILITIES)
    if len(train) < required_weeks:
        raise InsufficientTrainingDataError(jurisdiction, len(train), required_weeks)

    knots = seasonal_knots(train['mmwrweek'])
    spline_basis = dmatrix(spline_formula(knots), train[['mmwrweek']], return_type='dataframe')
    X_train = _design(spline_basis, train['weekendingdate'])

    # Need residual degrees of freedom for a prediction interval
    if len(train) <= X_train.shape[1]:
        raise InsufficientTrainingDataError(jurisdiction, len(train), X_train.shape[1] + 1)

    y_train = train['allcause'].to_numpy(dtype=float)
    model = sm.OLS(y_train, X_train).fit()

    (full_basis,) = build_design_matrices([spline_basis.design_info], full[['mmwrweek']],
                                          return_type='dataframe')
    X_full = _design(full_basis, full['weekendingdate'])
    prediction = model.get_prediction(X_full).summary_frame(alpha=PREDICTION_ALPHA)

    result = full.copy()
    result['fit'] = prediction['mean'].to_numpy()
    result['lwr'] = prediction['obs_ci_lower'].to_numpy()
    result['upr'] = prediction['obs_ci_upper'].to_numpy()

    logger.info(f"{jurisdiction}: trained on {len(train)} weeks with {len(knots)} seasonal knots, "
                f"predicted {len(result)} weeks (R² {model.rsquared:.3f})")
    return result


def estimate_expected_deaths(df: pd.DataFrame,
                             isolate_failures: bool = False,
                             training_cutoff: pd.Timestamp = TRAINING_CUTOFF
                             ) -> Tuple[pd.DataFrame, List[Dict[str, str]]]:
    """
    Fit one model per jurisdiction and stack the predictions.

    By default the first jurisdiction that cannot be fitted aborts the whole
    run. With isolate_failures=True such jurisdictions are logged, left out of
    the result and reported in the returned failure list instead.
    """
    jurisdictions = sorted(df['jurisdiction'].unique())
    logger.info(f"Fitting expected deaths models for {len(jurisdictions)} jurisdictions...")

    results = []
    failures = []
    for jurisdiction in jurisdictions:
        subset = df[df['jurisdiction'] == jurisdiction]
        try:
            results.append(fit_expected_deaths(subset, training_cutoff=training_cutoff))
        except InsufficientTrainingDataError as e:
            if not isolate_failures:
                logger.error(str(e))
                raise
            logger.warning(f"Skipping {jurisdiction}: {e}")
            failures.append({'jurisdiction': jurisdiction, 'error': str(e)})

    if results:
        expected = pd.concat(results, ignore_index=True)
    else:
        expected = df.iloc[0:0].assign(fit=pd.Series(dtype=float), lwr=pd.Series(dtype=float),
                                       upr=pd.Series(dtype=float))

    logger.info(f"Expected deaths computed for {len(results)} jurisdictions, {len(failures)} failed")
    return expected, failures
