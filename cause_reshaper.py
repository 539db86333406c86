import logging
import re
from typing import List, Optional

import pandas as pd

from weekly_mortality_loader import CAUSE_COLUMNS

logger = logging.getLogger(__name__)

# Causes shown in the per-cause comparison charts
RESHAPED_CAUSES = [col for col in CAUSE_COLUMNS if col != 'covid_19_u071_multiple_cause_of_death']

# Applied after ICD codes are stripped and underscores replaced
LABEL_RENAMES = {
    'covid underlying cause of death': 'covid',
    'diseases of heart': 'heart disease',
    'malignant neoplasms': 'cancer',
    'cerebrovascular diseases': 'stroke',
    'diabetes mellitus': 'diabetes',
    'alzheimer disease': 'alzheimer',
    'chronic lower respiratory': 'chronic lower respiratory disease',
    'other diseases of respiratory': 'other respiratory disease',
    'nephritis nephrotic syndrome': 'kidney disease',
}

LABEL_PREFIX_RENAMES = {
    'symptoms signs and abnormal': 'other',
}

ID_COLUMNS = ['jurisdiction', 'weekendingdate', 'mmwryear', 'mmwrweek']


def normalize_cause_label(column: str) -> str:
    """
    Turn a CDC cause column name into a short label.

    Tokens carrying a digit (ICD codes such as a40, u071, or the 19 in covid_19)
    are dropped, underscores become spaces, then the fixed renames apply.
    """
    tokens = [token for token in column.lower().split('_') if token and not re.search(r'\d', token)]
    label = ' '.join(tokens)

    if label in LABEL_RENAMES:
        return LABEL_RENAMES[label]
    for prefix, renamed in LABEL_PREFIX_RENAMES.items():
        if label.startswith(prefix):
            return renamed
    return label


def reshape_causes(df: pd.DataFrame, causes: Optional[List[str]] = None) -> pd.DataFrame:
    """Long table with jurisdiction, week columns, cause label and deaths."""
    causes = RESHAPED_CAUSES if causes is None else causes
    available = [col for col in causes if col in df.columns]
    missing = [col for col in causes if col not in df.columns]
    if missing:
        logger.warning(f"Cause columns not in data, skipped: {missing}")

    id_cols = [col for col in ID_COLUMNS if col in df.columns]
    long_df = df.melt(id_vars=id_cols, value_vars=available, var_name='cause', value_name='deaths')
    long_df['cause'] = long_df['cause'].map(normalize_cause_label)
    long_df = long_df.sort_values(['jurisdiction', 'cause', 'weekendingdate']).reset_index(drop=True)

    logger.info(f"Reshaped {len(available)} causes into {len(long_df)} records")
    return long_df
