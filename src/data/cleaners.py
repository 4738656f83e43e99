"""
Respondent Data Preparation

Select, rename and recode the analysis fields, restrict to eligible sample
adults, and flag complete cases. Survey sentinel codes (refused, not
ascertained, don't know) become missing values rather than categories.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from src.data.loaders import load_config

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def select_and_rename(df: pd.DataFrame, column_map: Mapping[str, str]) -> pd.DataFrame:
    """
    Keep the configured raw fields and rename them to analysis names.

    Parameters
    ----------
    df : pd.DataFrame
        Merged raw dataset.
    column_map : dict
        Mapping of raw field name -> analysis name.

    Returns
    -------
    pd.DataFrame
        Dataset restricted to the mapped fields.
    """
    missing = [col for col in column_map if col not in df.columns]
    if missing:
        raise KeyError(f"Required fields missing from dataset: {missing}")

    out = df[list(column_map)].rename(columns=dict(column_map))
    logger.info(f"Selected {len(out.columns)} fields for {len(out):,} respondents")
    return out


def recode_categorical(
    series: pd.Series,
    mapping: Mapping,
    missing_codes: Optional[Iterable] = None,
) -> pd.Series:
    """
    Map raw integer codes to labels.

    Sentinel codes and any code not present in ``mapping`` become NaN.

    Parameters
    ----------
    series : pd.Series
        Raw codes.
    mapping : dict
        Raw code -> label.
    missing_codes : iterable, optional
        Codes that mean refused / not ascertained / don't know.

    Returns
    -------
    pd.Series
        Recoded values.
    """
    values = series.copy()
    if missing_codes is not None:
        values = values.mask(values.isin(list(missing_codes)))
    return values.map(dict(mapping))


def recode_numeric(
    series: pd.Series,
    valid_range: Optional[Sequence[float]] = None,
    missing_codes: Optional[Iterable] = None,
) -> pd.Series:
    """
    Clean a numeric field: sentinel codes and out-of-range values become NaN.
    """
    values = pd.to_numeric(series, errors="coerce").astype(float)
    if missing_codes is not None:
        values = values.mask(values.isin(list(missing_codes)))
    if valid_range is not None:
        low, high = valid_range
        values = values.mask((values < low) | (values > high))
    return values


def apply_recodes(
    df: pd.DataFrame,
    recode_config: Optional[dict] = None,
) -> Tuple[pd.DataFrame, Dict]:
    """
    Apply every configured recode.

    Parameters
    ----------
    df : pd.DataFrame
        Renamed dataset.
    recode_config : dict, optional
        The ``recodes`` section of config.yaml.

    Returns
    -------
    tuple
        (recoded_df, recode_log) where recode_log counts values turned
        missing per column.
    """
    if recode_config is None:
        recode_config = load_config()["recodes"]

    df = df.copy()
    recode_log = {}

    for col, rule in recode_config.get("categorical", {}).items():
        if col not in df.columns:
            raise KeyError(f"Recode column not found: {col}")
        before = df[col].notna().sum()
        df[col] = recode_categorical(df[col], rule["codes"], rule.get("missing"))
        recode_log[col] = int(before - df[col].notna().sum())

    for col, rule in recode_config.get("numeric", {}).items():
        if col not in df.columns:
            raise KeyError(f"Recode column not found: {col}")
        before = df[col].notna().sum()
        df[col] = recode_numeric(df[col], rule.get("range"), rule.get("missing"))
        recode_log[col] = int(before - df[col].notna().sum())

    total = sum(recode_log.values())
    logger.info(f"Recoded {len(recode_log)} columns; {total:,} values set to missing")
    for col, n in recode_log.items():
        if n > 0:
            logger.info(f"  {col}: {n:,} sentinel/unmatched codes -> missing")

    return df, recode_log


def filter_eligible(
    df: pd.DataFrame,
    outcome_codes: Optional[Iterable[int]] = None,
    sample_adult_code: Optional[int] = None,
    outcome_col: str = "interview_outcome",
    sample_adult_col: str = "sample_adult_flag",
) -> pd.DataFrame:
    """
    Keep complete or partial interviews with the sample-adult flag set.

    Applying the filter twice returns the same rows as applying it once.
    """
    if outcome_codes is None or sample_adult_code is None:
        eligibility = load_config()["data"]["eligibility"]
        if outcome_codes is None:
            outcome_codes = eligibility["interview_outcome"]
        if sample_adult_code is None:
            sample_adult_code = eligibility["sample_adult_flag"]

    for col in (outcome_col, sample_adult_col):
        if col not in df.columns:
            raise KeyError(f"Eligibility field not found: {col}")

    mask = df[outcome_col].isin(list(outcome_codes)) & (df[sample_adult_col] == sample_adult_code)
    out = df.loc[mask].copy()
    logger.info(f"Eligible sample adults: {len(out):,} of {len(df):,} respondents")
    return out


def add_complete_case_flag(
    df: pd.DataFrame,
    fields: Optional[List[str]] = None,
    flag_col: str = "complete_case",
) -> pd.DataFrame:
    """
    Add a boolean column that is True iff none of ``fields`` is missing.

    No rows are dropped.
    """
    if fields is None:
        fields = load_config()["recodes"]["complete_case_fields"]

    missing = [col for col in fields if col not in df.columns]
    if missing:
        raise KeyError(f"Complete-case fields not found: {missing}")

    df = df.copy()
    df[flag_col] = df[list(fields)].notna().all(axis=1)
    n_complete = int(df[flag_col].sum())
    pct = n_complete / len(df) * 100 if len(df) else np.nan
    logger.info(f"Complete cases: {n_complete:,} of {len(df):,} ({pct:.1f}%)")
    return df


def prepare_respondents(
    raw: pd.DataFrame,
    config: Optional[dict] = None,
) -> Tuple[pd.DataFrame, Dict]:
    """
    Main preparation pipeline.

    Steps:
    1. Select and rename the analysis fields
    2. Recode raw codes to labels (sentinels -> missing)
    3. Restrict to eligible sample adults
    4. Flag complete cases

    Parameters
    ----------
    raw : pd.DataFrame
        Merged raw dataset.
    config : dict, optional
        Loaded configuration.

    Returns
    -------
    tuple
        (prepared_df, preparation_report)
    """
    config = config or load_config()

    logger.info("=" * 60)
    logger.info("Preparing respondent data")
    logger.info(f"  Input shape: {raw.shape}")
    logger.info("=" * 60)

    report = {'input_rows': len(raw), 'steps': {}}

    df = select_and_rename(raw, config["data"]["columns"])

    df, recode_log = apply_recodes(df, config["recodes"])
    report['steps']['recodes'] = recode_log

    eligibility = config["data"]["eligibility"]
    df = filter_eligible(
        df,
        outcome_codes=eligibility["interview_outcome"],
        sample_adult_code=eligibility["sample_adult_flag"],
    )
    report['steps']['eligible_rows'] = len(df)

    df = add_complete_case_flag(df, config["recodes"]["complete_case_fields"])
    report['steps']['complete_cases'] = int(df["complete_case"].sum())
    report['output_rows'] = len(df)

    return df, report
