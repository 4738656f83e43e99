"""
Respondent Data Validation Utilities

Precondition checks that must hold before survey-weighted estimation.
Failures of merge keys or design fields are fatal; range checks only warn.
"""

import logging
from typing import Dict, List, Optional, Tuple

import pandas as pd

from src.data.loaders import load_config

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def check_required_columns(df: pd.DataFrame, columns: List[str]) -> None:
    """Raise KeyError if any of ``columns`` is absent."""
    missing = [col for col in columns if col not in df.columns]
    if missing:
        logger.error(f"Missing required columns: {missing}")
        raise KeyError(f"Missing required columns: {missing}")


def check_unique_identifier(df: pd.DataFrame, id_columns: List[str]) -> None:
    """
    Ensure the composite identifier is complete and unique per respondent.

    Parameters
    ----------
    df : pd.DataFrame
        Respondent table.
    id_columns : list
        Household, family and person identifier columns.
    """
    check_required_columns(df, id_columns)

    n_missing = int(df[id_columns].isna().any(axis=1).sum())
    if n_missing > 0:
        raise ValueError(f"{n_missing} respondents have an incomplete identifier")

    n_duplicates = int(df.duplicated(subset=id_columns).sum())
    if n_duplicates > 0:
        raise ValueError(f"Found {n_duplicates} duplicate respondent identifiers")


def check_design_fields(
    df: pd.DataFrame,
    cluster: str,
    strata: str,
    weights: str,
) -> None:
    """
    Ensure every respondent carries a cluster, a stratum and a positive weight.
    """
    check_required_columns(df, [cluster, strata, weights])

    for col in (cluster, strata, weights):
        n_missing = int(df[col].isna().sum())
        if n_missing > 0:
            raise ValueError(f"Design field {col} is missing for {n_missing} respondents")

    n_nonpositive = int((df[weights] <= 0).sum())
    if n_nonpositive > 0:
        raise ValueError(f"{n_nonpositive} respondents have a non-positive weight")


def check_ranges(
    df: pd.DataFrame,
    range_config: Optional[Dict[str, Tuple[float, float]]] = None
) -> pd.DataFrame:
    """
    Check that values are within expected ranges.

    Parameters
    ----------
    df : pd.DataFrame
        Input dataframe.
    range_config : dict, optional
        Mapping of column name to (min, max) tuple.
        If None, loads from config.yaml.

    Returns
    -------
    pd.DataFrame
        DataFrame with columns: variable, n_below_min, n_above_max, n_out_of_range
    """
    if range_config is None:
        config = load_config()
        range_config = config.get('validation', {}).get('ranges', {})

    results = []

    for col, (min_val, max_val) in range_config.items():
        if col not in df.columns:
            logger.warning(f"Column {col} not found in dataframe")
            continue

        values = df[col].dropna()
        n_below = (values < min_val).sum()
        n_above = (values > max_val).sum()

        results.append({
            'variable': col,
            'min_expected': min_val,
            'max_expected': max_val,
            'actual_min': values.min() if len(values) > 0 else None,
            'actual_max': values.max() if len(values) > 0 else None,
            'n_below_min': int(n_below),
            'n_above_max': int(n_above),
            'n_out_of_range': int(n_below + n_above),
        })

    results_df = pd.DataFrame(
        results,
        columns=['variable', 'min_expected', 'max_expected', 'actual_min',
                 'actual_max', 'n_below_min', 'n_above_max', 'n_out_of_range'],
    )

    total_violations = results_df['n_out_of_range'].sum()
    if total_violations > 0:
        logger.warning(f"Found {total_violations} values out of expected ranges")
        for _, row in results_df[results_df['n_out_of_range'] > 0].iterrows():
            logger.warning(f"  {row['variable']}: {row['n_out_of_range']} out of range")
    else:
        logger.info("All values within expected ranges")

    return results_df


def validate_respondents(df: pd.DataFrame, config: Optional[dict] = None) -> pd.DataFrame:
    """
    Run all precondition checks on the prepared respondent table.

    Identifier and design-field failures raise; range violations are
    reported in the returned table.
    """
    config = config or load_config()
    design = config["design"]

    check_unique_identifier(df, config["data"]["id_columns"])
    check_design_fields(df, design["cluster"], design["strata"], design["weights"])
    range_results = check_ranges(df, config.get("validation", {}).get("ranges", {}))

    logger.info("Respondent data validation PASSED")
    return range_results
