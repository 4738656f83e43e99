"""
Derived Analysis Variables

Creates the recodes used by every model: the sleep indicator relative to the
design-weighted mean and the age category. Variables are derived once, after
eligibility filtering, and are not modified afterwards.
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from src.data.loaders import load_config
from src.models.survey import SurveyDesign, WeightedEstimate

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# =============================================================================
# DERIVED VARIABLE FUNCTIONS
# =============================================================================

def compute_sleep_threshold(design: SurveyDesign, variable: str = 'hours_sleep') -> WeightedEstimate:
    """
    Design-weighted mean hours of sleep over respondents with a non-missing
    value.
    """
    estimate = design.weighted_mean(variable, na_rm=True)
    logger.info(
        f"Design-weighted mean {variable}: {estimate.estimate:.3f} "
        f"(SE {estimate.std_error:.3f}, n={estimate.n:,})"
    )
    return estimate


def create_sleep_indicator(
    df: pd.DataFrame,
    threshold: float,
    variable: str = 'hours_sleep',
    name: str = 'sleep_above_mean',
) -> Tuple[pd.DataFrame, Dict]:
    """
    Create the binary sleep indicator.

    CALCULATION:
    - sleep_above_mean = 1 if hours_sleep >= threshold, else 0

    EDGE CASES:
    - Missing hours of sleep gives a missing indicator, never 0
    """
    df = df.copy()
    stats = {}

    hours = df[variable]
    df[name] = np.where(hours >= threshold, 1.0, 0.0)
    df.loc[hours.isna(), name] = np.nan

    valid = df[name].dropna()
    stats[name] = {
        'source_cols': [variable],
        'threshold': float(threshold),
        'n_valid': int(len(valid)),
        'n_above': int(valid.sum()),
        'pct_above': float(valid.mean() * 100) if len(valid) > 0 else np.nan,
    }
    logger.info(f"Created {name}: {stats[name]['n_above']:,} of {stats[name]['n_valid']:,} "
                f"at or above {threshold:.3f} hours")

    return df, stats


def create_age_category(
    df: pd.DataFrame,
    bins: Sequence[float],
    labels: Sequence[str],
    variable: str = 'age',
    name: str = 'age_category',
) -> Tuple[pd.DataFrame, Dict]:
    """
    Create age categories with left-closed bins, e.g. [18, 35) -> '18-34'.

    Box-Tidwell checks on continuous age motivate this categorisation.
    """
    df = df.copy()
    stats = {}

    categories = pd.cut(df[variable], bins=list(bins), labels=list(labels), right=False)
    df[name] = categories.astype(object).where(categories.notna(), np.nan)

    counts = df[name].value_counts()
    stats[name] = {
        'source_cols': [variable],
        'n_valid': int(df[name].notna().sum()),
        'counts': {str(k): int(v) for k, v in counts.items()},
    }
    logger.info(f"Created {name}: {stats[name]['counts']}")

    return df, stats


# =============================================================================
# MAIN FEATURE PIPELINE
# =============================================================================

def create_all_derived_features(
    design: SurveyDesign,
    config: Optional[dict] = None,
    sleep_variable: str = 'hours_sleep',
) -> Tuple[SurveyDesign, Dict]:
    """
    Add the derived variables to the survey design.

    The sleep threshold is estimated once on the eligible design and reused
    for every downstream model population.

    Parameters
    ----------
    design : SurveyDesign
        Design over eligible respondents.
    config : dict, optional
        Loaded configuration.
    sleep_variable : str
        Hours-of-sleep column.

    Returns
    -------
    tuple
        (design_with_features, feature_stats)
    """
    config = config or load_config()
    features = config['features']

    logger.info("=" * 60)
    logger.info("Creating derived variables")
    logger.info("=" * 60)

    all_stats = {}

    threshold = compute_sleep_threshold(design, sleep_variable)
    all_stats['mean_sleep'] = {
        'estimate': threshold.estimate,
        'std_error': threshold.std_error,
        'n': threshold.n,
    }

    df = design.data
    df, stats = create_sleep_indicator(df, threshold.estimate, variable=sleep_variable)
    all_stats.update(stats)

    df, stats = create_age_category(df, features['age_bins'], features['age_labels'])
    all_stats.update(stats)

    design = design.update(
        sleep_above_mean=df['sleep_above_mean'],
        age_category=df['age_category'],
    )

    logger.info(f"Created {len(all_stats) - 1} derived variables")
    return design, all_stats


def get_model_formulas(config: Optional[dict] = None) -> Dict[str, str]:
    """Sparse and full model formulas from config, whitespace-normalised."""
    config = config or load_config()
    models = config['models']
    return {name: " ".join(models[name].split()) for name in ('sparse', 'full')}
