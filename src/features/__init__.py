"""Derived analysis variables."""

from src.features.builders import (
    compute_sleep_threshold,
    create_sleep_indicator,
    create_age_category,
    create_all_derived_features,
    get_model_formulas,
)
