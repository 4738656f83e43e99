"""Data loading, preparation, and validation utilities."""

from src.data.cleaners import (
    select_and_rename,
    recode_categorical,
    recode_numeric,
    apply_recodes,
    filter_eligible,
    add_complete_case_flag,
    prepare_respondents,
)
from src.data.loaders import (
    load_config,
    load_merged_dataset,
)
from src.data.validators import validate_respondents
