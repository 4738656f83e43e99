"""
Survey Data Loading Utilities

Functions to load the merged respondent-level file for a study year.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import pandas as pd
import pyreadstat
import yaml

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def get_project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent.parent


def load_config(config_path: Optional[Union[str, Path]] = None) -> dict:
    """Load the project configuration."""
    if config_path is None:
        config_path = get_project_root() / "config" / "config.yaml"
    with open(config_path) as f:
        return yaml.safe_load(f)


def get_data_path(
    year: Optional[int] = None,
    raw_dir: Optional[Path] = None,
    config: Optional[dict] = None,
) -> Path:
    """
    Get the full path to the merged respondent file for a study year.

    Parameters
    ----------
    year : int, optional
        Study year. Defaults to ``study.year`` in config.yaml.
    raw_dir : Path, optional
        Path to raw data directory. Defaults to data/raw.
    config : dict, optional
        Loaded configuration.

    Returns
    -------
    Path
        Full path to the merged file.
    """
    config = config or load_config()
    if year is None:
        year = config["study"]["year"]
    if raw_dir is None:
        raw_dir = get_project_root() / config["paths"]["raw_dir"]

    filename = config["data"]["filename"].format(year=year)
    return Path(raw_dir) / str(year) / filename


def load_survey_file(filepath: Union[str, Path]) -> pd.DataFrame:
    """
    Load a single survey file.

    SAS transport (.xpt) and SAS (.sas7bdat) files are read with pyreadstat;
    .csv and .parquet with pandas.
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()

    if suffix == ".xpt":
        df, meta = pyreadstat.read_xport(str(filepath))
    elif suffix == ".sas7bdat":
        df, meta = pyreadstat.read_sas7bdat(str(filepath))
    elif suffix == ".csv":
        df = pd.read_csv(filepath)
    elif suffix == ".parquet":
        df = pd.read_parquet(filepath)
    else:
        raise ValueError(f"Unsupported file type: {filepath.name}")
    return df


def load_merged_dataset(
    year: Optional[int] = None,
    path: Optional[Union[str, Path]] = None,
    config: Optional[dict] = None,
) -> pd.DataFrame:
    """
    Load the merged respondent-level dataset for a study year.

    Parameters
    ----------
    year : int, optional
        Study year. Ignored when ``path`` is given.
    path : str or Path, optional
        Explicit path to the merged file.
    config : dict, optional
        Loaded configuration.

    Returns
    -------
    pd.DataFrame
        One row per respondent with the raw survey fields.
    """
    if path is None:
        path = get_data_path(year, config=config)
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Merged dataset not found: {path}")

    df = load_survey_file(path)
    logger.info(f"Loaded {len(df):,} respondents x {len(df.columns)} fields from {path.name}")
    return df
