"""
Complex survey design for design-based estimation.

This module provides:
- SurveyDesign: respondent data plus cluster, stratum and weight fields
- Immutable domain subsetting (excluded rows keep their PSU and stratum)
- Design-weighted means with Taylor-linearisation standard errors
- The with-replacement variance of estimated totals used by every
  design-based estimator in the package
"""

import copy
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

LONELY_PSU_OPTIONS = ('fail', 'remove', 'adjust')

Condition = Union[str, pd.Series, np.ndarray, Callable[[pd.DataFrame], pd.Series]]


@dataclass(frozen=True)
class WeightedEstimate:
    """Design-weighted point estimate with its linearised standard error."""

    variable: str
    estimate: float
    std_error: float
    n: int

    def conf_int(self, level: float = 0.95) -> Tuple[float, float]:
        z = stats.norm.ppf(0.5 + level / 2)
        return self.estimate - z * self.std_error, self.estimate + z * self.std_error


class SurveyDesign:
    """
    Stratified, clustered, weighted survey design.

    Parameters
    ----------
    data : pd.DataFrame
        One row per respondent. The index must be unique.
    cluster : str
        Primary sampling unit column.
    strata : str
        Stratum column.
    weights : str
        Sampling weight column.
    nest : bool, default True
        Cluster ids are only unique within strata. With ``nest=False`` a
        cluster id found in two strata raises ValueError.
    lonely_psu : {'fail', 'remove', 'adjust'}, default 'fail'
        Variance contribution of strata with a single PSU: raise, contribute
        nothing, or centre the PSU total on the grand mean of PSU totals.

    Notes
    -----
    Designs are never modified in place. ``subset`` and ``update`` return new
    designs that share the cluster and stratum structure of the original, so
    rows outside a domain still count towards the number of PSUs per stratum
    and contribute zero scores to the variance.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        cluster: str,
        strata: str,
        weights: str,
        nest: bool = True,
        lonely_psu: str = 'fail',
    ):
        if lonely_psu not in LONELY_PSU_OPTIONS:
            raise ValueError(f"lonely_psu must be one of {LONELY_PSU_OPTIONS}, got {lonely_psu!r}")

        missing_cols = [col for col in (cluster, strata, weights) if col not in data.columns]
        if missing_cols:
            raise KeyError(f"Design fields not found in data: {missing_cols}")
        if not data.index.is_unique:
            raise ValueError("Design data must have a unique index")

        for col in (cluster, strata, weights):
            n_missing = int(data[col].isna().sum())
            if n_missing > 0:
                raise ValueError(f"Design field {col} is missing for {n_missing} rows")
        if (data[weights] <= 0).any():
            raise ValueError(f"Design weights in {weights} must be positive")

        self._data = data.copy()
        self.cluster = cluster
        self.strata = strata
        self.weights_column = weights
        self.nest = nest
        self.lonely_psu = lonely_psu

        self._strata_codes = self._data.groupby(strata, sort=True).ngroup().to_numpy()
        if nest:
            self._psu_codes = self._data.groupby([strata, cluster], sort=True).ngroup().to_numpy()
        else:
            self._psu_codes = self._data.groupby(cluster, sort=True).ngroup().to_numpy()
            strata_per_psu = pd.Series(self._strata_codes).groupby(self._psu_codes).nunique()
            if (strata_per_psu > 1).any():
                raise ValueError(
                    f"{int((strata_per_psu > 1).sum())} clusters appear in more than one stratum; "
                    "use nest=True if cluster ids are only unique within strata"
                )
        self._psu_stratum = (
            pd.Series(self._strata_codes).groupby(self._psu_codes).first().to_numpy()
        )
        self._weights = self._data[weights].to_numpy(dtype=float)
        self._domain = np.ones(len(self._data), dtype=bool)

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def __repr__(self) -> str:
        return (
            f"SurveyDesign(n={self.n_obs:,} of {len(self._data):,}, "
            f"psu={self.n_psu}, strata={self.n_strata}, nest={self.nest})"
        )

    def __len__(self) -> int:
        return self.n_obs

    @property
    def data(self) -> pd.DataFrame:
        """All rows of the design, including those outside the domain."""
        return self._data.copy()

    @property
    def variables(self) -> pd.DataFrame:
        """Rows inside the current domain."""
        return self._data.loc[self._domain].copy()

    @property
    def domain(self) -> pd.Series:
        return pd.Series(self._domain.copy(), index=self._data.index, name='domain')

    @property
    def weights(self) -> np.ndarray:
        """Sampling weights, zero outside the domain."""
        return np.where(self._domain, self._weights, 0.0)

    @property
    def n_obs(self) -> int:
        return int(self._domain.sum())

    @property
    def n_psu(self) -> int:
        return int(self._psu_stratum.shape[0])

    @property
    def n_strata(self) -> int:
        return int(self._strata_codes.max() + 1) if len(self._strata_codes) else 0

    @property
    def degrees_of_freedom(self) -> int:
        """Number of PSUs minus number of strata among rows in the domain."""
        n_psu = np.unique(self._psu_codes[self._domain]).shape[0]
        n_strata = np.unique(self._strata_codes[self._domain]).shape[0]
        return int(n_psu - n_strata)

    def positions(self, index: pd.Index) -> np.ndarray:
        """Row positions of ``index`` labels in the design data."""
        positions = self._data.index.get_indexer(index)
        if (positions < 0).any():
            raise KeyError("Index labels not found in design data")
        return positions

    # -------------------------------------------------------------------------
    # Immutable views
    # -------------------------------------------------------------------------

    def _replace(self, **attrs) -> 'SurveyDesign':
        new = copy.copy(self)
        for name, value in attrs.items():
            setattr(new, name, value)
        return new

    def _evaluate_condition(self, condition: Condition) -> np.ndarray:
        if isinstance(condition, str):
            mask = self._data.eval(condition)
        elif callable(condition):
            mask = condition(self._data)
        else:
            mask = condition

        if isinstance(mask, pd.Series):
            mask = mask.reindex(self._data.index)
        else:
            mask = np.asarray(mask)
            if mask.shape != (len(self._data),):
                raise ValueError(
                    f"Condition has shape {mask.shape}, expected ({len(self._data)},)"
                )
            mask = pd.Series(mask, index=self._data.index)

        # Missing condition values exclude the row
        return mask.eq(True).to_numpy()

    def subset(self, condition: Condition) -> 'SurveyDesign':
        """
        Restrict the domain to rows satisfying ``condition``.

        Parameters
        ----------
        condition : str, pd.Series, np.ndarray or callable
            Boolean condition. Strings are evaluated with ``DataFrame.eval``,
            callables receive the full design data. Series are aligned on the
            index; missing values count as False.

        Returns
        -------
        SurveyDesign
            New design whose domain is the intersection of the current domain
            and ``condition``.
        """
        mask = self._evaluate_condition(condition)
        return self._replace(_domain=self._domain & mask)

    def update(self, **columns) -> 'SurveyDesign':
        """
        Return a new design with added or replaced columns.

        Values may be Series (aligned on the index), arrays, scalars or
        callables receiving the design data.
        """
        protected = {self.cluster, self.strata, self.weights_column}
        clash = protected.intersection(columns)
        if clash:
            raise ValueError(f"Design fields cannot be replaced: {sorted(clash)}")

        data = self._data.copy()
        for name, value in columns.items():
            if callable(value):
                value = value(data)
            data[name] = value
        return self._replace(_data=data)

    # -------------------------------------------------------------------------
    # Variance of totals
    # -------------------------------------------------------------------------

    def total_covariance(self, scores: np.ndarray) -> np.ndarray:
        """
        Design-based covariance of estimated totals.

        Uses the with-replacement (ultimate cluster) estimator
        ``sum_h n_h / (n_h - 1) * sum_i (t_hi - tbar_h)(t_hi - tbar_h)'``
        where ``t_hi`` are PSU totals of the per-row scores.

        Parameters
        ----------
        scores : np.ndarray
            Array of shape (n_rows,) or (n_rows, p), one row per design row
            (all rows, not just the domain). Rows outside the domain are
            treated as zero.

        Returns
        -------
        np.ndarray
            (p, p) covariance matrix.
        """
        scores = np.asarray(scores, dtype=float)
        if scores.ndim == 1:
            scores = scores[:, None]
        if scores.shape[0] != len(self._data):
            raise ValueError(
                f"Scores have {scores.shape[0]} rows, design has {len(self._data)}"
            )
        scores = np.where(self._domain[:, None], scores, 0.0)

        psu_totals = pd.DataFrame(scores).groupby(self._psu_codes, sort=True).sum().to_numpy()
        grand_mean = psu_totals.mean(axis=0)

        p = scores.shape[1]
        cov = np.zeros((p, p))
        for h in range(self.n_strata):
            totals = psu_totals[self._psu_stratum == h]
            n_h = totals.shape[0]
            if n_h < 2:
                if self.lonely_psu == 'fail':
                    raise ValueError(
                        f"Stratum {h} has a single PSU; set lonely_psu to 'remove' or 'adjust'"
                    )
                if self.lonely_psu == 'remove':
                    continue
                centred = totals - grand_mean
                cov += centred.T @ centred
                continue
            centred = totals - totals.mean(axis=0)
            cov += n_h / (n_h - 1) * (centred.T @ centred)
        return cov

    # -------------------------------------------------------------------------
    # Means and proportions
    # -------------------------------------------------------------------------

    def _mean_of(self, values: pd.Series, name: str, na_rm: bool) -> WeightedEstimate:
        values = pd.to_numeric(values, errors='raise').astype(float)
        design = self
        n_missing = int((values.isna().to_numpy() & self._domain).sum())
        if n_missing > 0:
            if not na_rm:
                raise ValueError(f"{name} has {n_missing} missing values in the domain")
            design = self.subset(values.notna())

        w = design.weights
        total_weight = w.sum()
        if total_weight <= 0:
            raise ValueError(f"No observations in the domain to estimate the mean of {name}")

        y = values.fillna(0.0).to_numpy()
        estimate = float(np.dot(w, y) / total_weight)
        linearised = w * (y - estimate) / total_weight
        variance = design.total_covariance(linearised)[0, 0]
        return WeightedEstimate(
            variable=name,
            estimate=estimate,
            std_error=float(np.sqrt(variance)),
            n=design.n_obs,
        )

    def weighted_mean(self, variable: str, na_rm: bool = True) -> WeightedEstimate:
        """
        Design-weighted mean of a numeric variable over the domain.

        Parameters
        ----------
        variable : str
            Numeric (or boolean) column.
        na_rm : bool, default True
            Drop missing values from the domain. When False, missing values
            in the domain raise ValueError.

        Returns
        -------
        WeightedEstimate
        """
        if variable not in self._data.columns:
            raise KeyError(f"Variable not found in design data: {variable}")
        return self._mean_of(self._data[variable], variable, na_rm)

    def weighted_mean_by(self, variable: str, by: str, level: float = 0.95) -> pd.DataFrame:
        """
        Design-weighted mean of ``variable`` within each level of ``by``.

        Each level is estimated as a domain of the full design. Missing
        ``by`` values are excluded.
        """
        if by not in self._data.columns:
            raise KeyError(f"Variable not found in design data: {by}")

        levels = sorted(self._data.loc[self._domain, by].dropna().unique())
        rows = []
        for value in levels:
            est = self.subset(self._data[by] == value).weighted_mean(variable)
            ci_lower, ci_upper = est.conf_int(level)
            rows.append({
                by: value,
                'estimate': est.estimate,
                'std_error': est.std_error,
                'ci_lower': ci_lower,
                'ci_upper': ci_upper,
                'n': est.n,
            })
        return pd.DataFrame(rows, columns=[by, 'estimate', 'std_error', 'ci_lower', 'ci_upper', 'n'])

    def weighted_proportions(self, variable: str, level: float = 0.95) -> pd.DataFrame:
        """
        Design-weighted share of each category of ``variable``.

        Shares are computed among rows with a non-missing value.
        """
        if variable not in self._data.columns:
            raise KeyError(f"Variable not found in design data: {variable}")

        values = self._data[variable]
        categories = sorted(values[self._domain].dropna().unique(), key=str)
        rows = []
        for category in categories:
            indicator = (values == category).astype(float).where(values.notna())
            est = self._mean_of(indicator, f"{variable}={category}", na_rm=True)
            ci_lower, ci_upper = est.conf_int(level)
            rows.append({
                'variable': variable,
                'level': category,
                'proportion': est.estimate,
                'std_error': est.std_error,
                'ci_lower': ci_lower,
                'ci_upper': ci_upper,
                'n': int(((values == category).to_numpy() & self._domain).sum()),
            })
        return pd.DataFrame(
            rows,
            columns=['variable', 'level', 'proportion', 'std_error', 'ci_lower', 'ci_upper', 'n'],
        )


def design_from_config(df: pd.DataFrame, design_config: Dict) -> SurveyDesign:
    """Build a SurveyDesign from the ``design`` section of config.yaml."""
    design = SurveyDesign(
        df,
        cluster=design_config['cluster'],
        strata=design_config['strata'],
        weights=design_config['weights'],
        nest=design_config.get('nest', True),
        lonely_psu=design_config.get('lonely_psu', 'fail'),
    )
    logger.info(f"Built {design!r}, design df={design.degrees_of_freedom}")
    return design
