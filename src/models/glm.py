"""
Design-weighted generalized linear models.

Point estimates come from weighted IRLS (statsmodels GLM with the survey
weights as variance weights). Standard errors come from the design-based
sandwich ``A^-1 V A^-1``, where ``A`` is the weighted information matrix and
``V`` the design covariance of the estimated score totals.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import stats

from src.models.survey import Condition, SurveyDesign

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@dataclass
class SurveyGLMResult:
    """Fitted design-weighted GLM."""

    formula: str
    design: SurveyDesign
    params: pd.Series
    cov: pd.DataFrame
    endog: pd.Series
    exog: pd.DataFrame
    weights: pd.Series
    fitted_values: pd.Series
    family: sm.families.Family
    design_info: patsy.DesignInfo
    bread: np.ndarray
    df_resid: int
    converged: bool
    deviance: float
    label: Optional[str] = None

    @property
    def n_obs(self) -> int:
        return int(len(self.endog))

    @property
    def term_slices(self) -> Dict[str, List[str]]:
        """Model term -> design matrix columns."""
        columns = self.design_info.column_names
        return {
            name: columns[term_slice]
            for name, term_slice in self.design_info.term_name_slices.items()
        }

    def cov_params(self) -> pd.DataFrame:
        return self.cov.copy()

    @property
    def bse(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.cov.to_numpy())), index=self.params.index)

    @property
    def tvalues(self) -> pd.Series:
        return self.params / self.bse

    def _quantile(self, q: float) -> float:
        if self.df_resid > 0:
            return stats.t.ppf(q, self.df_resid)
        return stats.norm.ppf(q)

    @property
    def pvalues(self) -> pd.Series:
        t = np.abs(self.tvalues.to_numpy())
        if self.df_resid > 0:
            p = 2 * stats.t.sf(t, self.df_resid)
        else:
            p = 2 * stats.norm.sf(t)
        return pd.Series(p, index=self.params.index)

    def conf_int(self, alpha: float = 0.05) -> pd.DataFrame:
        q = self._quantile(1 - alpha / 2)
        return pd.DataFrame({
            'lower': self.params - q * self.bse,
            'upper': self.params + q * self.bse,
        })

    def summary_frame(self, alpha: float = 0.05) -> pd.DataFrame:
        """Coefficient table on the link scale."""
        ci = self.conf_int(alpha)
        return pd.DataFrame({
            'coef': self.params,
            'std_error': self.bse,
            't': self.tvalues,
            'p_value': self.pvalues,
            'ci_lower': ci['lower'],
            'ci_upper': ci['upper'],
        })

    def odds_ratios(self, alpha: float = 0.05) -> pd.DataFrame:
        """Exponentiated coefficients with confidence intervals."""
        frame = self.summary_frame(alpha)
        return pd.DataFrame({
            'coef': frame['coef'],
            'std_error': frame['std_error'],
            'odds_ratio': np.exp(frame['coef']),
            'ci_lower': np.exp(frame['ci_lower']),
            'ci_upper': np.exp(frame['ci_upper']),
            'p_value': frame['p_value'],
        })


def _score_weights(family: sm.families.Family, mu: np.ndarray):
    """Per-row factors for scores and information under ``family``."""
    dmu_deta = 1.0 / family.link.deriv(mu)
    variance = family.variance(mu)
    return dmu_deta / variance, dmu_deta ** 2 / variance


def svyglm(
    formula: str,
    design: SurveyDesign,
    subset: Optional[Condition] = None,
    family: Optional[sm.families.Family] = None,
    label: Optional[str] = None,
    maxiter: int = 100,
    tol: float = 1e-8,
) -> SurveyGLMResult:
    """
    Fit a design-weighted GLM (logistic by default).

    Parameters
    ----------
    formula : str
        Patsy formula. The outcome must be a single numeric column.
    design : SurveyDesign
        Survey design; its current domain is the estimation population.
    subset : condition, optional
        Further domain restriction, applied with ``design.subset``.
    family : statsmodels family, optional
        Defaults to Binomial with logit link.
    label : str, optional
        Name used in logs and tables.
    maxiter : int
        Maximum IRLS iterations.
    tol : float
        IRLS convergence tolerance.

    Returns
    -------
    SurveyGLMResult
    """
    family = family or sm.families.Binomial()
    name = label or formula
    if subset is not None:
        design = design.subset(subset)
    if design.n_obs == 0:
        raise ValueError(f"{name}: no observations in the design domain")

    frame = design.variables
    y, X = patsy.dmatrices(formula, frame, return_type='dataframe', NA_action='drop')
    if y.shape[1] != 1:
        raise ValueError(f"{name}: outcome must be a single numeric column, got {list(y.columns)}")

    n_dropped = len(frame) - len(y)
    if n_dropped > 0:
        logger.info(f"{name}: dropped {n_dropped:,} rows with missing model variables")

    positions = design.positions(y.index)
    in_model = np.zeros(len(design.data), dtype=bool)
    in_model[positions] = True
    model_design = design.subset(in_model)

    endog = y.iloc[:, 0]
    w = model_design.weights[positions]

    fit = sm.GLM(endog, X, family=family, var_weights=w / w.mean()).fit(maxiter=maxiter, tol=tol)
    converged = bool(getattr(fit, 'converged', True))
    if not converged:
        logger.warning(f"{name}: IRLS did not converge in {maxiter} iterations")

    params = fit.params
    mu = np.asarray(fit.mu)
    score_factor, info_factor = _score_weights(family, mu)

    X_values = X.to_numpy()
    residual = endog.to_numpy() - mu
    scores = X_values * (w * score_factor * residual)[:, None]
    information = X_values.T @ (X_values * (w * info_factor)[:, None])
    bread = np.linalg.inv(information)

    full_scores = np.zeros((len(design.data), X_values.shape[1]))
    full_scores[positions] = scores
    meat = model_design.total_covariance(full_scores)
    cov = bread @ meat @ bread

    df_resid = model_design.degrees_of_freedom - X_values.shape[1] + 1
    logger.info(
        f"{name}: n={len(endog):,}, parameters={X_values.shape[1]}, design df={df_resid}"
    )

    return SurveyGLMResult(
        formula=formula,
        design=model_design,
        params=params,
        cov=pd.DataFrame(cov, index=X.columns, columns=X.columns),
        endog=endog,
        exog=X,
        weights=pd.Series(w, index=y.index, name='weight'),
        fitted_values=pd.Series(mu, index=y.index, name='fitted'),
        family=family,
        design_info=X.design_info,
        bread=bread,
        df_resid=int(df_resid),
        converged=converged,
        deviance=float(fit.deviance),
        label=label,
    )
