"""
Diagnostics for design-weighted logistic models.

This module provides:
- Box-Tidwell linearity checks for continuous predictors
- Design-based DFBETAS and influential-observation flags
- Generalized variance inflation factors (cached on disk with joblib)
- Type-II Wald tests using the design-based covariance

Likelihood-ratio tests are not offered: the pseudo-likelihood of a weighted,
clustered sample does not have the usual chi-square reference distribution.
"""

import hashlib
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import joblib
import numpy as np
import pandas as pd
from scipy import stats

from src.models.glm import SurveyGLMResult, _score_weights, svyglm
from src.models.survey import SurveyDesign

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# =============================================================================
# Linearity (Box-Tidwell)
# =============================================================================

def box_tidwell(
    design: SurveyDesign,
    outcome: str,
    predictor: str,
    covariates: Optional[Sequence[str]] = None,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Box-Tidwell test of linearity in the logit for one continuous predictor.

    Fits ``outcome ~ X + X*log(X)`` on the design. A significant coefficient
    on ``X*log(X)`` means the logit is not linear in X and X should enter the
    model categorised.

    Parameters
    ----------
    design : SurveyDesign
        Survey design.
    outcome : str
        Binary outcome column.
    predictor : str
        Continuous predictor. Non-positive values are excluded from the test.
    covariates : list of str, optional
        Extra formula terms.
    alpha : float
        Significance level for the ``nonlinear`` flag.

    Returns
    -------
    pd.DataFrame
        One row: predictor, term, coef, std_error, t, p_value, nonlinear, n.
    """
    values = pd.to_numeric(design.data[predictor], errors='raise').astype(float)
    n_nonpositive = int(((values <= 0) & design.domain).sum())
    if n_nonpositive > 0:
        logger.warning(f"{predictor}: {n_nonpositive} non-positive values excluded from Box-Tidwell")

    positive = values.where(values > 0)
    term = f"{predictor}_log_{predictor}"
    augmented = design.update(**{term: positive * np.log(positive)}).subset(positive.notna())

    rhs = [predictor, term] + list(covariates or [])
    formula = f"{outcome} ~ " + " + ".join(rhs)
    result = svyglm(formula, augmented, label=f"box_tidwell_{predictor}")

    frame = result.summary_frame()
    row = frame.loc[term]
    nonlinear = bool(row['p_value'] < alpha)
    logger.info(
        f"Box-Tidwell {predictor}: coef={row['coef']:.4f}, p={row['p_value']:.4g}"
        + (" -> consider categorising" if nonlinear else "")
    )
    return pd.DataFrame([{
        'predictor': predictor,
        'term': term,
        'coef': row['coef'],
        'std_error': row['std_error'],
        't': row['t'],
        'p_value': row['p_value'],
        'nonlinear': nonlinear,
        'n': result.n_obs,
    }])


def run_box_tidwell(
    design: SurveyDesign,
    outcome: str,
    predictors: Sequence[str],
    alpha: float = 0.05,
) -> pd.DataFrame:
    """Run the Box-Tidwell check once per continuous candidate predictor."""
    results = [box_tidwell(design, outcome, predictor, alpha=alpha) for predictor in predictors]
    return pd.concat(results, ignore_index=True)


# =============================================================================
# Influence (DFBETAS)
# =============================================================================

def svy_dfbetas(result: SurveyGLMResult) -> pd.DataFrame:
    """
    Design-based DFBETAS for every observation and coefficient.

    The one-step deletion change ``A^-1 x_i w_i r_i / (1 - h_ii)`` is divided
    by the design-based standard error of each coefficient. ``h_ii`` is the
    leverage from the working-weight hat matrix.

    Returns
    -------
    pd.DataFrame
        Rows indexed like the model rows, one column per coefficient.
    """
    X = result.exog.to_numpy()
    mu = result.fitted_values.to_numpy()
    w = result.weights.to_numpy()
    residual = result.endog.to_numpy() - mu

    score_factor, info_factor = _score_weights(result.family, mu)
    leverage = w * info_factor * np.einsum('ij,jk,ik->i', X, result.bread, X)
    dfbeta = (X @ result.bread) * (w * score_factor * residual / (1.0 - leverage))[:, None]
    dfbetas = dfbeta / result.bse.to_numpy()

    return pd.DataFrame(dfbetas, index=result.exog.index, columns=result.params.index)


def influence_cutoff(n: int, z: float = 2.0) -> float:
    """DFBETAS cutoff ``z / sqrt(n)``."""
    if n <= 0:
        raise ValueError(f"n must be positive, got {n}")
    return z / np.sqrt(n)


def flag_influential(dfbetas: pd.DataFrame, cutoff: float) -> pd.Series:
    """True where any |DFBETAS| is at or above ``cutoff``."""
    return (dfbetas.abs() >= cutoff).any(axis=1).rename('influential')


def influential_observations(
    result: SurveyGLMResult,
    id_columns: List[str],
    z: float = 2.0,
) -> pd.DataFrame:
    """
    Flag influential observations of a fitted model.

    Parameters
    ----------
    result : SurveyGLMResult
        Fitted model.
    id_columns : list
        Composite respondent identifier.
    z : float
        Cutoff multiplier; observations with any |DFBETAS| >= z / sqrt(n)
        are influential, n being the number of rows in the model.

    Returns
    -------
    pd.DataFrame
        Identifier columns, n_exceeding, max_abs_dfbetas, influential.
    """
    dfbetas = svy_dfbetas(result)
    cutoff = influence_cutoff(result.n_obs, z)
    exceeding = dfbetas.abs() >= cutoff

    influence = result.design.data.loc[dfbetas.index, list(id_columns)].copy()
    influence['n_exceeding'] = exceeding.sum(axis=1).astype(int)
    influence['max_abs_dfbetas'] = dfbetas.abs().max(axis=1)
    influence['influential'] = flag_influential(dfbetas, cutoff)

    n_flagged = int(influence['influential'].sum())
    logger.info(
        f"{result.label or result.formula}: {n_flagged:,} of {result.n_obs:,} observations "
        f"influential (|DFBETAS| >= {cutoff:.4f})"
    )
    return influence


def join_influence_flags(
    df: pd.DataFrame,
    influence: pd.DataFrame,
    id_columns: List[str],
    flag_col: str = 'influential',
) -> pd.Series:
    """
    Join influence flags back to a dataset by respondent identifier.

    Rows not in the fitted model are not influential.

    Returns
    -------
    pd.Series
        Boolean flags aligned to ``df.index``.
    """
    merged = df[list(id_columns)].merge(
        influence[list(id_columns) + [flag_col]],
        on=list(id_columns),
        how='left',
        validate='one_to_one',
    )
    return pd.Series(merged[flag_col].eq(True).to_numpy(), index=df.index, name=flag_col)


def summarize_influence(influence: pd.DataFrame, label: str = 'model') -> Dict:
    """Counts of influential observations for reporting."""
    n = len(influence)
    n_flagged = int(influence['influential'].sum())
    return {
        'model': label,
        'n_obs': n,
        'n_influential': n_flagged,
        'pct_influential': round(n_flagged / n * 100, 2) if n else 0.0,
    }


# =============================================================================
# Collinearity (generalized VIF)
# =============================================================================

def compute_gvif(cov: pd.DataFrame, term_slices: Dict[str, List[str]]) -> pd.DataFrame:
    """
    Generalized variance inflation factors (Fox & Monette) per model term.

    ``GVIF = det(R_11) det(R_22) / det(R)`` where R is the correlation matrix
    of the coefficient estimates without the intercept, R_11 the block of the
    term and R_22 the block of every other term.

    Parameters
    ----------
    cov : pd.DataFrame
        Coefficient covariance matrix.
    term_slices : dict
        Term name -> coefficient names.

    Returns
    -------
    pd.DataFrame
        term, gvif, df, gvif_adjusted (GVIF^(1/(2*df))).
    """
    names = [name for name in cov.columns if name != 'Intercept']
    cov_values = cov.loc[names, names].to_numpy()
    sd = np.sqrt(np.diag(cov_values))
    corr = cov_values / np.outer(sd, sd)
    _, logdet_all = np.linalg.slogdet(corr)

    rows = []
    for term, columns in term_slices.items():
        idx = [names.index(col) for col in columns if col in names]
        if not idx:
            continue
        other = [i for i in range(len(names)) if i not in idx]
        _, logdet_term = np.linalg.slogdet(corr[np.ix_(idx, idx)])
        logdet_other = np.linalg.slogdet(corr[np.ix_(other, other)])[1] if other else 0.0
        gvif = float(np.exp(logdet_term + logdet_other - logdet_all))
        rows.append({
            'term': term,
            'gvif': gvif,
            'df': len(idx),
            'gvif_adjusted': gvif ** (1 / (2 * len(idx))),
        })
    return pd.DataFrame(rows, columns=['term', 'gvif', 'df', 'gvif_adjusted'])


def generalized_vif(result: SurveyGLMResult) -> pd.DataFrame:
    """GVIF per term from the model's design-based covariance."""
    return compute_gvif(result.cov_params(), result.term_slices)


def vif_cache_path(result: SurveyGLMResult, cache_dir: Union[str, Path], label: str) -> Path:
    """Cache file for a model specification: label, formula and rows used."""
    key_source = "|".join([
        label,
        result.formula,
        str(result.n_obs),
        ",".join(map(str, result.exog.index)),
    ])
    key = hashlib.md5(key_source.encode("utf-8")).hexdigest()[:12]
    return Path(cache_dir) / f"vif_{label}_{key}.joblib"


def cached_vif(
    result: SurveyGLMResult,
    cache_dir: Union[str, Path],
    label: str = 'model',
    threshold: float = 5.0,
) -> pd.DataFrame:
    """
    Generalized VIF, read from cache when present.

    The cache is never invalidated automatically; delete the file to force
    recomputation.

    Parameters
    ----------
    result : SurveyGLMResult
        Fitted model.
    cache_dir : str or Path
        Cache directory.
    label : str
        Model label used in the cache file name.
    threshold : float
        Terms with squared adjusted GVIF above this are logged.

    Returns
    -------
    pd.DataFrame
        Output of ``generalized_vif``.
    """
    path = vif_cache_path(result, cache_dir, label)
    if path.exists():
        logger.info(f"Loading cached VIF for {label} from {path}")
        vif = joblib.load(path)
    else:
        logger.info(f"Computing VIF for {label}")
        vif = generalized_vif(result)
        path.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(vif, path)
        logger.info(f"VIF cached to {path}")

    high = vif[vif['gvif_adjusted'] ** 2 > threshold]
    if len(high) > 0:
        for _, row in high.iterrows():
            logger.warning(f"  {label}: {row['term']} GVIF^(1/(2df))^2 = {row['gvif_adjusted'] ** 2:.2f}")
    else:
        logger.info(f"{label}: no term above VIF threshold {threshold}")
    return vif


# =============================================================================
# Type-II Wald tests
# =============================================================================

def _conjugate_complement(X: np.ndarray, Z: np.ndarray, ip: np.ndarray) -> np.ndarray:
    """Basis of the part of span(Z) orthogonal to span(X) under inner product ``ip``."""
    M = Z.T @ ip @ X
    rank = np.linalg.matrix_rank(M)
    if rank == 0:
        return Z
    Q, _ = np.linalg.qr(M, mode='complete')
    return Z @ Q[:, rank:]


def wald_type2(result: SurveyGLMResult) -> pd.DataFrame:
    """
    Type-II Wald tests with the design-based covariance.

    Each term is tested after every term that does not contain it, so main
    effects are tested ignoring their own interactions. No refitting is
    needed.

    Returns
    -------
    pd.DataFrame
        term, chisq, df, p_value, F, ddf, p_value_F
    """
    params = result.params.to_numpy()
    V = result.cov_params().to_numpy()
    p = len(params)
    identity = np.eye(p)
    design_info = result.design_info

    rows = []
    for term in design_info.terms:
        if not term.factors:
            continue
        term_slice = design_info.slice(term)
        cols_term = list(range(p))[term_slice]
        relatives = [
            other for other in design_info.terms
            if other is not term and set(term.factors) < set(other.factors)
        ]
        cols_relatives = []
        for other in relatives:
            cols_relatives.extend(list(range(p))[design_info.slice(other)])

        if cols_relatives:
            L = _conjugate_complement(
                identity[cols_relatives].T,
                identity[cols_relatives + cols_term].T,
                V,
            ).T
        else:
            L = identity[cols_term]
        L = L[~np.all(np.isclose(L, 0.0), axis=1)]

        name = term.name()
        if L.shape[0] == 0:
            rows.append({'term': name, 'chisq': np.nan, 'df': 0, 'p_value': np.nan,
                         'F': np.nan, 'ddf': result.df_resid, 'p_value_F': np.nan})
            continue

        Lb = L @ params
        chisq = float(Lb @ np.linalg.solve(L @ V @ L.T, Lb))
        df = L.shape[0]
        f_stat = chisq / df
        p_f = float(stats.f.sf(f_stat, df, result.df_resid)) if result.df_resid > 0 else np.nan
        rows.append({
            'term': name,
            'chisq': chisq,
            'df': df,
            'p_value': float(stats.chi2.sf(chisq, df)),
            'F': f_stat,
            'ddf': result.df_resid,
            'p_value_F': p_f,
        })

    return pd.DataFrame(rows, columns=['term', 'chisq', 'df', 'p_value', 'F', 'ddf', 'p_value_F'])
