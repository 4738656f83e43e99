"""
Model reporting utilities for the sleep and cholesterol models.

This module provides functions for:
- Odds-ratio tables with design-based confidence intervals
- Side-by-side coefficient comparison across models
- Forest plots of odds ratios
"""

from typing import Dict, List, Optional, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from src.models.glm import SurveyGLMResult

# Set publication-quality defaults
plt.rcParams.update({
    'figure.dpi': 100,
    'savefig.dpi': 300,
    'font.size': 11,
    'axes.titlesize': 12,
    'axes.labelsize': 11,
    'xtick.labelsize': 10,
    'ytick.labelsize': 10,
    'legend.fontsize': 10,
    'figure.figsize': (10, 6),
})

MODEL_COLORS = {'sparse': '#4477AA', 'full': '#EE6677', 'final': '#228833'}


# =============================================================================
# Coefficient Tables
# =============================================================================

def odds_ratio_table(
    result: SurveyGLMResult,
    label: str,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Odds ratios for one model in long format.

    Parameters
    ----------
    result : SurveyGLMResult
        Fitted model
    label : str
        Model name
    alpha : float
        1 - confidence level

    Returns
    -------
    pd.DataFrame
        term, coef, std_error, odds_ratio, ci_lower, ci_upper, p_value, model, n_obs
    """
    table = result.odds_ratios(alpha).reset_index().rename(columns={'index': 'term'})
    table['model'] = label
    table['n_obs'] = result.n_obs
    return table


def _stars(p_value: float) -> str:
    if p_value < 0.001:
        return '***'
    if p_value < 0.01:
        return '**'
    if p_value < 0.05:
        return '*'
    return ''


def compare_models_table(
    results: Dict[str, SurveyGLMResult],
    value: str = 'coef',
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Side-by-side numeric comparison of one statistic across models.

    Parameters
    ----------
    results : dict
        Model label -> fitted model
    value : str
        Column of ``SurveyGLMResult.odds_ratios`` to compare
        ('coef', 'std_error', 'odds_ratio', 'p_value', ...)
    alpha : float
        1 - confidence level

    Returns
    -------
    pd.DataFrame
        One row per term (union over models, first-seen order), one column
        per model; NaN where a model lacks the term.
    """
    columns = {}
    for label, result in results.items():
        columns[label] = result.odds_ratios(alpha)[value]

    terms: List[str] = []
    for series in columns.values():
        terms.extend(t for t in series.index if t not in terms)
    return pd.DataFrame(columns).reindex(terms)


def format_model_comparison(
    results: Dict[str, SurveyGLMResult],
    alpha: float = 0.05,
    digits: int = 2,
) -> pd.DataFrame:
    """
    Publication-style comparison: 'OR (lower, upper)' with significance stars.
    """
    formatted = {}
    for label, result in results.items():
        table = result.odds_ratios(alpha)
        formatted[label] = pd.Series({
            term: (
                f"{row['odds_ratio']:.{digits}f} "
                f"({row['ci_lower']:.{digits}f}, {row['ci_upper']:.{digits}f})"
                f"{_stars(row['p_value'])}"
            )
            for term, row in table.iterrows()
        })

    terms: List[str] = []
    for series in formatted.values():
        terms.extend(t for t in series.index if t not in terms)
    comparison = pd.DataFrame(formatted).reindex(terms).fillna('')
    n_row = pd.DataFrame({label: [f"{result.n_obs:,}"] for label, result in results.items()}, index=['N'])
    return pd.concat([comparison, n_row])


# =============================================================================
# Visualization
# =============================================================================

def plot_odds_ratios(
    results: Dict[str, SurveyGLMResult],
    alpha: float = 0.05,
    exclude_intercept: bool = True,
    title: str = 'Odds Ratios for High Cholesterol',
    figsize: Tuple[int, int] = (10, 8),
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Forest plot of odds ratios and confidence intervals, one marker per model.

    Parameters
    ----------
    results : dict
        Model label -> fitted model
    alpha : float
        1 - confidence level
    exclude_intercept : bool
        Drop the intercept row
    title : str
        Figure title
    figsize : tuple
        Figure dimensions
    save_path : str, optional
        Path to save figure

    Returns
    -------
    matplotlib.Figure
    """
    tables = pd.concat(
        [odds_ratio_table(result, label, alpha) for label, result in results.items()],
        ignore_index=True,
    )
    if exclude_intercept:
        tables = tables[tables['term'] != 'Intercept']

    terms = list(dict.fromkeys(tables['term']))
    labels = list(results)
    offsets = np.linspace(-0.25, 0.25, len(labels)) if len(labels) > 1 else [0.0]
    palette = sns.color_palette('colorblind', len(labels))

    fig, ax = plt.subplots(figsize=figsize)
    for offset, label, color in zip(offsets, labels, palette):
        sub = tables[tables['model'] == label].set_index('term').reindex(terms)
        y = np.arange(len(terms)) + offset
        ax.errorbar(
            sub['odds_ratio'],
            y,
            xerr=[sub['odds_ratio'] - sub['ci_lower'], sub['ci_upper'] - sub['odds_ratio']],
            fmt='o',
            color=MODEL_COLORS.get(label, color),
            capsize=3,
            label=label,
        )

    ax.axvline(1.0, color='#333333', linestyle='--', linewidth=1)
    ax.set_xscale('log')
    ax.set_yticks(np.arange(len(terms)))
    ax.set_yticklabels(terms)
    ax.invert_yaxis()
    ax.set_xlabel(f'Odds ratio ({int(round((1 - alpha) * 100))}% CI, log scale)')
    ax.set_title(title, fontweight='bold')
    ax.legend(title='Model', loc='lower right')
    ax.grid(True, axis='x', alpha=0.3)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches='tight')

    return fig
