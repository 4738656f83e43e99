"""
Descriptive Visualization Module for the Sleep and Cholesterol Analysis.

Design-weighted summary tables and publication-quality figures.
Uses a consistent, colorblind-friendly color palette.
"""

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns
import numpy as np
import pandas as pd
from typing import Optional, List, Tuple, Dict

from src.models.survey import SurveyDesign

# =============================================================================
# STYLE CONFIGURATION
# =============================================================================

# Colorblind-friendly palette for the sleep indicator
SLEEP_COLORS = {
    0.0: '#2166ac',  # Blue - below mean
    1.0: '#b2182b',  # Red - at or above mean
}

SLEEP_LABELS = {
    0.0: 'Below mean sleep',
    1.0: 'At/above mean sleep',
}

# Figure defaults
FIGURE_DPI = 300
TITLE_FONTSIZE = 14
LABEL_FONTSIZE = 12
TICK_FONTSIZE = 10


def set_publication_style():
    """Seaborn whitegrid theme, high-resolution saves, no top or right spines."""
    sns.set_theme(style='whitegrid', context='paper', font_scale=1.2)
    plt.rcParams.update({
        'savefig.dpi': FIGURE_DPI,
        'savefig.bbox': 'tight',
        'axes.spines.top': False,
        'axes.spines.right': False,
    })


# =============================================================================
# DESIGN-WEIGHTED SUMMARY TABLES
# =============================================================================

def weighted_prevalence_table(
    design: SurveyDesign,
    outcome: str,
    by: str,
    level: float = 0.95,
) -> pd.DataFrame:
    """
    Design-weighted prevalence of a binary outcome within each level of ``by``.

    Parameters
    ----------
    design : SurveyDesign
        Survey design
    outcome : str
        0/1 outcome column
    by : str
        Grouping column
    level : float
        Confidence level

    Returns
    -------
    pd.DataFrame with columns: <by>, prevalence_pct, se_pct, ci_lower_pct, ci_upper_pct, n
    """
    table = design.weighted_mean_by(outcome, by, level=level)
    return pd.DataFrame({
        by: table[by],
        'prevalence_pct': table['estimate'] * 100,
        'se_pct': table['std_error'] * 100,
        'ci_lower_pct': table['ci_lower'] * 100,
        'ci_upper_pct': table['ci_upper'] * 100,
        'n': table['n'],
    })


def weighted_distribution_table(
    design: SurveyDesign,
    variables: List[str],
    level: float = 0.95,
) -> pd.DataFrame:
    """
    Design-weighted distribution of categorical variables (Table 1 style).

    Returns
    -------
    pd.DataFrame with columns: variable, level, proportion, std_error, ci_lower, ci_upper, n
    """
    tables = [design.weighted_proportions(var, level=level) for var in variables]
    return pd.concat(tables, ignore_index=True)


# =============================================================================
# FIGURES
# =============================================================================

def plot_cohort_flow(
    steps: List[Dict],
    title: str = 'Study Population Selection',
    figsize: Tuple[int, int] = (9, 7),
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Vertical flow of the analytic cohort, one box per selection step.

    Parameters
    ----------
    steps : list of dict
        Keys 'label' and 'n'; every step after the first may add
        'excluded' and 'reason', shown beside the arrow leading into it.
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
    set_publication_style()

    fig, ax = plt.subplots(figsize=figsize)
    ax.set_xlim(0, 1)
    ax.set_ylim(-0.5, len(steps) - 0.5)
    ax.axis('off')

    for i, step in enumerate(steps):
        y = len(steps) - 1 - i
        last = i == len(steps) - 1
        ax.text(
            0.35, y,
            f"{step['label']}\nN = {step['n']:,}",
            ha='center', va='center',
            fontsize=LABEL_FONTSIZE,
            fontweight='bold' if last else 'normal',
            bbox=dict(boxstyle='round,pad=0.6', facecolor='#e6f2ff' if i else '#f0f0f0',
                      edgecolor='#333333'),
        )
        if i == 0:
            continue

        ax.annotate('', xy=(0.35, y + 0.25), xytext=(0.35, y + 0.75),
                    arrowprops=dict(arrowstyle='->', color='#333333', lw=1.5))
        if step.get('excluded'):
            ax.text(
                0.62, y + 0.5,
                f"Excluded {step['excluded']:,}: {step.get('reason', 'excluded')}",
                ha='left', va='center',
                fontsize=TICK_FONTSIZE,
                color='#b2182b',
            )

    ax.set_title(title, fontsize=TITLE_FONTSIZE, fontweight='bold')

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=FIGURE_DPI, bbox_inches='tight')

    return fig


def plot_weighted_prevalence(
    table: pd.DataFrame,
    by: str,
    title: str = 'Weighted Prevalence of High Cholesterol',
    figsize: Tuple[int, int] = (8, 6),
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Bar chart of design-weighted prevalence with confidence intervals.

    Parameters
    ----------
    table : pd.DataFrame
        Output of ``weighted_prevalence_table``
    by : str
        Grouping column in ``table``
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
    set_publication_style()

    fig, ax = plt.subplots(figsize=figsize)

    levels = table[by].tolist()
    labels = [SLEEP_LABELS.get(level, str(level)) for level in levels]
    colors = [SLEEP_COLORS.get(level, '#4477AA') for level in levels]
    x = np.arange(len(levels))

    bars = ax.bar(
        x,
        table['prevalence_pct'],
        yerr=[
            table['prevalence_pct'] - table['ci_lower_pct'],
            table['ci_upper_pct'] - table['prevalence_pct'],
        ],
        color=colors,
        edgecolor='white',
        linewidth=1,
        capsize=6,
    )

    for bar, value in zip(bars, table['prevalence_pct']):
        ax.text(bar.get_x() + bar.get_width()/2, value / 2,
                f'{value:.1f}%', ha='center', va='center',
                fontsize=LABEL_FONTSIZE, color='white', fontweight='bold')

    ax.set_xticks(x)
    ax.set_xticklabels(labels)
    ax.set_ylabel('Weighted prevalence (%)', fontsize=LABEL_FONTSIZE)
    ax.set_title(title, fontsize=TITLE_FONTSIZE, fontweight='bold')
    ax.set_ylim(0, float(table['ci_upper_pct'].max()) * 1.15)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=FIGURE_DPI, bbox_inches='tight')

    return fig


def plot_sleep_distribution(
    design: SurveyDesign,
    threshold: float,
    variable: str = 'hours_sleep',
    title: str = 'Weighted Distribution of Hours of Sleep',
    figsize: Tuple[int, int] = (10, 6),
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Design-weighted histogram of sleep hours with the mean threshold marked.
    """
    set_publication_style()

    df = design.variables
    df['_weight'] = design.weights[design.domain.to_numpy()]
    df = df.dropna(subset=[variable])

    fig, ax = plt.subplots(figsize=figsize)
    sns.histplot(
        data=df,
        x=variable,
        weights='_weight',
        discrete=True,
        stat='percent',
        color='#4477AA',
        ax=ax,
    )
    ax.axvline(threshold, color='#b2182b', linestyle='--', linewidth=2,
               label=f'Weighted mean = {threshold:.2f} h')

    ax.set_xlabel('Hours of sleep', fontsize=LABEL_FONTSIZE)
    ax.set_ylabel('Weighted percent', fontsize=LABEL_FONTSIZE)
    ax.set_title(title, fontsize=TITLE_FONTSIZE, fontweight='bold')
    ax.legend()

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=FIGURE_DPI, bbox_inches='tight')

    return fig
