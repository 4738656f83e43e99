"""Design-weighted descriptive tables and figures."""

from .eda import (
    # Style configuration
    set_publication_style,
    SLEEP_COLORS,
    SLEEP_LABELS,

    # Weighted summaries
    weighted_prevalence_table,
    weighted_distribution_table,

    # Figures
    plot_cohort_flow,
    plot_weighted_prevalence,
    plot_sleep_distribution,
)

__all__ = [
    'set_publication_style',
    'SLEEP_COLORS',
    'SLEEP_LABELS',
    'weighted_prevalence_table',
    'weighted_distribution_table',
    'plot_cohort_flow',
    'plot_weighted_prevalence',
    'plot_sleep_distribution',
]
