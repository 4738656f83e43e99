"""Survey design, design-weighted models, diagnostics, and reporting utilities."""

from .survey import (
    # Design
    SurveyDesign,
    WeightedEstimate,
    design_from_config,
    LONELY_PSU_OPTIONS,
)

from .glm import (
    # Weighted GLM
    SurveyGLMResult,
    svyglm,
)

from .diagnostics import (
    # Linearity
    box_tidwell,
    run_box_tidwell,

    # Influence
    svy_dfbetas,
    influence_cutoff,
    flag_influential,
    influential_observations,
    join_influence_flags,
    summarize_influence,

    # Collinearity
    compute_gvif,
    generalized_vif,
    cached_vif,

    # Goodness of fit
    wald_type2,
)

from .evaluate import (
    # Reporting
    odds_ratio_table,
    compare_models_table,
    format_model_comparison,
    plot_odds_ratios,
    MODEL_COLORS,
)

__all__ = [
    # Design
    'SurveyDesign',
    'WeightedEstimate',
    'design_from_config',
    'LONELY_PSU_OPTIONS',

    # Models
    'SurveyGLMResult',
    'svyglm',

    # Diagnostics
    'box_tidwell',
    'run_box_tidwell',
    'svy_dfbetas',
    'influence_cutoff',
    'flag_influential',
    'influential_observations',
    'join_influence_flags',
    'summarize_influence',
    'compute_gvif',
    'generalized_vif',
    'cached_vif',
    'wald_type2',

    # Reporting
    'odds_ratio_table',
    'compare_models_table',
    'format_model_comparison',
    'plot_odds_ratios',
    'MODEL_COLORS',
]
