"""
End-to-end analysis: does sleep duration predict high cholesterol?

Runs preparation, design construction, derived variables, Box-Tidwell
checks, the sparse / full / final design-weighted logistic models, influence,
collinearity and Type-II Wald diagnostics, and writes tables, figures and a
JSON summary.

Usage:
    python -m src.pipeline --year 2012
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd

from src.data.cleaners import prepare_respondents
from src.data.loaders import get_project_root, load_config, load_merged_dataset
from src.data.validators import validate_respondents
from src.features.builders import create_all_derived_features, get_model_formulas
from src.models.diagnostics import (
    cached_vif,
    influential_observations,
    join_influence_flags,
    run_box_tidwell,
    summarize_influence,
    wald_type2,
)
from src.models.evaluate import (
    compare_models_table,
    format_model_comparison,
    odds_ratio_table,
    plot_odds_ratios,
)
from src.models.glm import SurveyGLMResult, svyglm
from src.models.survey import SurveyDesign, design_from_config
from src.visualization.eda import (
    plot_cohort_flow,
    plot_sleep_distribution,
    plot_weighted_prevalence,
    weighted_distribution_table,
    weighted_prevalence_table,
)

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

SLEEP_TERM = 'sleep_above_mean'
DESCRIPTIVE_VARIABLES = [
    'age_category', 'sex', 'race', 'education', 'diet_counseling', 'exercise_counseling',
]


@dataclass
class AnalysisResults:
    """Everything produced by one run of the analysis."""

    prepared: pd.DataFrame
    preparation_report: Dict
    range_checks: pd.DataFrame
    design: SurveyDesign
    feature_stats: Dict
    box_tidwell: pd.DataFrame
    models: Dict[str, SurveyGLMResult]
    influence: pd.DataFrame
    vif: pd.DataFrame
    wald: Dict[str, pd.DataFrame]
    odds_ratios: pd.DataFrame
    coefficients: pd.DataFrame
    comparison: pd.DataFrame
    prevalence: pd.DataFrame
    distribution: pd.DataFrame
    cohort_steps: List[Dict] = field(default_factory=list)

    @property
    def mean_sleep(self) -> float:
        return self.feature_stats['mean_sleep']['estimate']

    def summary(self) -> Dict[str, Any]:
        """JSON-serialisable run summary."""
        sleep_effects = {}
        for label, result in self.models.items():
            row = result.odds_ratios().loc[SLEEP_TERM]
            sleep_effects[label] = {
                'odds_ratio': float(row['odds_ratio']),
                'ci_lower': float(row['ci_lower']),
                'ci_upper': float(row['ci_upper']),
                'p_value': float(row['p_value']),
                'n_obs': result.n_obs,
                'df_resid': result.df_resid,
            }

        return {
            'mean_sleep': self.feature_stats['mean_sleep'],
            'cohort': self.cohort_steps,
            'sleep_effect': sleep_effects,
            'box_tidwell': {
                row['predictor']: {'p_value': float(row['p_value']), 'nonlinear': bool(row['nonlinear'])}
                for _, row in self.box_tidwell.iterrows()
            },
            'influence': summarize_influence(self.influence, 'full'),
            'max_gvif_adjusted': float(self.vif['gvif_adjusted'].max()) if len(self.vif) else None,
        }


def fit_models(
    design: SurveyDesign,
    formulas: Dict[str, str],
) -> Dict[str, SurveyGLMResult]:
    """Fit the sparse and full models on the eligible design."""
    models = {}
    for label in ('sparse', 'full'):
        logger.info(f"Fitting {label} model: {formulas[label]}")
        models[label] = svyglm(formulas[label], design, label=label)
    return models


def analyze(
    raw: pd.DataFrame,
    config: Optional[dict] = None,
    cache_dir: Optional[Union[str, Path]] = None,
) -> AnalysisResults:
    """
    Run the analysis on a merged raw dataset.

    Nothing is written to disk except the VIF cache.

    Parameters
    ----------
    raw : pd.DataFrame
        Merged respondent-level dataset with raw survey fields.
    config : dict, optional
        Loaded configuration.
    cache_dir : str or Path, optional
        VIF cache directory. Defaults to ``<paths.output_dir>/cache``.

    Returns
    -------
    AnalysisResults
    """
    config = config or load_config()
    if cache_dir is None:
        cache_dir = get_project_root() / config['paths']['output_dir'] / 'cache'

    diagnostics = config['diagnostics']
    alpha = diagnostics['alpha']
    outcome = config['models']['outcome']
    id_columns = config['data']['id_columns']

    # Preparation
    prepared, preparation_report = prepare_respondents(raw, config)
    range_checks = validate_respondents(prepared, config)

    # Design and derived variables
    design = design_from_config(prepared, config['design'])
    design, feature_stats = create_all_derived_features(design, config)

    logger.info("=" * 60)
    logger.info("Linearity checks (Box-Tidwell)")
    logger.info("=" * 60)
    box_tidwell = run_box_tidwell(
        design, outcome, diagnostics['box_tidwell_predictors'], alpha=alpha,
    )

    logger.info("=" * 60)
    logger.info("Fitting design-weighted logistic models")
    logger.info("=" * 60)
    formulas = get_model_formulas(config)
    models = fit_models(design, formulas)

    # Influence on the full model, joined back by respondent identifier
    influence = influential_observations(models['full'], id_columns, z=diagnostics['influence_z'])
    flags = join_influence_flags(design.data, influence, id_columns)
    design = design.update(influential=flags)

    final_domain = ~design.data['influential'] & design.data['complete_case']
    models['final'] = svyglm(formulas['full'], design, subset=final_domain, label='final')

    logger.info("=" * 60)
    logger.info("Final model diagnostics")
    logger.info("=" * 60)
    vif = cached_vif(models['final'], cache_dir, label='final', threshold=diagnostics['vif_threshold'])
    wald = {label: wald_type2(result) for label, result in models.items()}

    odds_ratios = pd.concat(
        [odds_ratio_table(result, label, alpha) for label, result in models.items()],
        ignore_index=True,
    )
    coefficients = compare_models_table(models, value='coef', alpha=alpha)
    comparison = format_model_comparison(models, alpha=alpha)

    level = diagnostics['confidence_level']
    complete = design.subset(design.data['complete_case'])
    prevalence = weighted_prevalence_table(complete, outcome, SLEEP_TERM, level=level)
    distribution = weighted_distribution_table(complete, DESCRIPTIVE_VARIABLES, level=level)

    n_eligible = preparation_report['steps']['eligible_rows']
    n_complete = preparation_report['steps']['complete_cases']
    cohort_steps = [
        {'label': 'Survey respondents', 'n': len(raw)},
        {'label': 'Eligible sample adults', 'n': n_eligible,
         'excluded': len(raw) - n_eligible, 'reason': 'Not an eligible sample adult'},
        {'label': 'Complete cases', 'n': n_complete,
         'excluded': n_eligible - n_complete, 'reason': 'Missing analysis field'},
        {'label': 'Final model', 'n': models['final'].n_obs,
         'excluded': n_complete - models['final'].n_obs, 'reason': 'Influential or incomplete'},
    ]

    return AnalysisResults(
        prepared=prepared,
        preparation_report=preparation_report,
        range_checks=range_checks,
        design=design,
        feature_stats=feature_stats,
        box_tidwell=box_tidwell,
        models=models,
        influence=influence,
        vif=vif,
        wald=wald,
        odds_ratios=odds_ratios,
        coefficients=coefficients,
        comparison=comparison,
        prevalence=prevalence,
        distribution=distribution,
        cohort_steps=cohort_steps,
    )


def save_results(results: AnalysisResults, output_dir: Union[str, Path], year: int) -> Path:
    """
    Write tables, figures and the JSON summary.

    Returns
    -------
    Path
        Path to the JSON summary.
    """
    output_dir = Path(output_dir)
    tables_dir = output_dir / 'tables'
    figures_dir = output_dir / 'figures'
    tables_dir.mkdir(parents=True, exist_ok=True)
    figures_dir.mkdir(parents=True, exist_ok=True)

    results.odds_ratios.to_csv(tables_dir / 'odds_ratios.csv', index=False)
    results.coefficients.to_csv(tables_dir / 'coefficients.csv', index_label='term')
    results.comparison.to_csv(tables_dir / 'model_comparison.csv', index_label='term')
    results.box_tidwell.to_csv(tables_dir / 'box_tidwell.csv', index=False)
    results.influence.to_csv(tables_dir / 'influence_full.csv', index=False)
    results.vif.to_csv(tables_dir / 'vif_final.csv', index=False)
    for label, table in results.wald.items():
        table.to_csv(tables_dir / f'wald_type2_{label}.csv', index=False)
    results.prevalence.to_csv(tables_dir / 'weighted_prevalence.csv', index=False)
    results.distribution.to_csv(tables_dir / 'weighted_distribution.csv', index=False)
    results.range_checks.to_csv(tables_dir / 'range_checks.csv', index=False)
    logger.info(f"Tables saved to {tables_dir}")

    figures = {
        'cohort_flow.png': plot_cohort_flow(results.cohort_steps),
        'weighted_prevalence.png': plot_weighted_prevalence(results.prevalence, SLEEP_TERM),
        'sleep_distribution.png': plot_sleep_distribution(
            results.design.subset(results.design.data['complete_case']), results.mean_sleep,
        ),
        'odds_ratios.png': plot_odds_ratios(results.models),
    }
    for filename, fig in figures.items():
        fig.savefig(figures_dir / filename, bbox_inches='tight')
        plt.close(fig)
    logger.info(f"Figures saved to {figures_dir}")

    summary = {
        'year': year,
        'generated_at': datetime.now().isoformat(timespec='seconds'),
        **results.summary(),
    }
    summary_path = output_dir / 'summary.json'
    with open(summary_path, 'w') as f:
        json.dump(summary, f, indent=2, default=str)
    logger.info(f"Summary saved to {summary_path}")

    return summary_path


def run_analysis(
    year: Optional[int] = None,
    data_path: Optional[Union[str, Path]] = None,
    output_dir: Optional[Union[str, Path]] = None,
    config: Optional[dict] = None,
) -> AnalysisResults:
    """
    Load the merged dataset for ``year``, run the analysis and save outputs.

    Parameters
    ----------
    year : int, optional
        Study year. Defaults to ``study.year`` in config.yaml.
    data_path : str or Path, optional
        Explicit path to the merged dataset.
    output_dir : str or Path, optional
        Output directory. Defaults to ``<paths.output_dir>/<year>``.
    config : dict, optional
        Loaded configuration.

    Returns
    -------
    AnalysisResults
    """
    config = config or load_config()
    if year is None:
        year = config['study']['year']
    if output_dir is None:
        output_dir = get_project_root() / config['paths']['output_dir'] / str(year)
    output_dir = Path(output_dir)

    logger.info("=" * 60)
    logger.info(f"Sleep and high cholesterol analysis, study year {year}")
    logger.info("=" * 60)

    raw = load_merged_dataset(year, data_path, config)
    results = analyze(raw, config, cache_dir=output_dir / 'cache')
    save_results(results, output_dir, year)

    final = results.models['final'].odds_ratios().loc[SLEEP_TERM]
    logger.info(
        f"Final model: OR for sleep at/above {results.mean_sleep:.2f} h = "
        f"{final['odds_ratio']:.3f} ({final['ci_lower']:.3f}, {final['ci_upper']:.3f}), "
        f"p={final['p_value']:.4g}"
    )
    return results


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Survey-weighted analysis of sleep duration and high cholesterol"
    )
    parser.add_argument(
        "--year",
        type=int,
        default=None,
        help="Study year (default: study.year in config.yaml)",
    )

    args = parser.parse_args()

    run_analysis(year=args.year)


if __name__ == "__main__":
    main()
