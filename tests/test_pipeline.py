import json
import sys

import numpy as np
import pytest

from src.models.glm import svyglm
from src.models.survey import SurveyDesign
from src import pipeline
from src.pipeline import analyze, run_analysis

from conftest import simulate_design_frame


def test_sparse_model_ci_covers_true_odds_ratio():
    true_or = 1.5
    n_sims = 400
    covered = 0
    for seed in range(n_sims):
        df = simulate_design_frame(n=1000, log_or=np.log(true_or), cluster_share=0.6, seed=seed)
        design = SurveyDesign(df, cluster='psu', strata='stratum', weights='weight')

        row = svyglm('y ~ x', design).odds_ratios().loc['x']
        covered += int(row['ci_lower'] <= true_or <= row['ci_upper'])

    assert covered / n_sims >= 0.92


def test_clustering_inflates_design_standard_errors():
    ratios = []
    for seed in range(20):
        df = simulate_design_frame(n=1000, cluster_share=0.6, seed=seed)
        clustered = SurveyDesign(df, cluster='psu', strata='stratum', weights='weight')
        independent = SurveyDesign(
            df.assign(stratum=0, psu=np.arange(len(df))),
            cluster='psu', strata='stratum', weights='weight',
        )

        design_se = svyglm('y ~ x', clustered).bse['x']
        naive_se = svyglm('y ~ x', independent).bse['x']
        ratios.append(design_se / naive_se)

    # Treating clustered rows as independent understates the variance
    assert np.mean(ratios) > 1.2


def test_analysis_is_deterministic(raw_survey, config, tmp_path):
    first = analyze(raw_survey, config, cache_dir=tmp_path / 'first')
    second = analyze(raw_survey.copy(), config, cache_dir=tmp_path / 'second')

    for label in ('sparse', 'full', 'final'):
        assert np.array_equal(first.models[label].params.to_numpy(),
                              second.models[label].params.to_numpy())
    assert first.influence['influential'].tolist() == second.influence['influential'].tolist()
    assert first.design.data['influential'].equals(second.design.data['influential'])


def test_final_model_excludes_influential_and_incomplete(raw_survey, config, tmp_path):
    results = analyze(raw_survey, config, cache_dir=tmp_path)

    data = results.design.data
    final_rows = results.models['final'].exog.index
    assert not data.loc[final_rows, 'influential'].any()
    assert data.loc[final_rows, 'complete_case'].all()
    assert results.models['final'].formula == results.models['full'].formula
    assert results.models['final'].n_obs < results.models['full'].n_obs

    assert set(results.models) == {'sparse', 'full', 'final'}
    assert set(results.odds_ratios['model']) == {'sparse', 'full', 'final'}
    assert list(results.coefficients.columns) == ['sparse', 'full', 'final']
    assert results.box_tidwell['predictor'].tolist() == ['age', 'hours_sleep']
    assert 'sleep_above_mean' in set(results.wald['final']['term'])


def test_run_analysis_writes_outputs(raw_survey, config, tmp_path):
    data_path = tmp_path / 'nhis_2012_merged.csv'
    raw_survey.to_csv(data_path, index=False)
    output_dir = tmp_path / 'outputs'

    run_analysis(year=2012, data_path=data_path, output_dir=output_dir, config=config)

    assert (output_dir / 'tables' / 'odds_ratios.csv').exists()
    assert (output_dir / 'tables' / 'wald_type2_final.csv').exists()
    assert (output_dir / 'figures' / 'odds_ratios.png').exists()
    assert (output_dir / 'figures' / 'cohort_flow.png').exists()
    assert len(list((output_dir / 'cache').glob('vif_final_*.joblib'))) == 1

    with open(output_dir / 'summary.json') as f:
        summary = json.load(f)
    assert summary['year'] == 2012
    assert set(summary['sleep_effect']) == {'sparse', 'full', 'final'}
    assert summary['mean_sleep']['estimate'] == pytest.approx(7.0, abs=0.5)


def test_cli_takes_only_the_study_year(monkeypatch):
    calls = []
    monkeypatch.setattr(pipeline, 'run_analysis', lambda **kwargs: calls.append(kwargs))

    monkeypatch.setattr(sys, 'argv', ['pipeline', '--year', '2012'])
    pipeline.main()
    assert calls == [{'year': 2012}]

    monkeypatch.setattr(sys, 'argv', ['pipeline', '--year', '2012', '--data-path', 'x.csv'])
    with pytest.raises(SystemExit):
        pipeline.main()
