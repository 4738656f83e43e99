import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from src.models import diagnostics
from src.models.diagnostics import (
    box_tidwell,
    cached_vif,
    compute_gvif,
    flag_influential,
    influence_cutoff,
    influential_observations,
    join_influence_flags,
    svy_dfbetas,
    wald_type2,
)
from src.models.glm import svyglm

from conftest import simulate_design_frame


def test_influence_cutoff():
    assert influence_cutoff(400) == pytest.approx(0.1)
    assert influence_cutoff(100, z=3.0) == pytest.approx(0.3)
    with pytest.raises(ValueError):
        influence_cutoff(0)


def test_flag_influential_boundary_is_influential():
    dfbetas = pd.DataFrame({'Intercept': [0.1, 0.05, -0.1], 'x': [0.0, 0.099, 0.02]})

    flags = flag_influential(dfbetas, cutoff=0.1)

    assert flags.tolist() == [True, False, True]


def test_svy_dfbetas_shape(survey_design):
    result = svyglm('y ~ x + z', survey_design)

    dfbetas = svy_dfbetas(result)

    assert dfbetas.shape == (result.n_obs, 3)
    assert list(dfbetas.columns) == list(result.params.index)
    assert dfbetas.index.equals(result.exog.index)
    assert np.isfinite(dfbetas.to_numpy()).all()


def test_influential_observations_and_join(survey_design, design_frame):
    frame = design_frame.assign(respondent_id=np.arange(len(design_frame)))
    design = survey_design.update(respondent_id=frame['respondent_id'])
    result = svyglm('y ~ x + z', design, subset=frame['age'] < 60)

    influence = influential_observations(result, ['respondent_id'], z=2.0)
    flags = join_influence_flags(frame, influence, ['respondent_id'])

    cutoff = influence_cutoff(result.n_obs)
    expected = (svy_dfbetas(result).abs() >= cutoff).any(axis=1)
    assert influence['influential'].tolist() == expected.tolist()
    assert flags.index.equals(frame.index)
    # Rows outside the fitted model are never influential
    assert not flags[frame['age'] >= 60].any()
    assert flags.sum() == influence['influential'].sum()


def test_gvif_uncorrelated_terms_equal_one():
    names = ['Intercept', 'a', 'b', 'c']
    cov = pd.DataFrame(np.diag([4.0, 1.0, 2.0, 3.0]), index=names, columns=names)

    vif = compute_gvif(cov, {'Intercept': ['Intercept'], 'a': ['a'], 'b': ['b'], 'c': ['c']})

    assert vif['term'].tolist() == ['a', 'b', 'c']
    np.testing.assert_allclose(vif['gvif'], 1.0)
    np.testing.assert_allclose(vif['gvif_adjusted'], 1.0)


def test_gvif_two_correlated_terms():
    r = 0.8
    names = ['a', 'b']
    cov = pd.DataFrame([[1.0, r], [r, 1.0]], index=names, columns=names)

    vif = compute_gvif(cov, {'a': ['a'], 'b': ['b']})

    np.testing.assert_allclose(vif['gvif'], 1 / (1 - r ** 2))
    assert vif['df'].tolist() == [1, 1]


def test_gvif_multi_column_term():
    names = ['a', 'g1', 'g2']
    cov = pd.DataFrame(np.eye(3), index=names, columns=names)

    vif = compute_gvif(cov, {'a': ['a'], 'g': ['g1', 'g2']})

    row = vif.set_index('term').loc['g']
    assert row['df'] == 2
    assert row['gvif'] == pytest.approx(1.0)


def test_cached_vif_reuses_cache(survey_design, tmp_path, monkeypatch):
    result = svyglm('y ~ x + z + age', survey_design)

    first = cached_vif(result, tmp_path, label='final')
    assert len(list(tmp_path.glob('vif_final_*.joblib'))) == 1

    def fail(_):
        raise AssertionError("VIF recomputed despite cache")

    monkeypatch.setattr(diagnostics, 'generalized_vif', fail)
    second = cached_vif(result, tmp_path, label='final')

    pd.testing.assert_frame_equal(first, second)


def test_cache_key_depends_on_rows(survey_design, design_frame, tmp_path):
    full = svyglm('y ~ x + z', survey_design)
    restricted = svyglm('y ~ x + z', survey_design, subset=design_frame['age'] < 70)

    assert diagnostics.vif_cache_path(full, tmp_path, 'm') != diagnostics.vif_cache_path(restricted, tmp_path, 'm')


def test_wald_single_df_equals_squared_t(survey_design):
    result = svyglm('y ~ x + z', survey_design)

    wald = wald_type2(result).set_index('term')

    assert list(wald.index) == ['x', 'z']
    for term in ['x', 'z']:
        assert wald.loc[term, 'chisq'] == pytest.approx(result.tvalues[term] ** 2)
        assert wald.loc[term, 'df'] == 1
        assert wald.loc[term, 'ddf'] == result.df_resid


def test_wald_categorical_and_interaction(design_frame):
    from src.models.survey import SurveyDesign

    df = design_frame.assign(group=np.where(design_frame['z'] > 0, 'a', 'b'),
                             band=pd.cut(design_frame['age'], [0, 40, 60, 100], labels=['lo', 'mid', 'hi']).astype(str))
    design = SurveyDesign(df, cluster='psu', strata='stratum', weights='weight')
    result = svyglm('y ~ x * age + C(band)', design)

    wald = wald_type2(result).set_index('term')

    assert wald.loc['C(band)', 'df'] == 2
    assert wald.loc['x:age', 'df'] == 1
    # Highest-order term has no relatives: its test is the plain Wald test
    assert wald.loc['x:age', 'chisq'] == pytest.approx(result.tvalues['x:age'] ** 2)
    assert (wald['p_value'].between(0, 1)).all()


def test_wald_matches_statsmodels_cluster_wald_test():
    from src.models.survey import SurveyDesign

    df = simulate_design_frame(n=600, n_strata=1, psu_per_stratum=60, cluster_share=0.5, seed=11)
    df['band'] = pd.cut(df['age'], [0, 40, 60, 100], labels=['lo', 'mid', 'hi']).astype(str)
    design = SurveyDesign(df, cluster='psu', strata='stratum', weights='weight')
    result = svyglm('y ~ x + C(band)', design)

    reference = sm.GLM(
        result.endog, result.exog, family=sm.families.Binomial(), var_weights=result.weights,
    ).fit(cov_type='cluster', cov_kwds={'groups': df['psu'].to_numpy(), 'use_correction': False})
    columns = list(result.exog.columns)
    band = [columns.index(c) for c in result.term_slices['C(band)']]
    restriction = np.eye(len(columns))[band]
    expected = reference.wald_test(restriction, use_f=False, scalar=True).statistic

    wald = wald_type2(result).set_index('term')

    # Design covariance is G/(G-1) times the cluster-robust one
    assert wald.loc['C(band)', 'chisq'] == pytest.approx(expected * 59 / 60, rel=1e-4)
    assert wald.loc['C(band)', 'df'] == 2


def test_box_tidwell_reports_interaction_term(survey_design):
    table = box_tidwell(survey_design, 'y', 'age')

    row = table.iloc[0]
    assert row['term'] == 'age_log_age'
    assert 0 <= row['p_value'] <= 1
    assert row['nonlinear'] == (row['p_value'] < 0.05)
    assert row['n'] == survey_design.n_obs


def test_box_tidwell_excludes_non_positive(design_frame):
    from src.models.survey import SurveyDesign

    df = design_frame.copy()
    df.loc[df.index[:5], 'age'] = 0.0
    design = SurveyDesign(df, cluster='psu', strata='stratum', weights='weight')

    table = box_tidwell(design, 'y', 'age')

    assert table.iloc[0]['n'] == len(df) - 5
