import numpy as np
import pandas as pd
import pytest

from src.data.loaders import load_config
from src.models.survey import SurveyDesign


def make_raw_survey(n=1000, n_strata=25, psu_per_stratum=4, seed=0):
    """Merged respondent file with raw survey codes, sentinels included."""
    rng = np.random.default_rng(seed)
    idx = np.arange(n)

    age = rng.integers(18, 86, size=n)
    sleep = rng.integers(4, 11, size=n).astype(float)
    logit = -1.0 + 0.4 * (sleep >= 7) + 0.03 * (age - 50)
    high_chol = np.where(rng.random(n) < 1 / (1 + np.exp(-logit)), 1, 2)

    raw = pd.DataFrame({
        'HHX': idx + 1,
        'FMX': 1,
        'FPX': 1,
        'PSU_P': (idx // n_strata) % psu_per_stratum + 1,
        'STRAT_P': idx % n_strata + 1,
        'WTFA_SA': rng.uniform(500, 5000, size=n).round(1),
        'INTV_STAT': rng.choice([1, 2, 3], size=n, p=[0.85, 0.1, 0.05]),
        'ASTATFLG': rng.choice([1, 2], size=n, p=[0.9, 0.1]),
        'AGE_P': age,
        'SEX': rng.choice([1, 2, 7], size=n, p=[0.48, 0.5, 0.02]),
        'RACERPI2': rng.choice([1, 2, 3, 4, 5, 6], size=n, p=[0.6, 0.15, 0.05, 0.1, 0.05, 0.05]),
        'EDUC1': rng.choice([8, 12, 13, 14, 15, 17, 18, 20, 97], size=n,
                            p=[0.05, 0.1, 0.2, 0.1, 0.15, 0.1, 0.15, 0.1, 0.05]),
        'LAHCA7': rng.choice([1, 2, 9], size=n, p=[0.1, 0.88, 0.02]),
        'DIETCOUN': rng.choice([1, 2], size=n, p=[0.3, 0.7]),
        'EXERCOUN': rng.choice([1, 2], size=n, p=[0.35, 0.65]),
        'CHLEV': high_chol,
        'ASISLEEP': sleep,
    })
    # Refused / don't know sleep hours
    raw.loc[rng.choice(n, size=20, replace=False), 'ASISLEEP'] = 99
    raw.loc[rng.choice(n, size=10, replace=False), 'CHLEV'] = 9
    return raw


def _clustered_uniform(rng, cluster, n_clusters, share):
    """Uniform(0, 1) draws where a ``share`` of rows reuse their cluster's draw."""
    shared = rng.random(n_clusters)[cluster]
    own = rng.random(len(cluster))
    return np.where(rng.random(len(cluster)) < share, shared, own)


def simulate_design_frame(n=1000, n_strata=25, psu_per_stratum=4, log_or=np.log(1.5),
                          intercept=-0.5, cluster_share=0.0, seed=0):
    """
    Binary exposure and outcome on a stratified clustered sample.

    With ``cluster_share > 0`` exposure and outcome are correlated within
    PSUs while P(y=1 | x) stays exactly logistic, so ``log_or`` remains the
    population log odds ratio.
    """
    rng = np.random.default_rng(seed)
    idx = np.arange(n)
    stratum = idx % n_strata
    psu = (idx // n_strata) % psu_per_stratum
    cluster = stratum * psu_per_stratum + psu
    n_clusters = n_strata * psu_per_stratum

    x = (_clustered_uniform(rng, cluster, n_clusters, cluster_share) < 0.5).astype(float)
    p = 1 / (1 + np.exp(-(intercept + log_or * x)))
    y = (_clustered_uniform(rng, cluster, n_clusters, cluster_share) < p).astype(float)
    return pd.DataFrame({
        'stratum': stratum,
        'psu': psu,
        'weight': rng.uniform(0.5, 2.0, size=n),
        'x': x,
        'z': rng.normal(size=n),
        'age': rng.uniform(18, 85, size=n),
        'y': y,
    })


@pytest.fixture
def config():
    return load_config()


@pytest.fixture
def raw_survey():
    return make_raw_survey()


@pytest.fixture
def design_frame():
    return simulate_design_frame(n=600, seed=1)


@pytest.fixture
def survey_design(design_frame):
    return SurveyDesign(design_frame, cluster='psu', strata='stratum', weights='weight')
