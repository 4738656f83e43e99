import numpy as np
import pandas as pd
import pytest

from src.data.cleaners import (
    add_complete_case_flag,
    apply_recodes,
    filter_eligible,
    prepare_respondents,
    recode_categorical,
    recode_numeric,
    select_and_rename,
)
from src.data.loaders import get_data_path, load_merged_dataset, load_survey_file
from src.data.validators import (
    check_design_fields,
    check_ranges,
    check_unique_identifier,
)


def test_recode_categorical_sentinels_become_missing():
    raw = pd.Series([1, 2, 7, 9, 5])

    recoded = recode_categorical(raw, {1: "Yes", 2: "No"}, missing_codes=[7, 8, 9])

    assert recoded.iloc[0] == "Yes"
    assert recoded.iloc[1] == "No"
    # Sentinels and unmatched codes are missing, never a category
    assert recoded.iloc[2:].isna().all()


def test_recode_numeric_range_and_sentinels():
    raw = pd.Series([7, 99, 30, 0.5, 24])

    recoded = recode_numeric(raw, valid_range=[1, 24], missing_codes=[97, 98, 99])

    assert recoded.iloc[0] == 7
    assert np.isnan(recoded.iloc[1])
    assert np.isnan(recoded.iloc[2])
    assert np.isnan(recoded.iloc[3])
    assert recoded.iloc[4] == 24


def test_apply_recodes_is_deterministic(raw_survey, config):
    renamed = select_and_rename(raw_survey, config["data"]["columns"])

    first, log_first = apply_recodes(renamed, config["recodes"])
    second, log_second = apply_recodes(renamed, config["recodes"])

    pd.testing.assert_frame_equal(first, second)
    assert log_first == log_second
    assert log_first["hours_sleep"] == 20


def test_apply_recodes_labels(raw_survey, config):
    renamed = select_and_rename(raw_survey, config["data"]["columns"])

    recoded, _ = apply_recodes(renamed, config["recodes"])

    assert set(recoded["sex"].dropna()) <= {"Male", "Female"}
    assert recoded.loc[renamed["sex"] == 7, "sex"].isna().all()
    assert set(recoded["high_cholesterol"].dropna()) <= {0, 1}
    assert recoded.loc[renamed["education"] == 97, "education"].isna().all()
    assert set(recoded["education"].dropna()) == {
        "Less than high school", "High school/GED", "Some college", "Bachelor or higher",
    }


def test_select_and_rename_missing_field_raises(raw_survey, config):
    with pytest.raises(KeyError):
        select_and_rename(raw_survey.drop(columns=["PSU_P"]), config["data"]["columns"])


def test_filter_eligible_is_idempotent(raw_survey, config):
    renamed = select_and_rename(raw_survey, config["data"]["columns"])
    eligibility = config["data"]["eligibility"]

    once = filter_eligible(renamed, eligibility["interview_outcome"], eligibility["sample_adult_flag"])
    twice = filter_eligible(once, eligibility["interview_outcome"], eligibility["sample_adult_flag"])

    pd.testing.assert_frame_equal(once, twice)
    assert once["interview_outcome"].isin([1, 2]).all()
    assert (once["sample_adult_flag"] == 1).all()


def test_complete_case_flag_matches_fields():
    df = pd.DataFrame({
        "sex": ["Male", None, "Female"],
        "hours_sleep": [7.0, 8.0, np.nan],
        "age": [np.nan, 40.0, 50.0],
    })

    flagged = add_complete_case_flag(df, ["sex", "hours_sleep"])

    assert flagged["complete_case"].tolist() == [True, False, False]
    # Rows are never dropped
    assert len(flagged) == len(df)


def test_prepare_respondents_complete_case_property(raw_survey, config):
    prepared, report = prepare_respondents(raw_survey, config)

    fields = config["recodes"]["complete_case_fields"]
    expected = prepared[fields].notna().all(axis=1)
    assert prepared["complete_case"].tolist() == expected.tolist()
    assert report["input_rows"] == len(raw_survey)
    assert report["output_rows"] == len(prepared)
    assert report["steps"]["complete_cases"] == int(expected.sum())


def test_check_unique_identifier_rejects_duplicates():
    df = pd.DataFrame({"household_id": [1, 1], "family_id": [1, 1], "person_id": [1, 1]})

    with pytest.raises(ValueError):
        check_unique_identifier(df, ["household_id", "family_id", "person_id"])


def test_check_design_fields():
    df = pd.DataFrame({"psu": [1, 2], "stratum": [1, 1], "weight": [100.0, 0.0]})

    with pytest.raises(ValueError):
        check_design_fields(df, "psu", "stratum", "weight")
    with pytest.raises(KeyError):
        check_design_fields(df.drop(columns=["psu"]), "psu", "stratum", "weight")


def test_check_ranges_reports_violations():
    df = pd.DataFrame({"hours_sleep": [0.0, 8.0, 30.0, np.nan]})

    results = check_ranges(df, {"hours_sleep": (1, 24)})

    row = results.iloc[0]
    assert row["n_below_min"] == 1
    assert row["n_above_max"] == 1


def test_load_merged_dataset_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_merged_dataset(path=tmp_path / "missing.csv")


def test_get_data_path_uses_year(config, tmp_path):
    path = get_data_path(2015, raw_dir=tmp_path, config=config)

    assert path == tmp_path / "2015" / "nhis_2015_merged.csv"


def test_load_survey_file_rejects_unknown_format(tmp_path):
    path = tmp_path / "respondents.json"
    path.write_text("{}")

    with pytest.raises(ValueError):
        load_survey_file(path)


