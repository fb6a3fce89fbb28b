import numpy as np
import pandas as pd
import pytest

import school_data_lib
from conftest import make_school_table


NUMERIC = ["pct_attainment", "pct_absence_overall", "pupils_per_teacher"]
CATEGORICAL = ["ofsted_rating", "admissions_type"]


@pytest.fixture
def holey():
    df = make_school_table(n=60, seed=3)
    df.loc[df.index[[1, 5, 9, 20]], "pct_attainment"] = np.nan
    df.loc[df.index[[2, 7]], "pct_absence_overall"] = np.nan
    df.loc[df.index[[3, 11, 30]], "ofsted_rating"] = np.nan
    df.loc[df.index[[4, 12]], "admissions_type"] = np.nan
    df.loc[df.index[[0, 8]], "pct_fsm"] = np.nan
    return df


def impute(df, seed=500, n_rounds=2):
    return school_data_lib.impute_columns(
        df, NUMERIC, CATEGORICAL, seed=seed, n_rounds=n_rounds, max_iter=2,
        show_progress=False,
    )


def test_designated_columns_filled(holey):
    out, report = impute(holey)

    assert out[NUMERIC + CATEGORICAL].notna().all().all()
    assert report["filled_cells"]["pct_attainment"] == 4
    assert report["filled_cells"]["ofsted_rating"] == 3


def test_other_columns_untouched(holey):
    out, _ = impute(holey)

    others = [c for c in holey.columns if c not in NUMERIC + CATEGORICAL]
    pd.testing.assert_frame_equal(out[others], holey[others])
    assert out["pct_fsm"].isna().sum() == 2


def test_observed_values_preserved(holey):
    out, _ = impute(holey)
    observed = holey["pct_attainment"].notna()
    pd.testing.assert_series_equal(
        out.loc[observed, "pct_attainment"], holey.loc[observed, "pct_attainment"]
    )


def test_imputed_values_come_from_donors(holey):
    out, _ = impute(holey)

    missing = holey["pct_attainment"].isna()
    donors = set(holey["pct_attainment"].dropna())
    assert set(out.loc[missing, "pct_attainment"]) <= donors

    missing_rating = holey["ofsted_rating"].isna()
    assert set(out.loc[missing_rating, "ofsted_rating"]) <= {1.0, 2.0, 3.0, 4.0}
    assert set(out["admissions_type"]) <= {"Comprehensive", "Selective"}


def test_same_seed_reproducible(holey):
    first, _ = impute(holey, seed=11)
    second, _ = impute(holey, seed=11)
    pd.testing.assert_frame_equal(first, second)


def test_first_round_is_returned(holey):
    single, _ = impute(holey, seed=11, n_rounds=1)
    several, report = impute(holey, seed=11, n_rounds=4)

    pd.testing.assert_frame_equal(single, several)
    assert report["n_rounds"] == 4
    assert set(report["round_variance"]) == {"pct_attainment", "pct_absence_overall"}


def test_single_level_categorical_rejected(holey):
    holey["admissions_type"] = "Comprehensive"
    holey.loc[holey.index[0], "admissions_type"] = np.nan

    with pytest.raises(school_data_lib.ImputationError) as excinfo:
        impute(holey)
    assert excinfo.value.column == "admissions_type"


def test_unobserved_numeric_rejected(holey):
    holey["pct_absence_overall"] = np.nan

    with pytest.raises(school_data_lib.ImputationError, match="pct_absence_overall"):
        impute(holey)


def test_absent_column_is_schema_error(holey):
    with pytest.raises(school_data_lib.SchemaError):
        school_data_lib.impute_columns(
            holey, ["not_a_column"], [], seed=1, show_progress=False
        )


def test_pruned_designated_columns_skipped(holey, config):
    config["imputation"]["numeric_columns"] = ["pct_attainment", "pct_absence_persistent"]
    config["imputation"]["categorical_columns"] = ["ofsted_rating"]
    pruned = holey.drop(columns=["pct_absence_persistent"])

    out, report = school_data_lib.impute_designated_columns(pruned, config, show_progress=False)

    assert report["skipped_columns"] == ["pct_absence_persistent"]
    assert out["pct_attainment"].notna().all()


def test_blank_is_not_a_level(holey):
    holey["admissions_type"] = "Comprehensive"
    holey.loc[holey.index[[0, 1]], "admissions_type"] = ["", "  "]

    with pytest.raises(school_data_lib.ImputationError) as excinfo:
        impute(holey)
    assert excinfo.value.column == "admissions_type"


def test_blanks_imputed_as_missing(holey):
    holey.loc[holey.index[[0, 1]], "admissions_type"] = ["", " "]

    out, report = impute(holey)

    assert report["filled_cells"]["admissions_type"] == 4
    assert set(out["admissions_type"]) <= {"Comprehensive", "Selective"}


def test_float_coded_rating_imputed_to_codes(holey):
    out, _ = school_data_lib.impute_columns(
        holey, ["pct_attainment"], ["ofsted_rating"], seed=3, n_rounds=2, max_iter=2,
        show_progress=False,
    )

    assert out["ofsted_rating"].dtype == holey["ofsted_rating"].dtype
    assert out["ofsted_rating"].notna().all()
    assert set(out["ofsted_rating"]) <= {1.0, 2.0, 3.0, 4.0}
