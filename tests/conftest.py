import copy

import numpy as np
import pandas as pd
import pytest

import school_data_lib


def make_school_table(n=40, seed=0):
    """Complete, consistent synthetic school table indexed by school id"""
    rng = np.random.default_rng(seed)
    boys = rng.integers(100, 600, n).astype(float)
    girls = rng.integers(100, 600, n).astype(float)
    data = {
        "school_id": np.arange(100001, 100001 + n),
        "borough": rng.choice(["Camden", "Hackney", "Lambeth", "Barnet"], n),
        "school_type": rng.choice(["Academy", "Community", "Free school"], n),
        "denomination": rng.choice(["None", "Church of England", "Roman Catholic"], n),
        "admissions_type": rng.choice(["Comprehensive", "Selective"], n),
        "gender": ["Mixed"] * n,
        "ofsted_rating": rng.choice([1.0, 2.0, 3.0, 4.0], n),
        "num_boys": boys,
        "num_girls": girls,
        "num_pupils": boys + girls,
        "pupils_per_teacher": rng.uniform(12, 22, n),
        "pct_attainment": rng.uniform(30, 90, n),
        "pct_fsm": rng.uniform(5, 50, n),
        "pct_absence_overall": rng.uniform(3, 8, n),
        "pct_absence_persistent": rng.uniform(5, 20, n),
        "latitude": rng.uniform(51.3, 51.7, n),
        "longitude": rng.uniform(-0.5, 0.3, n),
    }
    for col in school_data_lib.DEPRIVATION_COLUMNS:
        data[col] = rng.uniform(0, 1, n)
    return pd.DataFrame(data).set_index("school_id")


@pytest.fixture
def schools():
    return make_school_table()


@pytest.fixture
def config():
    cfg = copy.deepcopy(school_data_lib.get_default_config())
    cfg["imputation"]["n_rounds"] = 2
    cfg["imputation"]["max_iter"] = 2
    cfg["clustering"]["n_init"] = 5
    return cfg
