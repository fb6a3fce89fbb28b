import json

import pytest

import school_data_lib


def test_default_config_validates():
    assert school_data_lib.validate_config(school_data_lib.get_default_config())


def test_default_config_values():
    config = school_data_lib.get_default_config()
    assert config["profiling"]["missing_threshold"] == 0.30
    assert config["profiling"]["key_columns"] == ["pct_attainment", "pct_fsm", "pupils_per_teacher"]
    assert config["clustering"]["n_clusters"] == 3
    assert config["clustering"]["n_init"] == 25
    assert config["transition"]["percentile"] == 0.85


def test_missing_config_file_falls_back_to_defaults(tmp_path):
    config = school_data_lib.load_config(str(tmp_path / "absent.json"))
    assert config == school_data_lib.get_default_config()


def test_invalid_json_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert school_data_lib.load_config(str(path)) == school_data_lib.get_default_config()


def test_config_file_is_loaded(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"random": {"seed": 7}}))
    assert school_data_lib.load_config(str(path)) == {"random": {"seed": 7}}


def test_validation_collects_every_error():
    config = school_data_lib.get_default_config()
    config["profiling"]["missing_threshold"] = 1.5
    config["clustering"]["n_clusters"] = 1
    config["transition"]["percentile"] = 1.0
    config["imputation"]["categorical_columns"].append("pct_attainment")

    with pytest.raises(ValueError) as excinfo:
        school_data_lib.validate_config(config)

    message = str(excinfo.value)
    assert "Missing threshold" in message
    assert "Cluster count" in message
    assert "Transition percentile" in message
    assert "pct_attainment" in message


def test_validation_reports_missing_section():
    config = school_data_lib.get_default_config()
    del config["random"]
    with pytest.raises(ValueError, match="random"):
        school_data_lib.validate_config(config)


def test_unknown_key_column_policy_rejected():
    config = school_data_lib.get_default_config()
    config["profiling"]["key_column_policy"] = "drop"
    with pytest.raises(ValueError, match="Key column policy"):
        school_data_lib.validate_config(config)
