"""
Shared library for London school data cleaning

Contains the configuration layer and the data-quality stages used by
generate_school_data.py: loading, encoding normalisation, missingness
profiling, imputation, consistency repair and outlier reporting.

Every stage takes a table indexed by school id and returns a new table plus
a small report dict, so row and column drops are always observable.
"""

import os
import json
import logging

import pandas as pd
import numpy as np
from sklearn.linear_model import LinearRegression, LogisticRegression
from sklearn.preprocessing import StandardScaler
from tqdm import tqdm


# Constants
TUKEY_FENCE_MULTIPLIER = 1.5  # Classic boxplot whisker length in IQRs
DEPRIVATION_COLUMNS = [
    "income_score",
    "employment_score",
    "education_score",
    "health_score",
    "crime_score",
    "barriers_score",
    "living_env_score",
]


class PipelineError(ValueError):
    """Base class for fatal pipeline errors"""


class SchemaError(PipelineError):
    """A required or designated column is absent from the table"""


class ImputationError(PipelineError):
    """Imputation is undefined for a designated column"""

    def __init__(self, column, message):
        self.column = column
        super().__init__(f"Cannot impute column '{column}': {message}")


class ClusteringError(PipelineError):
    """Clustering is undefined for the requested subset"""


def load_config(config_path="config.json"):
    """Load configuration from JSON file"""
    try:
        with open(config_path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        logging.warning(f"Config file {config_path} not found. Using default values.")
        return get_default_config()
    except json.JSONDecodeError as e:
        logging.error(f"Error parsing config file: {e}. Using default values.")
        return get_default_config()


def get_default_config():
    """Return default configuration if config file is missing"""
    return {
        "data": {
            "input_csv": "london_schools.csv",
            "id_column": "school_id",
            "required_columns": [
                "school_id",
                "borough",
                "school_type",
                "gender",
                "ofsted_rating",
                "num_pupils",
                "num_boys",
                "num_girls",
                "pupils_per_teacher",
                "pct_attainment",
                "pct_fsm",
            ],
            "location_columns": ["latitude", "longitude"],
        },
        "encoding": {
            "gender_aliases": {
                "mixed": "Mixed",
                "co-ed": "Mixed",
                "coeducational": "Mixed",
                "boys": "Boys",
                "boy": "Boys",
                "b": "Boys",
                "girls": "Girls",
                "girl": "Girls",
                "g": "Girls",
            },
            "rating_codes": {
                "outstanding": 1,
                "good": 2,
                "requires improvement": 3,
                "satisfactory": 3,
                "inadequate": 4,
            },
        },
        "profiling": {
            "missing_threshold": 0.30,
            "key_columns": ["pct_attainment", "pct_fsm", "pupils_per_teacher"],
            "key_column_policy": "skip",
        },
        "imputation": {
            "numeric_columns": [
                "pct_absence_overall",
                "pct_absence_persistent",
                "pupils_per_teacher",
                "pct_attainment",
            ],
            "categorical_columns": ["ofsted_rating", "admissions_type"],
            "n_rounds": 5,
            "max_iter": 5,
            "n_donors": 5,
        },
        "repair": {"boys_only_label": "Boys", "girls_only_label": "Girls"},
        "clustering": {
            "n_clusters": 3,
            "n_init": 25,
            "elbow_range": [2, 20],
            "run_elbow": False,
            "runs": {
                "general": {"features": None, "space": "standardized"},
                "deprivation": {"features": list(DEPRIVATION_COLUMNS), "space": "pca"},
                "performance": {
                    "features": [
                        "pct_attainment",
                        "pct_absence_overall",
                        "ofsted_rating",
                        "pupils_per_teacher",
                    ],
                    "space": "pca",
                },
            },
        },
        "transition": {"percentile": 0.85},
        "random": {"seed": 500},
        "output": {
            "cleaned_csv": "cleaned_school_data.csv",
            "profile_csv": "column_profile.csv",
            "outliers_csv": "outlier_summary.csv",
            "clusters_csv": "cluster_assignments.csv",
            "elbow_csv": "elbow_scan.csv",
            "log_file": "school_pipeline.log",
        },
    }


def validate_config(config):
    """
    Validate configuration values are reasonable and within acceptable ranges

    Args:
        config: Configuration dictionary to validate

    Raises:
        ValueError: If any configuration value is invalid

    Returns:
        bool: True if validation passes
    """
    errors = []

    # Profiling validation
    try:
        threshold = config["profiling"]["missing_threshold"]
        if not (0 <= threshold <= 1):
            errors.append("Missing threshold must be between 0 and 1 (got {})".format(threshold))
        policy = config["profiling"]["key_column_policy"]
        if policy not in ("skip", "protect"):
            errors.append("Key column policy must be 'skip' or 'protect' (got {})".format(policy))
        if not isinstance(config["profiling"]["key_columns"], list):
            errors.append("Key columns must be a list")
    except KeyError as e:
        errors.append(f"Missing profiling config key: {e}")

    # Imputation validation
    try:
        numeric_cols = set(config["imputation"]["numeric_columns"])
        categorical_cols = set(config["imputation"]["categorical_columns"])
        overlap = numeric_cols & categorical_cols
        if overlap:
            errors.append(
                "Columns cannot be imputed as both numeric and categorical: {}".format(
                    sorted(overlap)
                )
            )
        for key in ("n_rounds", "max_iter", "n_donors"):
            if config["imputation"][key] < 1:
                errors.append("Imputation {} must be at least 1 (got {})".format(
                    key, config["imputation"][key]))
    except KeyError as e:
        errors.append(f"Missing imputation config key: {e}")

    # Clustering validation
    try:
        n_clusters = config["clustering"]["n_clusters"]
        if n_clusters < 2:
            errors.append("Cluster count must be at least 2 (got {})".format(n_clusters))
        n_init = config["clustering"]["n_init"]
        if n_init < 1:
            errors.append("K-means initialisations must be at least 1 (got {})".format(n_init))
        low, high = config["clustering"]["elbow_range"]
        if low < 1 or high < low:
            errors.append("Elbow range must satisfy 1 <= low <= high (got {})".format([low, high]))
        for name, run in config["clustering"]["runs"].items():
            if run.get("space", "standardized") not in ("standardized", "pca"):
                errors.append("Run '{}' space must be 'standardized' or 'pca' (got {})".format(
                    name, run.get("space")))
            if run.get("n_clusters") is not None and run["n_clusters"] < 2:
                errors.append("Run '{}' cluster count must be at least 2 (got {})".format(
                    name, run["n_clusters"]))
    except KeyError as e:
        errors.append(f"Missing clustering config key: {e}")
    except (TypeError, ValueError):
        errors.append("Elbow range must be a pair [low, high]")

    # Transition validation
    try:
        percentile = config["transition"]["percentile"]
        if not (0 < percentile < 1):
            errors.append("Transition percentile must be between 0 and 1 (got {})".format(percentile))
    except KeyError as e:
        errors.append(f"Missing transition config key: {e}")

    try:
        seed = config["random"]["seed"]
        if not isinstance(seed, int) or isinstance(seed, bool):
            errors.append("Random seed must be an integer (got {})".format(seed))
    except KeyError as e:
        errors.append(f"Missing random config key: {e}")

    # If there are errors, raise with all messages
    if errors:
        error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        raise ValueError(error_msg)

    logging.info("✓ Configuration validated successfully")
    return True


def load_school_table(csv_path, config):
    """
    Load the raw school table from CSV and index it by school id

    Args:
        csv_path: Path to the joined schools/deprivation CSV
        config: Configuration dictionary

    Returns:
        pd.DataFrame or None: Raw table, or None if the file is missing
    """
    id_column = config["data"]["id_column"]
    try:
        df = pd.read_csv(csv_path, low_memory=False)
    except FileNotFoundError:
        logging.error(f"School data file {csv_path} not found")
        return None

    logging.info(f"Loaded {len(df)} rows, {len(df.columns)} columns from {csv_path}")
    validate_schema(df, [id_column])
    return df.set_index(id_column, drop=True)


def validate_schema(df, required_columns):
    """Raise SchemaError if any required column is absent"""
    present = set(df.columns) | {df.index.name}
    missing = [c for c in required_columns if c not in present]
    if missing:
        raise SchemaError(f"Missing required columns: {missing}")


def is_text_column(series):
    """True for object or string dtype columns"""
    return pd.api.types.is_object_dtype(series) or pd.api.types.is_string_dtype(series)


def blank_mask(df):
    """Boolean frame marking missing values and blank strings"""
    mask = df.isna()
    for col in df.columns:
        if is_text_column(df[col]):
            mask[col] = mask[col] | df[col].astype(str).str.strip().eq("")
    return mask


def standardize_encodings(df, config):
    """
    Normalise inconsistent categorical encodings

    Strips surrounding whitespace from text columns and turns blanks into
    missing values, maps gender policy spellings onto canonical labels and
    converts inspection rating text into ordinal codes.

    Returns:
        tuple: (normalised dataframe, dict of recoded value counts per column)
    """
    out = df.copy()
    recoded = {}

    for col in out.columns:
        if is_text_column(out[col]):
            stripped = out[col].where(out[col].isna(), out[col].astype(str).str.strip())
            out[col] = stripped.replace("", np.nan)

    gender_aliases = config["encoding"]["gender_aliases"]
    if "gender" in out.columns and is_text_column(out["gender"]):
        before = out["gender"].copy()
        lowered = out["gender"].str.lower()
        mapped = lowered.map(gender_aliases)
        out["gender"] = mapped.where(mapped.notna(), out["gender"]).astype(object)
        recoded["gender"] = int((before.notna() & (before != out["gender"])).sum())

    rating_codes = config["encoding"]["rating_codes"]
    if "ofsted_rating" in out.columns and is_text_column(out["ofsted_rating"]):
        lowered = out["ofsted_rating"].str.lower()
        codes = lowered.map(rating_codes)
        numeric = pd.to_numeric(out["ofsted_rating"], errors="coerce")
        recoded["ofsted_rating"] = int(codes.notna().sum())
        unmapped = out["ofsted_rating"].notna() & codes.isna() & numeric.isna()
        recoded["ofsted_rating_unmapped"] = int(unmapped.sum())
        if unmapped.any():
            logging.warning(
                f"Unrecognised ofsted_rating values treated as missing: "
                f"{sorted(out.loc[unmapped, 'ofsted_rating'].astype(str).unique())}"
            )
        out["ofsted_rating"] = codes.astype(float).fillna(numeric)

    for col, n in recoded.items():
        if n and not col.endswith("_unmapped"):
            logging.info(f"Recoded {n} values in '{col}'")
    return out, recoded


def column_type(series):
    """Tag a column as numeric or categorical"""
    return "numeric" if pd.api.types.is_numeric_dtype(series) else "categorical"


def missing_fractions(df):
    """Fraction of missing-or-blank values per column"""
    if len(df) == 0:
        return pd.Series(0.0, index=df.columns)
    return blank_mask(df).sum() / len(df)


def drop_sparse_columns(df, threshold, protected=()):
    """
    Drop columns whose missing fraction exceeds threshold

    Args:
        df: Table to prune
        threshold: Maximum tolerated missing fraction
        protected: Columns that are never dropped

    Returns:
        tuple: (pruned dataframe, list of dropped column names)
    """
    fractions = missing_fractions(df)
    dropped = [
        col for col, frac in fractions.items()
        if frac > threshold and col not in protected
    ]
    return df.drop(columns=dropped), dropped


def profile_missingness(df, config):
    """
    Profile missingness and apply the two-phase column/row filter

    Phase one drops every column whose missing fraction exceeds the
    configured threshold. Phase two drops rows missing any retained key
    column. Dropping rows can push another column over the threshold, so
    both phases repeat until neither removes anything; a second run on the
    output drops nothing further. A key column removed in phase one is not
    checked in phase two unless the key column policy is "protect", which
    exempts key columns from phase one.

    Args:
        df: Raw table (after encoding normalisation)
        config: Configuration dictionary

    Returns:
        tuple: (filtered dataframe, column profile dataframe, report dict)
    """
    threshold = config["profiling"]["missing_threshold"]
    key_columns = list(config["profiling"]["key_columns"])
    policy = config["profiling"]["key_column_policy"]

    fractions = missing_fractions(df)
    protected = [c for c in key_columns if c in df.columns] if policy == "protect" else []

    df_out = df
    dropped_columns = []
    dropped_rows = 0
    passes = 0
    while True:
        passes += 1
        pass_fractions = missing_fractions(df_out)
        df_out, pass_columns = drop_sparse_columns(df_out, threshold, protected)
        for col in pass_columns:
            logging.info(
                f"Dropping column '{col}': {pass_fractions[col]:.1%} missing (> {threshold:.0%})"
            )
        dropped_columns.extend(pass_columns)

        checked_keys = [c for c in key_columns if c in df_out.columns]
        if checked_keys:
            row_missing = blank_mask(df_out[checked_keys]).any(axis=1)
        else:
            row_missing = pd.Series(False, index=df_out.index)
        df_out = df_out.loc[~row_missing]
        dropped_rows += int(row_missing.sum())

        if not pass_columns and not row_missing.any():
            break

    df_out = df_out.copy()
    unchecked_keys = [c for c in key_columns if c not in df_out.columns]
    if unchecked_keys:
        logging.warning(f"Key columns not available for row filtering: {unchecked_keys}")

    # Blank strings are missing from here on
    for col in df_out.columns:
        if is_text_column(df_out[col]):
            df_out[col] = df_out[col].replace(r"^\s*$", np.nan, regex=True)

    logging.info(
        f"Dropped {len(dropped_columns)} columns and {dropped_rows} rows "
        f"missing key columns in {passes} passes; {len(df_out)} rows remain"
    )

    decisions = []
    for col, frac in fractions.items():
        if col in dropped_columns:
            decision = "drop-column"
        elif col in checked_keys:
            decision = "require-non-null"
        else:
            decision = "keep"
        decisions.append({
            "column": col,
            "missing_fraction": float(frac),
            "type": column_type(df[col]),
            "decision": decision,
        })
    profile = (
        pd.DataFrame(decisions, columns=["column", "missing_fraction", "type", "decision"])
        .sort_values("missing_fraction", ascending=False, kind="mergesort")
        .reset_index(drop=True)
    )

    report = {
        "rows_before": int(len(df)),
        "rows_after": int(len(df_out)),
        "dropped_columns": dropped_columns,
        "dropped_rows": dropped_rows,
        "passes": passes,
        "unchecked_key_columns": unchecked_keys,
    }
    return df_out, profile, report


def _design_matrix(filled, target, columns, categorical_columns):
    """Predictor matrix from the other imputation columns"""
    predictors = [c for c in columns if c != target]
    if not predictors:
        return np.ones((len(filled), 1))

    parts = []
    numeric = [c for c in predictors if c not in categorical_columns]
    if numeric:
        parts.append(StandardScaler().fit_transform(filled[numeric].astype(float)))
    categorical = [c for c in predictors if c in categorical_columns]
    if categorical:
        dummies = pd.get_dummies(filled[categorical].astype(str), drop_first=True)
        if dummies.shape[1]:
            parts.append(dummies.to_numpy(dtype=float))
    if not parts:
        return np.ones((len(filled), 1))
    return np.hstack(parts)


def _pmm_draw(X, y, observed, rng, n_donors):
    """
    Predictive mean matching for one numeric column

    Fits a linear model on a bootstrap sample of the observed rows, predicts
    every row, and for each missing row copies the observed value of a donor
    drawn at random from the n_donors observed rows whose predictions (from
    the full-sample fit) are closest.
    """
    obs_idx = np.flatnonzero(observed)
    mis_idx = np.flatnonzero(~observed)
    y_obs = y[obs_idx]

    if len(np.unique(y_obs)) == 1:
        return np.full(len(mis_idx), y_obs[0])

    boot = rng.choice(obs_idx, size=len(obs_idx), replace=True)
    model_hat = LinearRegression().fit(X[obs_idx], y_obs)
    model_dot = LinearRegression().fit(X[boot], y[boot])

    pred_obs = model_hat.predict(X[obs_idx])
    pred_mis = model_dot.predict(X[mis_idx])

    k = min(n_donors, len(obs_idx))
    distances = np.abs(pred_mis[:, None] - pred_obs[None, :])
    nearest = np.argsort(distances, axis=1, kind="stable")[:, :k]
    picks = rng.integers(0, k, size=len(mis_idx))
    return y_obs[nearest[np.arange(len(mis_idx)), picks]]


def _polyreg_draw(X, y, observed, rng):
    """
    Multinomial logistic regression draw for one categorical column

    Fits on a bootstrap sample of observed rows (falling back to all observed
    rows if the sample loses a level) and draws each missing value from its
    predicted class probabilities.
    """
    obs_idx = np.flatnonzero(observed)
    mis_idx = np.flatnonzero(~observed)

    boot = rng.choice(obs_idx, size=len(obs_idx), replace=True)
    if len(pd.unique(y[boot])) < 2:
        boot = obs_idx
    model = LogisticRegression(max_iter=1000)
    model.fit(X[boot], y[boot])

    probs = model.predict_proba(X[mis_idx])
    cumulative = probs.cumsum(axis=1)
    draws = rng.random(len(mis_idx))[:, None]
    choice = (draws > cumulative).sum(axis=1)
    choice = np.minimum(choice, len(model.classes_) - 1)
    return model.classes_[choice]


def _impute_round(df, numeric_columns, categorical_columns, rng, max_iter, n_donors):
    """Run one complete chained-equations round and return the filled columns"""
    columns = numeric_columns + categorical_columns
    filled = df[columns].copy()
    masks = {col: df[col].notna().to_numpy() for col in columns}

    for col in columns:
        observed_values = df[col].dropna().to_numpy()
        missing = ~masks[col]
        if missing.any():
            filled.loc[missing, col] = rng.choice(observed_values, size=int(missing.sum()))

    for _ in range(max_iter):
        for col in columns:
            observed = masks[col]
            if observed.all():
                continue
            X = _design_matrix(filled, col, columns, categorical_columns)
            if col in categorical_columns:
                # Integer codes keep sklearn's label checks happy for any level dtype
                codes, levels = pd.factorize(filled[col], sort=True)
                values = levels.take(_polyreg_draw(X, codes, observed, rng)).to_numpy()
            else:
                y = filled[col].to_numpy(dtype=float)
                values = _pmm_draw(X, y, observed, rng, n_donors)
            filled.loc[~observed, col] = values

    return filled


def impute_columns(df, numeric_columns, categorical_columns, seed,
                   n_rounds=5, max_iter=5, n_donors=5, show_progress=True):
    """
    Fill missing values in the designated columns by multiple imputation

    Numeric columns use predictive mean matching and categorical columns use
    multinomial logistic regression, each conditioned on the other
    designated columns. Several complete rounds are run, each from its own
    child of the seed, and the between-round variance is reported; the table
    returned carries the first round only.

    Args:
        df: Table after profiling
        numeric_columns: Columns imputed by predictive mean matching
        categorical_columns: Columns imputed by multinomial regression
        seed: Integer seed; identical input and seed give identical output
        n_rounds: Number of complete imputation rounds
        max_iter: Chained-equation sweeps per round
        n_donors: Donor pool size for predictive mean matching
        show_progress: Show a tqdm progress bar over rounds

    Raises:
        SchemaError: If a designated column is not in the table
        ImputationError: If a numeric column has no observed values or a
            categorical column has fewer than two observed levels

    Returns:
        tuple: (imputed dataframe, report dict)
    """
    numeric_columns = list(numeric_columns)
    categorical_columns = list(categorical_columns)
    validate_schema(df, numeric_columns + categorical_columns)

    # Blank strings are missing, not a level
    df = df.copy()
    for col in categorical_columns:
        if is_text_column(df[col]):
            df[col] = df[col].mask(blank_mask(df[[col]])[col])

    for col in numeric_columns:
        if df[col].notna().sum() == 0:
            raise ImputationError(col, "no observed values")
        if not pd.api.types.is_numeric_dtype(df[col]):
            raise ImputationError(col, "designated numeric but holds non-numeric values")
    for col in categorical_columns:
        levels = df[col].dropna().unique()
        if len(levels) < 2:
            raise ImputationError(col, f"only {len(levels)} observed level(s)")

    columns = numeric_columns + categorical_columns
    missing_counts = {col: int(df[col].isna().sum()) for col in columns}
    out = df.copy()
    report = {
        "filled_cells": missing_counts,
        "n_rounds": n_rounds,
        "round_variance": {},
    }
    if not any(missing_counts.values()):
        logging.info("No missing values in designated imputation columns")
        return out, report

    child_seeds = np.random.SeedSequence(seed).spawn(n_rounds)
    rounds = []
    for child in tqdm(child_seeds, desc="Imputation rounds", unit="round",
                      disable=not show_progress):
        rng = np.random.default_rng(child)
        rounds.append(_impute_round(df, numeric_columns, categorical_columns,
                                    rng, max_iter, n_donors))

    # Between-round spread of the imputed numeric cells
    for col in numeric_columns:
        missing = df[col].isna().to_numpy()
        if missing.any() and n_rounds > 1:
            draws = np.vstack([r[col].to_numpy(dtype=float)[missing] for r in rounds])
            report["round_variance"][col] = float(draws.var(axis=0, ddof=1).mean())

    first = rounds[0]
    for col in numeric_columns:
        out[col] = first[col].astype(float)
    for col in categorical_columns:
        out[col] = first[col].astype(df[col].dtype) if pd.api.types.is_numeric_dtype(df[col]) \
            else first[col]

    logging.info(
        f"Imputed {sum(missing_counts.values())} cells across {len(columns)} columns "
        f"({n_rounds} rounds, keeping round 1)"
    )
    return out, report


def impute_designated_columns(df, config, show_progress=True):
    """
    Impute the configured columns that survived profiling

    Designated columns removed by the profiler are skipped with a warning.
    """
    settings = config["imputation"]
    numeric = [c for c in settings["numeric_columns"] if c in df.columns]
    categorical = [c for c in settings["categorical_columns"] if c in df.columns]
    skipped = [
        c for c in settings["numeric_columns"] + settings["categorical_columns"]
        if c not in df.columns
    ]
    if skipped:
        logging.warning(f"Skipping imputation of pruned columns: {skipped}")

    out, report = impute_columns(
        df,
        numeric,
        categorical,
        seed=config["random"]["seed"],
        n_rounds=settings["n_rounds"],
        max_iter=settings["max_iter"],
        n_donors=settings["n_donors"],
        show_progress=show_progress,
    )
    report["skipped_columns"] = skipped
    return out, report


def boy_girl_ratio(num_boys, num_girls):
    """Boys per girl, NaN where the girl count is zero or unknown"""
    boys = num_boys.astype(float)
    girls = num_girls.astype(float)
    return (boys / girls.where(girls != 0)).astype(float)


def repair_consistency(df, config):
    """
    Repair logically inconsistent pupil counts

    Steps run in a fixed order:
    1. Flag gender-count mismatches and single-gender schools reporting
       pupils of the opposite gender
    2. Set num_pupils = num_boys + num_girls for mismatches with both
       counts known
    3. Zero the excluded gender's count in single-gender schools and keep
       num_pupils equal to the retained gender's count
    4. Recompute boy_girl_ratio
    5. Discard the flag columns
    6. Drop records with num_pupils == 0 or pupils_per_teacher == 0

    Returns:
        tuple: (repaired dataframe, report dict)
    """
    boys_label = config["repair"]["boys_only_label"]
    girls_label = config["repair"]["girls_only_label"]

    validate_schema(df, ["num_pupils", "num_boys", "num_girls", "pupils_per_teacher"])

    out = df.copy()
    for col in ("num_pupils", "num_boys", "num_girls", "pupils_per_teacher"):
        out[col] = out[col].astype(float)

    gender = out["gender"] if "gender" in out.columns else pd.Series(np.nan, index=out.index)
    boys_only = gender.eq(boys_label)
    girls_only = gender.eq(girls_label)
    counts_known = out["num_boys"].notna() & out["num_girls"].notna()

    # Step 1
    out["flag_gender_mismatch"] = counts_known & (
        (out["num_boys"] + out["num_girls"]) != out["num_pupils"]
    )
    out["flag_single_gender_conflict"] = (
        (boys_only & out["num_girls"].fillna(0).gt(0))
        | (girls_only & out["num_boys"].fillna(0).gt(0))
    )
    unresolved = int(
        (out["num_boys"].isna() | out["num_girls"].isna()).sum()
    )

    # Step 2
    mismatch = out["flag_gender_mismatch"]
    out.loc[mismatch, "num_pupils"] = out.loc[mismatch, "num_boys"] + out.loc[mismatch, "num_girls"]

    # Step 3
    out.loc[boys_only, "num_girls"] = 0.0
    out.loc[girls_only, "num_boys"] = 0.0
    resync = (boys_only | girls_only) & out["num_boys"].notna() & out["num_girls"].notna()
    out.loc[resync, "num_pupils"] = out.loc[resync, "num_boys"] + out.loc[resync, "num_girls"]

    # Step 4
    out["boy_girl_ratio"] = boy_girl_ratio(out["num_boys"], out["num_girls"])

    # Step 5
    n_mismatch = int(mismatch.sum())
    n_conflict = int(out["flag_single_gender_conflict"].sum())
    out = out.drop(columns=["flag_gender_mismatch", "flag_single_gender_conflict"])

    # Step 6
    zero_pupils = out["num_pupils"].eq(0)
    zero_ratio = out["pupils_per_teacher"].eq(0)
    out = out.loc[~(zero_pupils | zero_ratio)].copy()

    report = {
        "gender_mismatches_fixed": n_mismatch,
        "single_gender_conflicts_fixed": n_conflict,
        "unresolved_unknown_counts": unresolved,
        "dropped_zero_pupils": int(zero_pupils.sum()),
        "dropped_zero_pupils_per_teacher": int((zero_ratio & ~zero_pupils).sum()),
        "rows_after": int(len(out)),
    }
    logging.info(
        f"Repaired {n_mismatch} count mismatches and {n_conflict} single-gender conflicts; "
        f"dropped {len(df) - len(out)} records with zero pupils or zero pupils per teacher"
    )
    return out, report


def outlier_summary(df, exclude_columns=()):
    """
    Count Tukey-fence outliers in every numeric column

    Fences are [Q1 - 1.5*IQR, Q3 + 1.5*IQR]. The table is not modified.

    Args:
        df: Cleaned table
        exclude_columns: Identifier and coordinate columns to skip

    Returns:
        pd.DataFrame: One row per column, ranked by outlier count descending
    """
    rows = []
    for col in df.select_dtypes(include=[np.number]).columns:
        if col in exclude_columns:
            continue
        values = df[col].dropna()
        if values.empty:
            continue
        q1 = float(values.quantile(0.25))
        q3 = float(values.quantile(0.75))
        iqr = q3 - q1
        lower = q1 - TUKEY_FENCE_MULTIPLIER * iqr
        upper = q3 + TUKEY_FENCE_MULTIPLIER * iqr
        n_outliers = int(((values < lower) | (values > upper)).sum())
        rows.append({
            "column": col,
            "q1": q1,
            "q3": q3,
            "iqr": iqr,
            "lower_fence": lower,
            "upper_fence": upper,
            "n_outliers": n_outliers,
        })

    columns = ["column", "q1", "q3", "iqr", "lower_fence", "upper_fence", "n_outliers"]
    summary = pd.DataFrame(rows, columns=columns)
    return summary.sort_values(
        ["n_outliers", "column"], ascending=[False, True]
    ).reset_index(drop=True)


def save_table(df, path, index=True):
    """Write a table to CSV, creating the parent directory if needed"""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    df.to_csv(path, index=index)
    logging.info(f"Saved {len(df)} rows to {path}")
