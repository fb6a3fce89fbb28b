"""
Clean London school data and cluster the cleaned records

This script loads the joined schools/deprivation table, runs the
data-quality stages from school_data_lib.py and the clustering runs from
cluster_schools.py, and writes the cleaned table, diagnostic tables and
cluster assignments as CSV files for the mapping and reporting scripts.
"""

import sys
import logging
import argparse

import pandas as pd

# Import shared library
import school_data_lib
import cluster_schools


logger = logging.getLogger(__name__)


def configure_logging(log_file):
    """Log to both a file and the console"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def run_pipeline(df, config, show_progress=True):
    """
    Run every stage on a raw table indexed by school id

    Each stage returns a new table, so the raw input is left untouched.

    Args:
        df: Raw table indexed by school id
        config: Validated configuration dictionary
        show_progress: Show tqdm progress bars

    Raises:
        school_data_lib.PipelineError: On schema, imputation or clustering errors

    Returns:
        dict: cleaned table, profile, outliers, per-run clustering results
            and assignments, and the stage reports
    """
    id_column = config["data"]["id_column"]
    location_columns = config["data"]["location_columns"]
    seed = config["random"]["seed"]
    clustering = config["clustering"]
    percentile = config["transition"]["percentile"]

    # Step 1: Schema check before any stage runs
    school_data_lib.validate_schema(df, config["data"]["required_columns"])

    # Step 2: Normalise categorical encodings
    df_clean, encoding_report = school_data_lib.standardize_encodings(df, config)

    # Step 3: Profile missingness, drop sparse columns then incomplete rows
    df_clean, profile, profiling_report = school_data_lib.profile_missingness(df_clean, config)

    # Step 4: Impute designated columns
    df_clean, imputation_report = school_data_lib.impute_designated_columns(
        df_clean, config, show_progress=show_progress
    )

    # Step 5: Repair inconsistent counts
    df_clean, repair_report = school_data_lib.repair_consistency(df_clean, config)

    # Step 6: Outlier diagnostics (read-only)
    exclude_columns = [id_column] + list(location_columns)
    outliers = school_data_lib.outlier_summary(df_clean, exclude_columns)

    # Step 7: Independent clustering runs
    elbow_range = clustering["elbow_range"] if clustering["run_elbow"] else None
    results = {}
    assignments = []
    for run_name, run in clustering["runs"].items():
        result = cluster_schools.cluster_records(
            df_clean,
            features=run.get("features"),
            n_clusters=run.get("n_clusters") or clustering["n_clusters"],
            n_init=clustering["n_init"],
            seed=seed,
            space=run.get("space", "standardized"),
            exclude_columns=exclude_columns,
            elbow_range=elbow_range,
            show_progress=show_progress,
        )
        run_assignments = cluster_schools.build_assignments(run_name, result, percentile)
        result["assignments"] = run_assignments
        results[run_name] = result
        assignments.append(run_assignments)

    combined = pd.concat(assignments) if assignments else pd.DataFrame()
    combined.index.name = id_column

    return {
        "cleaned": df_clean,
        "profile": profile,
        "outliers": outliers,
        "clusterings": results,
        "assignments": combined,
        "reports": {
            "encoding": encoding_report,
            "profiling": profiling_report,
            "imputation": imputation_report,
            "repair": repair_report,
        },
    }


def save_outputs(results, config):
    """Write the cleaned table and diagnostic tables to CSV"""
    output = config["output"]
    school_data_lib.save_table(results["cleaned"], output["cleaned_csv"])
    school_data_lib.save_table(results["profile"], output["profile_csv"], index=False)
    school_data_lib.save_table(results["outliers"], output["outliers_csv"], index=False)
    school_data_lib.save_table(results["assignments"], output["clusters_csv"])

    elbows = [
        result["elbow"].assign(run=name)
        for name, result in results["clusterings"].items()
        if result["elbow"] is not None
    ]
    if elbows:
        school_data_lib.save_table(pd.concat(elbows), output["elbow_csv"], index=False)


def main(config_path="config.json", input_csv=None, seed=None, n_clusters=None,
         run_elbow=False, show_progress=True):
    """
    Main orchestration function

    1. Load and validate configuration
    2. Load the raw school table
    3. Run the cleaning and clustering stages
    4. Save outputs and print statistics

    Returns:
        int: Process exit status
    """
    config = school_data_lib.load_config(config_path)

    # Command-line overrides
    if seed is not None:
        config["random"]["seed"] = seed
    if n_clusters is not None:
        config["clustering"]["n_clusters"] = n_clusters
    if run_elbow:
        config["clustering"]["run_elbow"] = True

    configure_logging(config["output"]["log_file"])

    try:
        school_data_lib.validate_config(config)
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        return 1

    input_csv = input_csv or config["data"]["input_csv"]
    try:
        df = school_data_lib.load_school_table(input_csv, config)
        if df is None:
            return 1
        results = run_pipeline(df, config, show_progress=show_progress)
    except school_data_lib.PipelineError as e:
        logger.error(f"Pipeline Error: {e}")
        return 1

    save_outputs(results, config)

    for run_name, result in results["clusterings"].items():
        cluster_schools.print_cluster_statistics(
            run_name, result["assignments"], results["cleaned"], result["features"]
        )

    profiling = results["reports"]["profiling"]
    repair = results["reports"]["repair"]
    logger.info(f"\n{'='*50}")
    logger.info("PROCESSING COMPLETE")
    logger.info(f"{'='*50}")
    logger.info(f"Raw rows: {profiling['rows_before']}")
    logger.info(f"Columns dropped: {profiling['dropped_columns']}")
    logger.info(f"Rows dropped for missing key columns: {profiling['dropped_rows']}")
    logger.info(
        f"Rows dropped for zero pupils / zero pupils per teacher: "
        f"{repair['dropped_zero_pupils']} / {repair['dropped_zero_pupils_per_teacher']}"
    )
    logger.info(f"Cleaned rows: {len(results['cleaned'])}")
    logger.info(f"{'='*50}")
    return 0


if __name__ == "__main__":
    defaults = school_data_lib.get_default_config()

    parser = argparse.ArgumentParser(description="Clean and cluster London school data")
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to JSON configuration (default: config.json)",
    )
    parser.add_argument(
        "--input",
        default=None,
        help=f"Input CSV (default: {defaults['data']['input_csv']})",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help=f"Random seed (default: {defaults['random']['seed']})",
    )
    parser.add_argument(
        "--clusters",
        type=int,
        default=None,
        help=f"Number of clusters (default: {defaults['clustering']['n_clusters']})",
    )
    parser.add_argument(
        "--elbow",
        action="store_true",
        help="Run an elbow scan over the configured cluster range",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bars",
    )

    args = parser.parse_args()
    sys.exit(main(args.config, args.input, args.seed, args.clusters,
                  args.elbow, not args.no_progress))
