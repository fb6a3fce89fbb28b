"""
Standardised k-means clustering of cleaned school records

Selects a feature subset, applies listwise deletion, standardises, runs
k-means (optionally after an elbow scan), projects onto two principal
components, relabels clusters by their mean first-component score and
flags records that sit far from their cluster centroid.

Every result is indexed by school id; records removed by listwise deletion
get no cluster at all.
"""

import logging

import pandas as pd
import numpy as np
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler
from tqdm import tqdm

from school_data_lib import ClusteringError


PCA_COLUMNS = ["pc1", "pc2"]


def select_features(df, features=None, exclude_columns=()):
    """
    Resolve the clustering feature list

    Args:
        df: Cleaned table
        features: Explicit feature list, or None for every numeric column
        exclude_columns: Identifier and location columns left out when
            features is None

    Returns:
        list: Feature column names
    """
    if features is None:
        return [
            col for col in df.select_dtypes(include=[np.number]).columns
            if col not in exclude_columns
        ]
    missing = [c for c in features if c not in df.columns]
    if missing:
        raise ClusteringError(f"Feature columns not in table: {missing}")
    return list(features)


def listwise_subset(df, features):
    """Rows with no missing value in any feature"""
    subset = df[features].dropna(how="any")
    if subset.empty:
        raise ClusteringError(
            f"Listwise deletion removed all {len(df)} rows for features {features}"
        )
    dropped = len(df) - len(subset)
    if dropped:
        logging.info(f"Listwise deletion excluded {dropped} of {len(df)} rows from clustering")
    return subset.astype(float)


def standardize_features(subset):
    """Scale each feature to zero mean and unit variance over the subset"""
    scaler = StandardScaler()
    scaled = scaler.fit_transform(subset)
    return pd.DataFrame(scaled, columns=subset.columns, index=subset.index), scaler


def run_kmeans(X, n_clusters, n_init, seed):
    """
    Fit k-means keeping the lowest-inertia of n_init initialisations

    Raises:
        ClusteringError: If there are fewer rows than clusters
    """
    if n_clusters > len(X):
        raise ClusteringError(
            f"Requested {n_clusters} clusters but only {len(X)} rows are available"
        )
    kmeans = KMeans(n_clusters=n_clusters, n_init=n_init, random_state=seed)
    kmeans.fit(X)
    return kmeans


def elbow_scan(X, k_values, n_init, seed, show_progress=True):
    """
    Total within-cluster sum of squares for each candidate cluster count

    Diagnostic only; no count is selected. Counts larger than the number
    of rows are skipped.

    Returns:
        pd.DataFrame: Columns k and inertia
    """
    results = []
    for k in tqdm(list(k_values), desc="Elbow scan", unit="k", disable=not show_progress):
        if k > len(X):
            logging.warning(f"Skipping k={k}: exceeds number of rows ({len(X)})")
            continue
        kmeans = run_kmeans(X, k, n_init, seed)
        results.append({"k": int(k), "inertia": float(kmeans.inertia_)})
    return pd.DataFrame(results, columns=["k", "inertia"])


def fit_pca(X, n_components=2):
    """
    Project standardised features onto the leading principal components

    Returns:
        tuple: (dataframe with pc1 and pc2 columns, fitted PCA)
    """
    n_components = min(n_components, X.shape[1], len(X))
    pca = PCA(n_components=n_components)
    scores = pca.fit_transform(X)
    coords = pd.DataFrame(scores, columns=PCA_COLUMNS[:n_components], index=X.index)
    for col in PCA_COLUMNS[n_components:]:
        coords[col] = 0.0
    return coords, pca


def cluster_records(df, features=None, n_clusters=3, n_init=25, seed=500,
                    space="standardized", exclude_columns=(), elbow_range=None,
                    show_progress=True):
    """
    Cluster the records that have every feature present

    Args:
        df: Cleaned table indexed by school id
        features: Feature list, or None for all numeric non-excluded columns
        n_clusters: Number of k-means clusters
        n_init: Number of k-means initialisations
        seed: Seed for the k-means initialisations
        space: "standardized" to cluster the scaled features, "pca" to
            cluster the two-component projection
        exclude_columns: Columns never used as features by default
        elbow_range: Optional (low, high) inclusive range for an elbow scan
        show_progress: Show tqdm progress for the elbow scan

    Returns:
        dict: labels (raw cluster id per school), centroids, projection,
            explained_variance, elbow, features, space and row counts
    """
    features = select_features(df, features, exclude_columns)
    if not features:
        raise ClusteringError("No feature columns available for clustering")

    subset = listwise_subset(df, features)
    scaled, _ = standardize_features(subset)
    projection, pca = fit_pca(scaled)

    X = projection if space == "pca" else scaled

    elbow = None
    if elbow_range is not None:
        low, high = elbow_range
        elbow = elbow_scan(X, range(low, high + 1), n_init, seed, show_progress)

    kmeans = run_kmeans(X, n_clusters, n_init, seed)
    labels = pd.Series(kmeans.labels_, index=X.index, name="raw_cluster")
    centroids = pd.DataFrame(kmeans.cluster_centers_, columns=X.columns)
    centroids.index.name = "raw_cluster"

    logging.info(
        f"Clustered {len(X)} of {len(df)} schools into {n_clusters} clusters "
        f"({space} space, inertia {kmeans.inertia_:.2f})"
    )

    return {
        "labels": labels,
        "centroids": centroids,
        "projection": projection,
        "explained_variance": [float(v) for v in pca.explained_variance_ratio_],
        "inertia": float(kmeans.inertia_),
        "elbow": elbow,
        "features": features,
        "space": space,
        "rows_before": int(len(df)),
        "rows_clustered": int(len(X)),
    }


def relabel_clusters(raw_labels, pc1):
    """
    Give clusters ordinal labels 1..k by mean first principal component

    Clusters are sorted ascending by the mean pc1 score of their members;
    equal means are ordered by raw cluster id.

    Args:
        raw_labels: Raw cluster id per school
        pc1: First principal component score per school

    Returns:
        pd.Series: Ordinal label per school, same index as raw_labels
    """
    scores = pc1.reindex(raw_labels.index)
    means = scores.groupby(raw_labels).mean()
    ordered = sorted(means.items(), key=lambda item: (item[1], item[0]))
    mapping = {raw: rank for rank, (raw, _) in enumerate(ordered, start=1)}
    return raw_labels.map(mapping).astype(int).rename("cluster")


def centroid_distances(coords, labels, centroids):
    """Euclidean distance from each record to its own cluster centroid"""
    points = coords.loc[labels.index, centroids.columns].to_numpy(dtype=float)
    centres = centroids.loc[labels.to_numpy()].to_numpy(dtype=float)
    distances = np.linalg.norm(points - centres, axis=1)
    return pd.Series(distances, index=labels.index, name="centroid_distance")


def flag_transition_cases(distances, percentile=0.85):
    """
    Flag distances strictly above a global percentile

    Returns:
        tuple: (boolean series, threshold)
    """
    threshold = float(np.quantile(distances.to_numpy(dtype=float), percentile))
    return (distances > threshold).rename("is_transition"), threshold


def detect_transition_cases(result, percentile=0.85):
    """Centroid distances and transition flags for a PCA-space clustering"""
    distances = centroid_distances(result["projection"], result["labels"], result["centroids"])
    flags, threshold = flag_transition_cases(distances, percentile)
    logging.info(
        f"Flagged {int(flags.sum())} transition cases "
        f"(distance > {threshold:.3f}, P{percentile * 100:.0f})"
    )
    return pd.concat([distances, flags], axis=1), threshold


def build_assignments(run_name, result, percentile=0.85):
    """
    Assemble the per-school output of one clustering run

    Returns:
        pd.DataFrame: Indexed by school id with run, raw_cluster, cluster,
            pc1, pc2, centroid_distance and is_transition columns
    """
    labels = result["labels"]
    ordinal = relabel_clusters(labels, result["projection"]["pc1"])
    assignments = pd.concat(
        [labels, ordinal, result["projection"].loc[labels.index, PCA_COLUMNS]], axis=1
    )
    if result["space"] == "pca":
        transitions, threshold = detect_transition_cases(result, percentile)
        assignments = assignments.join(transitions)
        result["transition_threshold"] = threshold
    else:
        assignments["centroid_distance"] = np.nan
        assignments["is_transition"] = pd.NA
    assignments.insert(0, "run", run_name)
    return assignments


def print_cluster_statistics(run_name, assignments, df, features):
    """
    Log cluster sizes, transition counts and feature means per cluster

    Args:
        run_name: Name of the clustering run
        assignments: Output of build_assignments
        df: Cleaned table
        features: Features the run clustered on
    """
    logging.info(f"\n{'='*50}")
    logging.info(f"Clustering run: {run_name}")
    logging.info(f"{'='*50}")
    logging.info(
        f"Clustered schools: {len(assignments)} of {len(df)} "
        f"({len(assignments) / len(df):.1%})"
    )

    means = df.loc[assignments.index, features].groupby(assignments["cluster"]).mean()
    for cluster, size in assignments["cluster"].value_counts().sort_index().items():
        members = assignments[assignments["cluster"] == cluster]
        logging.info(f"\nCluster {cluster}: {size} schools")
        if members["is_transition"].notna().any():
            logging.info(f"  Transition cases: {int(members['is_transition'].astype(bool).sum())}")
        for feature in features:
            logging.info(f"  {feature}: {means.loc[cluster, feature]:.2f}")
