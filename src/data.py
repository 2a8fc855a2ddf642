import os
import logging
from io import StringIO

import numpy as np
import pandas as pd
import requests
from dotenv import load_dotenv
from sklearn.datasets import load_wine
from sklearn.model_selection import train_test_split

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_LABEL_COLUMN = "varietal"

# Cultivars of the UCI wine data (Forina et al.), in target order
VARIETAL_NAMES = ['Barolo', 'Grignolino', 'Barbera']

FEATURE_NAMES = [
    'alcohol', 'malic_acid', 'ash', 'alcalinity_of_ash', 'magnesium',
    'total_phenols', 'flavanoids', 'nonflavanoid_phenols',
    'proanthocyanins', 'color_intensity', 'hue',
    'od280/od315_of_diluted_wines', 'proline'
]


def get_label_column(label_column=None):
    return label_column or os.getenv("LABEL_COLUMN", DEFAULT_LABEL_COLUMN)


def fetch_csv(url, timeout=30):
    """Download a CSV file and parse it into a DataFrame"""
    logger.info(f"Fetching dataset from: {url}")
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return pd.read_csv(StringIO(response.text))


def load_bundled_wine(label_column=DEFAULT_LABEL_COLUMN):
    """Load the UCI wine data shipped with scikit-learn, labelled by varietal"""
    data = load_wine()
    df = pd.DataFrame(data.data, columns=data.feature_names)
    df[label_column] = [VARIETAL_NAMES[i] for i in data.target]
    return df


def coerce_types(df, label_column=None):
    """Label column to categorical, every other column to numeric.

    Non-numeric feature cells become NaN and are left for the recipe's
    imputation step. Rows without a label cannot be used and are dropped.
    """
    label_column = get_label_column(label_column)
    if label_column not in df.columns:
        raise ValueError(f"Label column '{label_column}' not found in dataset")

    df = df.copy()
    n_unlabelled = int(df[label_column].isna().sum())
    if n_unlabelled:
        logger.warning(f"Dropping {n_unlabelled} rows with missing '{label_column}'")
        df = df.dropna(subset=[label_column]).reset_index(drop=True)

    labels = df[label_column]
    # integer codes read as float because of blank rows: 1.0 -> "1"
    if pd.api.types.is_float_dtype(labels) and (labels % 1 == 0).all():
        labels = labels.astype(int)
    df[label_column] = labels.astype(str).astype("category")

    feature_columns = [c for c in df.columns if c != label_column]
    if not feature_columns:
        raise ValueError("Dataset has no feature columns")
    df[feature_columns] = df[feature_columns].apply(pd.to_numeric, errors="coerce")

    n_missing = int(df[feature_columns].isna().sum().sum())
    if n_missing:
        missing_by_column = df[feature_columns].isna().sum()
        missing_by_column = missing_by_column[missing_by_column > 0]
        logger.warning(
            f"{n_missing} missing feature values will be imputed: "
            f"{missing_by_column.to_dict()}"
        )

    return df


def load_dataset(url=None, label_column=None):
    """Load the wine dataset.

    Reads the CSV at ``url`` (or ``DATA_URL``), which is how the lesson gets
    its data. Without one, the copy bundled with scikit-learn is used.
    """
    label_column = get_label_column(label_column)
    url = url or os.getenv("DATA_URL")

    if url:
        df = fetch_csv(url)
    else:
        logger.info("No DATA_URL configured, using bundled wine dataset")
        df = load_bundled_wine(label_column)

    df = coerce_types(df, label_column)

    logger.info(f"Dataset shape: {df.shape}")
    logger.info(f"Classes: {list(df[label_column].cat.categories)}")
    logger.info(f"Class distribution: {df[label_column].value_counts().to_dict()}")

    return df


def split_data(df, label_column=None, test_size=0.25, random_state=42):
    """Stratified train/test split"""
    label_column = get_label_column(label_column)
    X = df.drop(label_column, axis=1)
    y = df[label_column]

    if y.value_counts().min() < 2:
        raise ValueError("Every class needs at least two samples for a stratified split")

    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=test_size, random_state=random_state, stratify=y
    )

    logger.info(f"Training set size: {len(X_train)}")
    logger.info(f"Test set size: {len(X_test)}")

    return X_train, X_test, y_train, y_test


def class_counts(y):
    unique, counts = np.unique(np.asarray(y), return_counts=True)
    return {str(cls): int(count) for cls, count in zip(unique, counts)}
