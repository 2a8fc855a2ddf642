import os
import sys
import pytest
import numpy as np
import pandas as pd
import requests
from io import StringIO
from unittest.mock import Mock, patch

# Add src to path for imports
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from data import (
    FEATURE_NAMES, VARIETAL_NAMES, load_bundled_wine, load_dataset,
    coerce_types, split_data, fetch_csv, class_counts
)

REMOTE_CSV = """alcohol,malic_acid,proline,varietal
13.2,1.78,1050,Barolo
12.4,,520,Grignolino
12.9,abc,600,Grignolino
13.7,3.1,,Barbera
12.1,2.0,480,
"""


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    monkeypatch.delenv("DATA_URL", raising=False)
    monkeypatch.delenv("LABEL_COLUMN", raising=False)


def test_data_schema():
    df = load_dataset()

    # Check column names
    assert list(df.columns) == FEATURE_NAMES + ['varietal']

    # Check data types
    for col in FEATURE_NAMES:
        assert pd.api.types.is_numeric_dtype(df[col]), f"{col} is not numeric"
    assert isinstance(df['varietal'].dtype, pd.CategoricalDtype)

    # Check label values
    assert set(df['varietal'].cat.categories) == set(VARIETAL_NAMES)


def test_data_quality():
    df = load_bundled_wine()

    # Check for missing values
    assert df.isnull().sum().sum() == 0

    # Check value ranges
    assert df['alcohol'].between(11, 15).all()
    assert df['proline'].between(200, 1700).all()

    # Check class distribution
    counts = df['varietal'].value_counts().to_dict()
    assert counts == {'Grignolino': 71, 'Barolo': 59, 'Barbera': 48}


def test_label_column_from_env(monkeypatch):
    monkeypatch.setenv("LABEL_COLUMN", "cultivar")
    df = load_dataset()

    assert 'cultivar' in df.columns
    assert 'varietal' not in df.columns


def test_load_dataset_from_url():
    response = Mock(text=REMOTE_CSV)
    with patch('data.requests.get', return_value=response) as mock_get:
        df = load_dataset(url="https://example.com/wine.csv")

    mock_get.assert_called_once_with("https://example.com/wine.csv", timeout=30)
    response.raise_for_status.assert_called_once()

    # Unlabelled row dropped, text cell coerced to NaN
    assert len(df) == 4
    assert df['malic_acid'].isna().sum() == 2
    assert df['proline'].isna().sum() == 1
    assert list(df['varietal'].cat.categories) == ['Barbera', 'Barolo', 'Grignolino']


def test_load_dataset_uses_data_url_env(monkeypatch):
    monkeypatch.setenv("DATA_URL", "https://example.com/env.csv")
    with patch('data.fetch_csv', return_value=pd.read_csv(StringIO(REMOTE_CSV))) as mock_fetch:
        df = load_dataset()

    mock_fetch.assert_called_once_with("https://example.com/env.csv")
    assert len(df) == 4


def test_fetch_csv_http_error():
    response = Mock()
    response.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
    with patch('data.requests.get', return_value=response):
        with pytest.raises(requests.HTTPError):
            fetch_csv("https://example.com/missing.csv")


def test_coerce_types_missing_label_column():
    df = pd.DataFrame({'alcohol': [13.0, 12.5], 'type': ['a', 'b']})

    with pytest.raises(ValueError, match="Label column 'varietal' not found"):
        coerce_types(df, 'varietal')


def test_coerce_types_requires_features():
    df = pd.DataFrame({'varietal': ['a', 'b']})

    with pytest.raises(ValueError, match="no feature columns"):
        coerce_types(df, 'varietal')


def test_coerce_types_does_not_mutate_input():
    df = pd.DataFrame({'alcohol': ['13.0', '12.5'], 'varietal': ['a', 'b']})
    coerced = coerce_types(df, 'varietal')

    assert df['alcohol'].tolist() == ['13.0', '12.5']
    assert coerced['alcohol'].tolist() == [13.0, 12.5]


def test_coerce_types_integer_labels_with_blank_row():
    csv = "alcohol,varietal\n13.0,1\n12.5,2\n12.9,\n13.4,3\n"
    coerced = coerce_types(pd.read_csv(StringIO(csv)), 'varietal')

    assert len(coerced) == 3
    assert list(coerced['varietal'].cat.categories) == ['1', '2', '3']


def test_split_data_is_stratified():
    df = load_dataset()
    X_train, X_test, y_train, y_test = split_data(df)

    assert len(X_train) == 133
    assert len(X_test) == 45
    assert X_train.shape[1] == 13
    assert 'varietal' not in X_train.columns

    train_props = y_train.value_counts(normalize=True).sort_index()
    test_props = y_test.value_counts(normalize=True).sort_index()
    assert np.allclose(train_props.values, test_props.values, atol=0.05)


def test_split_data_is_reproducible():
    df = load_dataset()
    _, X_test_a, _, _ = split_data(df, random_state=7)
    _, X_test_b, _, _ = split_data(df, random_state=7)

    assert list(X_test_a.index) == list(X_test_b.index)


def test_split_data_rejects_singleton_class():
    df = pd.DataFrame({
        'alcohol': [13.0, 12.5, 12.9, 13.1, 12.2],
        'varietal': pd.Categorical(['a', 'a', 'b', 'b', 'c'])
    })

    with pytest.raises(ValueError, match="at least two samples"):
        split_data(df, 'varietal')


def test_class_counts():
    y = pd.Series(['Barolo', 'Barbera', 'Barolo'], dtype='category')

    assert class_counts(y) == {'Barbera': 1, 'Barolo': 2}
