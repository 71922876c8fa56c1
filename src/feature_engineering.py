"""
Feature engineering module for the model selection workflow.

This module provides the FeaturePipeline class: an ordered, declarative list
of preprocessing steps (normalize numeric columns, one-hot encode categorical
columns, drop zero-variance columns, down-sample the majority class) whose
statistics are fit on one training portion and then applied unchanged to the
matching validation or test portion.

The encoding steps are a scikit-learn ``ColumnTransformer`` followed by a
``VarianceThreshold``; down-sampling uses imbalanced-learn's
``RandomUnderSampler``.

Example:
    from feature_engineering import FeaturePipeline

    pipeline = FeaturePipeline(seed=7)
    X_fit, y_fit = pipeline.fit_resample(fold.train.X, fold.train.y)
    X_val = pipeline.transform(fold.validation.X)
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from imblearn.under_sampling import RandomUnderSampler
from sklearn.compose import ColumnTransformer, make_column_selector
from sklearn.feature_selection import VarianceThreshold
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, OrdinalEncoder, StandardScaler

DEFAULT_STEPS: Tuple[str, ...] = ("normalize", "one_hot", "zero_variance", "downsample")

select_numeric = make_column_selector(dtype_include="number")
select_categorical = make_column_selector(dtype_exclude="number")


class NotFittedError(RuntimeError):
    """Raised when transform is called before fit."""


def _levels(values: pd.Series) -> List[Any]:
    levels = values.dropna().unique().tolist()
    try:
        return sorted(levels)
    except TypeError:
        return sorted(levels, key=str)


@dataclass(frozen=True)
class FeaturePipelineSpec:
    """
    Stateless description of a feature pipeline.

    Attributes:
        steps: Ordered step names, a subset of ``DEFAULT_STEPS``.
        numeric_columns: Columns to normalize. None selects numeric dtypes.
        categorical_columns: Columns to one-hot encode. None selects every
            non-numeric column (strings, categories, booleans).
    """

    steps: Tuple[str, ...] = DEFAULT_STEPS
    numeric_columns: Optional[Tuple[str, ...]] = None
    categorical_columns: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        unknown = [step for step in self.steps if step not in DEFAULT_STEPS]
        if unknown:
            raise ValueError(f"Unknown pipeline steps {unknown}; known: {list(DEFAULT_STEPS)}")

    def build(self, seed: int = 0) -> "FeaturePipeline":
        return FeaturePipeline(
            steps=self.steps,
            numeric_columns=self.numeric_columns,
            categorical_columns=self.categorical_columns,
            seed=seed,
        )


class FeaturePipeline:
    """
    Train-portion-fitted preprocessing shared by every fold.

    Statistics (means, standard deviations, category levels, zero-variance
    columns) are learned only in ``fit``; ``transform`` applies them as-is.
    Missing numeric values are ignored when computing statistics and stay
    missing after normalization. Missing or unseen categories encode as all
    zeros.

    Output columns are the numeric block followed by the encoded categorical
    block, minus the zero-variance columns.

    Args:
        steps: Ordered step names.
        numeric_columns: Explicit numeric columns, or None to infer.
        categorical_columns: Explicit categorical columns, or None to infer.
        seed: Seed for the down-sampling step.
    """

    def __init__(
        self,
        steps: Sequence[str] = DEFAULT_STEPS,
        numeric_columns: Optional[Sequence[str]] = None,
        categorical_columns: Optional[Sequence[str]] = None,
        seed: int = 0,
    ) -> None:
        self.steps = tuple(steps)
        self.numeric_columns = list(numeric_columns) if numeric_columns is not None else None
        self.categorical_columns = (
            list(categorical_columns) if categorical_columns is not None else None
        )
        self.seed = seed

        self.means_: Dict[str, float] = {}
        self.stds_: Dict[str, float] = {}
        self.categories_: Dict[str, List[Any]] = {}
        self.dropped_columns_: List[str] = []
        self.feature_names_: List[str] = []
        self._scales: Dict[str, float] = {}
        self._transformer: Optional[Pipeline] = None

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------
    def fit(self, X: pd.DataFrame, y: Optional[pd.Series] = None) -> "FeaturePipeline":
        """
        Learn all statistics from the training portion ``X``.

        Args:
            X: Training features.
            y: Training labels (unused by the statistics; accepted for
                symmetry with ``fit_resample``).

        Returns:
            The fitted pipeline.
        """
        numeric, categorical = self._resolve_columns(X)
        self._input_columns = list(X.columns)
        self.categories_ = {column: _levels(X[column]) for column in categorical}

        transformer = self._build_transformer(numeric, categorical)
        transformer.fit(X)

        encode = transformer.named_steps["encode"]
        self.means_, self.stds_, self._scales = {}, {}, {}
        if "normalize" in self.steps and numeric:
            scaler = encode.named_transformers_["numeric"]
            for column, mean, var, scale in zip(numeric, scaler.mean_, scaler.var_, scaler.scale_):
                self.means_[column] = 0.0 if pd.isna(mean) else float(mean)
                self.stds_[column] = 0.0 if pd.isna(var) else float(np.sqrt(var))
                self._scales[column] = 1.0 if pd.isna(scale) else float(scale)

        encoded_names = list(encode.get_feature_names_out())
        self.feature_names_ = list(transformer.get_feature_names_out())
        self.dropped_columns_ = [c for c in encoded_names if c not in self.feature_names_]
        self._transformer = transformer
        return self

    def _build_transformer(self, numeric: List[str], categorical: List[str]) -> Pipeline:
        if "one_hot" in self.steps:
            encoder = OneHotEncoder(
                categories=[self.categories_[c] for c in categorical],
                handle_unknown="ignore",
                sparse_output=False,
            )
        else:
            # without one_hot, categories become training-level codes; unseen -> NaN
            encoder = OrdinalEncoder(
                categories=[self.categories_[c] for c in categorical],
                handle_unknown="use_encoded_value",
                unknown_value=np.nan,
            )
        scaler = StandardScaler() if "normalize" in self.steps else "passthrough"
        encode = ColumnTransformer(
            [("numeric", scaler, numeric), ("categorical", encoder, categorical)],
            remainder="drop",
            verbose_feature_names_out=False,
        )
        steps = [("encode", encode)]
        if "zero_variance" in self.steps:
            steps.append(("zero_variance", VarianceThreshold(threshold=0.0)))
        return Pipeline(steps).set_output(transform="pandas")

    def fit_resample(
        self, X: pd.DataFrame, y: pd.Series
    ) -> Tuple[pd.DataFrame, pd.Series]:
        """
        Fit on ``X`` and return the transformed, down-sampled fitting data.

        Down-sampling keeps every minority-class record and a seeded random
        subset of the majority class of equal size. It only affects the data
        returned here, never later ``transform`` calls.

        Args:
            X: Training features.
            y: Training labels (0/1).

        Returns:
            Tuple of (transformed features, labels) ready for model fitting.
        """
        self.fit(X, y)
        X_t = self.transform(X)
        y_t = pd.Series(np.asarray(y), index=X_t.index, name=getattr(y, "name", None))
        if "downsample" in self.steps and y_t.nunique() > 1:
            sampler = RandomUnderSampler(random_state=self.seed)
            sampler.fit_resample(X_t, y_t)
            keep = np.sort(sampler.sample_indices_)
            X_t = X_t.iloc[keep]
            y_t = y_t.iloc[keep]
        return X_t, y_t

    # ------------------------------------------------------------------
    # Transforming
    # ------------------------------------------------------------------
    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """
        Apply the fitted statistics to ``X`` without refitting.

        Raises:
            NotFittedError: If ``fit`` has not been called.
            KeyError: If a column seen during fit is missing from ``X``.
        """
        if self._transformer is None:
            raise NotFittedError("FeaturePipeline must be fit before transform")
        missing = [c for c in self._input_columns if c not in X.columns]
        if missing:
            raise KeyError(f"Columns missing from input: {missing}")
        return self._transformer.transform(X[self._input_columns])

    def inverse_normalize(self, column: str, values: Any) -> np.ndarray:
        """Map normalized values of ``column`` back to original units."""
        values = np.asarray(values, dtype=float)
        if column not in self.means_:
            return values
        return values * self._scales[column] + self.means_[column]

    def _resolve_columns(self, X: pd.DataFrame) -> Tuple[List[str], List[str]]:
        if self.numeric_columns is not None:
            numeric = [c for c in self.numeric_columns if c in X.columns]
        elif self.categorical_columns is not None:
            numeric = [c for c in select_numeric(X) if c not in self.categorical_columns]
        else:
            numeric = select_numeric(X)
        if self.categorical_columns is not None:
            categorical = [c for c in self.categorical_columns if c in X.columns]
        else:
            categorical = [c for c in select_categorical(X) if c not in numeric]
        return numeric, categorical
