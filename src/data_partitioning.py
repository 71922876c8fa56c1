"""
Dataset loading and stratified partitioning.

This module provides LabeledDataset, an immutable view over a table of records
with a binary label, plus the stratified train/test split and stratified
k-fold helpers used by the tuning workflow.

Example:
    from data_partitioning import load_dataset, stratified_split, stratified_folds

    dataset = load_dataset("diabetes.csv", label_column="diabetes")
    train, test = stratified_split(dataset, train_fraction=0.75, seed=42)
    folds = stratified_folds(train, n_folds=8, seed=43)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.model_selection import StratifiedKFold, train_test_split

from experiment_config import ConfigurationError

logger = logging.getLogger(__name__)


class DataValidationError(ValueError):
    """Raised when the dataset cannot support the requested analysis.

    Covers malformed labels, missing columns and classes too small to
    stratify. Data errors abort the run before any fitting begins.
    """


class LabeledDataset:
    """
    Immutable table of feature columns plus a binary label.

    The label is stored encoded as 1 for the positive category and 0 for the
    other one. Row index labels identify records across partitions.

    Args:
        features: Feature columns, one row per record.
        labels: Encoded 0/1 labels aligned with ``features``.
        label_name: Original name of the label column.
        positive_label: Original value of the positive category.
        negative_label: Original value of the negative category.
    """

    def __init__(
        self,
        features: pd.DataFrame,
        labels: pd.Series,
        label_name: str = "label",
        positive_label: Any = 1,
        negative_label: Any = 0,
    ) -> None:
        if len(features) != len(labels):
            raise DataValidationError(
                f"features ({len(features)} rows) and labels ({len(labels)} rows) differ in length"
            )
        if not features.index.equals(labels.index):
            raise DataValidationError("features and labels must share the same index")
        self._features = features.copy()
        self._labels = labels.astype(int).rename(label_name)
        self.label_name = label_name
        self.positive_label = positive_label
        self.negative_label = negative_label

    @property
    def X(self) -> pd.DataFrame:
        return self._features.copy()

    @property
    def y(self) -> pd.Series:
        return self._labels.copy()

    @property
    def index(self) -> pd.Index:
        return self._features.index

    @property
    def feature_names(self) -> List[str]:
        return list(self._features.columns)

    def __len__(self) -> int:
        return len(self._features)

    def subset(self, positions: Sequence[int]) -> "LabeledDataset":
        """Return a new dataset holding the rows at the given positions."""
        positions = np.asarray(positions, dtype=int)
        return LabeledDataset(
            self._features.iloc[positions],
            self._labels.iloc[positions],
            label_name=self.label_name,
            positive_label=self.positive_label,
            negative_label=self.negative_label,
        )

    def class_counts(self) -> Dict[int, int]:
        counts = self._labels.value_counts()
        return {label: int(counts.get(label, 0)) for label in (0, 1)}

    def to_frame(self) -> pd.DataFrame:
        """Return features and the original label values as one DataFrame."""
        frame = self._features.copy()
        frame[self.label_name] = self._labels.map(
            {1: self.positive_label, 0: self.negative_label}
        )
        return frame

    def __repr__(self) -> str:
        return (
            f"LabeledDataset(records={len(self)}, features={len(self._features.columns)}, "
            f"label='{self.label_name}', classes={self.class_counts()})"
        )


@dataclass(frozen=True)
class Fold:
    """One cross-validation split of a training dataset."""

    fold_id: int
    train: LabeledDataset
    validation: LabeledDataset


def load_dataset(
    source: Union[str, pd.DataFrame],
    label_column: str,
    positive_label: Optional[Any] = None,
    drop_incomplete: bool = True,
) -> LabeledDataset:
    """
    Load labeled records from a CSV path or an in-memory DataFrame.

    Args:
        source: CSV path or DataFrame holding features and the label.
        label_column: Name of the label column.
        positive_label: Label value of the positive class. Defaults to the
            larger of the two observed values.
        drop_incomplete: Drop records with any missing feature value. When
            False, missing values are kept as NaN.

    Returns:
        A LabeledDataset with the label encoded as 0/1.

    Raises:
        DataValidationError: If the file cannot be read, the label column is
            missing, holds missing values, or does not have exactly two
            categories, or a feature column is neither numeric nor
            categorical (dates, durations, mixed strings and numbers).
    """
    if isinstance(source, pd.DataFrame):
        frame = source.copy()
        logger.info(f"Loaded {len(frame)} records from DataFrame")
    else:
        logger.info(f"Loading dataset from {source}")
        try:
            frame = pd.read_csv(source)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise DataValidationError(f"Failed to read dataset from {source}: {e}")
        logger.info(f"Loaded {len(frame)} records from dataset")

    if label_column not in frame.columns:
        raise DataValidationError(
            f"Label column '{label_column}' not found; columns are {list(frame.columns)}"
        )
    if frame[label_column].isna().any():
        raise DataValidationError(
            f"Label column '{label_column}' has {int(frame[label_column].isna().sum())} missing values"
        )

    categories = sorted(frame[label_column].unique().tolist(), key=str)
    if len(categories) != 2:
        raise DataValidationError(
            f"Label column '{label_column}' must have exactly two categories, found {categories}"
        )
    if positive_label is None:
        positive_label = categories[-1]
    elif positive_label not in categories:
        raise DataValidationError(
            f"Positive label {positive_label!r} not among label categories {categories}"
        )
    negative_label = categories[0] if categories[1] == positive_label else categories[1]

    features = frame.drop(columns=[label_column])
    if features.shape[1] == 0:
        raise DataValidationError("Dataset has no feature columns")
    unsupported = _unsupported_columns(features)
    if unsupported:
        raise DataValidationError(
            f"Feature columns must be numeric or categorical; unsupported: {unsupported}"
        )

    missing = features.isna().sum()
    total_missing = int(missing.sum())
    if total_missing > 0:
        logger.warning(f"Found {total_missing} missing values across all columns")
        for column, count in missing[missing > 0].items():
            logger.warning(f"  Column '{column}': {int(count)} missing values")
        if drop_incomplete:
            complete = features.notna().all(axis=1)
            logger.warning(f"Dropping {int((~complete).sum())} incomplete records")
            frame = frame.loc[complete]
            features = features.loc[complete]

    labels = (frame[label_column] == positive_label).astype(int)
    dataset = LabeledDataset(
        features,
        labels,
        label_name=label_column,
        positive_label=positive_label,
        negative_label=negative_label,
    )
    logger.info(f"Dataset ready: {dataset}")
    return dataset


def _unsupported_columns(features: pd.DataFrame) -> Dict[str, str]:
    """Columns the feature pipeline cannot encode, with their dtype."""
    unsupported = {}
    for column in features.columns:
        values = features[column]
        if (
            pd.api.types.is_datetime64_any_dtype(values)
            or pd.api.types.is_timedelta64_dtype(values)
            or pd.api.types.is_complex_dtype(values)
            or isinstance(values.dtype, (pd.PeriodDtype, pd.IntervalDtype))
        ):
            unsupported[column] = str(values.dtype)
        elif values.dtype == object and pd.api.types.infer_dtype(values, skipna=True) in (
            "mixed", "mixed-integer"
        ):
            # encoders need categories that are all strings or all numbers
            unsupported[column] = "mixed"
    return unsupported


def _require_class_counts(dataset: LabeledDataset, minimum: int, purpose: str) -> None:
    counts = dataset.class_counts()
    too_small = {label: count for label, count in counts.items() if count < minimum}
    if too_small:
        raise DataValidationError(
            f"Each class needs at least {minimum} records for {purpose}; "
            f"class counts are {counts}"
        )


def stratified_split(
    dataset: LabeledDataset,
    train_fraction: float = 0.75,
    seed: int = 42,
) -> Tuple[LabeledDataset, LabeledDataset]:
    """
    Split a dataset into training and test sets, stratified on the label.

    Args:
        dataset: Records to split.
        train_fraction: Proportion of records assigned to training.
        seed: Random seed; the split is deterministic for a given seed.

    Returns:
        Tuple of (train, test) datasets.

    Raises:
        ConfigurationError: If ``train_fraction`` is outside (0, 1).
        DataValidationError: If a class has fewer than two records or a
            partition would be empty.
    """
    if not 0.0 < train_fraction < 1.0:
        raise ConfigurationError(f"train_fraction must be in (0, 1), got {train_fraction}")
    _require_class_counts(dataset, 2, "a stratified split")

    n_records = len(dataset)
    n_test = n_records - int(np.floor(n_records * train_fraction))
    if n_test < 2 or n_records - n_test < 2:
        raise DataValidationError(
            f"A {train_fraction:.2f} split of {n_records} records leaves an empty class partition"
        )

    positions = np.arange(n_records)
    try:
        train_pos, test_pos = train_test_split(
            positions,
            test_size=n_test,
            stratify=dataset.y.to_numpy(),
            random_state=seed,
        )
    except ValueError as e:
        raise DataValidationError(f"Stratified split failed: {e}")

    train = dataset.subset(np.sort(train_pos))
    test = dataset.subset(np.sort(test_pos))
    logger.info("Split results:")
    logger.info(f"  Train: {len(train)} records ({len(train) / n_records * 100:.2f}%) {train.class_counts()}")
    logger.info(f"  Test: {len(test)} records ({len(test) / n_records * 100:.2f}%) {test.class_counts()}")
    return train, test


def stratified_folds(
    dataset: LabeledDataset,
    n_folds: int = 8,
    seed: int = 42,
) -> List[Fold]:
    """
    Build stratified k-fold cross-validation splits.

    Every record appears in exactly one validation portion and in the
    training portion of every other fold.

    Args:
        dataset: Training records to fold.
        n_folds: Number of folds.
        seed: Shuffling seed.

    Returns:
        List of Fold objects with ids 0..n_folds-1.

    Raises:
        ConfigurationError: If ``n_folds`` is smaller than 2.
        DataValidationError: If a class has fewer records than folds.
    """
    if n_folds < 2:
        raise ConfigurationError(f"n_folds must be at least 2, got {n_folds}")
    _require_class_counts(dataset, n_folds, f"{n_folds}-fold cross-validation")

    splitter = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed)
    folds: List[Fold] = []
    for fold_id, (train_pos, val_pos) in enumerate(
        splitter.split(np.zeros(len(dataset)), dataset.y.to_numpy())
    ):
        folds.append(
            Fold(
                fold_id=fold_id,
                train=dataset.subset(train_pos),
                validation=dataset.subset(val_pos),
            )
        )
    logger.info(
        f"Created {n_folds} stratified folds "
        f"(validation sizes {[len(f.validation) for f in folds]})"
    )
    return folds
