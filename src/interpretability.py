"""
Interpretability analyses of the final fitted model.

Provides a global feature importance ranking and partial-dependence profiles
computed from the final model against the transformed training features.
Both analyses are read-only: they only call the model's prediction methods on
copies of the features.

Example:
    from interpretability import feature_importance, partial_dependence

    X_baked = fitted.transform(train.X)
    importance = feature_importance(fitted, X_baked, train.y)
    profile = partial_dependence(fitted, X_baked, "HbA1c_level", groups=train.X["gender"])
"""

import logging
from typing import Any, Optional

import numpy as np
import pandas as pd
from sklearn.inspection import partial_dependence as sk_partial_dependence
from sklearn.inspection import permutation_importance

logger = logging.getLogger(__name__)


def _native_importance(estimator: Any) -> Optional[np.ndarray]:
    if hasattr(estimator, "feature_importances_"):
        return np.asarray(estimator.feature_importances_, dtype=float)
    if hasattr(estimator, "coef_"):
        return np.abs(np.asarray(estimator.coef_, dtype=float)).ravel()
    return None


def feature_importance(
    fitted: Any,
    X: pd.DataFrame,
    y: Optional[pd.Series] = None,
    method: str = "auto",
    n_repeats: int = 10,
    seed: int = 0,
) -> pd.DataFrame:
    """
    Rank the transformed features by global importance.

    Args:
        fitted: FittedModel returned by the final evaluator.
        X: Transformed training features (label excluded).
        y: Training labels; required for permutation importance.
        method: "native" (tree gain or absolute coefficients), "permutation"
            (drop in ROC AUC when a column is shuffled), or "auto" for native
            when the estimator exposes it, permutation otherwise.
        n_repeats: Shuffles per feature for permutation importance.
        seed: Random seed for permutation importance.

    Returns:
        DataFrame with ``feature``, ``importance`` and ``std`` columns sorted
        descending by importance, with the method used in ``method``.

    Raises:
        ValueError: For an unknown method, or permutation without labels.
    """
    if method not in ("auto", "native", "permutation"):
        raise ValueError(f"Unknown importance method '{method}'")
    estimator = fitted.estimator

    values = _native_importance(estimator) if method in ("auto", "native") else None
    if method == "native" and values is None:
        raise ValueError(f"{type(estimator).__name__} exposes no native importance")

    if values is not None:
        std = np.zeros_like(values)
        used = "native"
    else:
        if y is None:
            raise ValueError("Permutation importance needs the training labels")
        result = permutation_importance(
            estimator, X, y, scoring="roc_auc", n_repeats=n_repeats, random_state=seed
        )
        values, std = result.importances_mean, result.importances_std
        used = "permutation"

    importance_df = pd.DataFrame(
        {"feature": list(X.columns), "importance": values, "std": std, "method": used}
    ).sort_values("importance", ascending=False).reset_index(drop=True)
    logger.info(f"Top features ({used}): {importance_df['feature'].head(5).tolist()}")
    return importance_df


def partial_dependence(
    fitted: Any,
    X: pd.DataFrame,
    feature: str,
    grid_resolution: int = 20,
    groups: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """
    Average predicted positive-class probability as ``feature`` varies.

    Wraps ``sklearn.inspection.partial_dependence`` (brute force, predicted
    probabilities): for each grid value the feature is set to that value for
    every record and the predictions are averaged over the observed
    distribution of the other features.

    Args:
        fitted: FittedModel (or any object with an ``estimator``).
        X: Transformed training features.
        feature: Transformed column to vary.
        grid_resolution: Maximum number of grid values; observed values are
            used directly when there are fewer distinct ones, otherwise evenly
            spaced values between the 5th and 95th percentile.
        groups: Optional categorical covariate aligned with ``X``; averages
            are then computed within each group, on the same grid.

    Returns:
        Long DataFrame with ``feature``, ``value``, ``group`` and
        ``prediction`` columns.

    Raises:
        KeyError: If ``feature`` is not a column of ``X``.
        ValueError: If ``groups`` is not aligned with ``X`` or ``feature`` has
            no observed values.
    """
    if feature not in X.columns:
        raise KeyError(f"Feature '{feature}' not among {list(X.columns)}")
    if groups is not None:
        if len(groups) != len(X):
            raise ValueError("groups must have one value per row of X")
        group_values = pd.Series(np.asarray(groups), index=X.index).astype(str)
    else:
        group_values = pd.Series("all", index=X.index)

    X = X.astype({feature: float})
    observed = X[feature].notna()
    if not observed.any():
        raise ValueError(f"Feature '{feature}' has no observed values")

    estimator = fitted.estimator
    options = dict(kind="average", method="brute", response_method="predict_proba")
    # grid from observed values only; missing values would end up in it
    overall = sk_partial_dependence(
        estimator, X.loc[observed], [feature], grid_resolution=grid_resolution, **options
    )
    grid = overall["grid_values"][0]

    if groups is None and observed.all():
        averages = {"all": overall["average"][0]}
    else:
        averages = {}
        for group, members in group_values.groupby(group_values).groups.items():
            result = sk_partial_dependence(
                estimator, X.loc[members], [feature], custom_values={feature: grid}, **options
            )
            averages[group] = result["average"][0]

    rows = []
    for position, value in enumerate(grid):
        for group, average in averages.items():
            rows.append({
                "feature": feature,
                "value": float(value),
                "group": group,
                "prediction": float(average[position]),
            })
    logger.debug(f"Partial dependence of '{feature}' on {len(grid)} grid values, {len(averages)} group(s)")
    return pd.DataFrame(rows, columns=["feature", "value", "group", "prediction"])


def plot_feature_importance(
    importance_df: pd.DataFrame,
    save_path: str = "feature_importance.png",
    top_n: int = 15,
) -> None:
    """Horizontal bar chart of the ``top_n`` most important features."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    import seaborn as sns

    data = importance_df.head(top_n)
    fig, ax = plt.subplots(figsize=(8, max(3, 0.4 * len(data))))
    sns.barplot(data=data, x="importance", y="feature", ax=ax, color="steelblue")
    ax.set_title(f"Feature importance ({data['method'].iloc[0] if len(data) else 'n/a'})")
    ax.set_ylabel("")
    plt.tight_layout()
    plt.savefig(save_path)
    plt.close(fig)


def plot_partial_dependence(
    profile: pd.DataFrame,
    save_path: str = "partial_dependence.png",
    x_label: Optional[str] = None,
) -> None:
    """Line plot of a partial-dependence profile, one line per group."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    import seaborn as sns

    fig, ax = plt.subplots(figsize=(7, 5))
    x_column = "original_value" if "original_value" in profile.columns else "value"
    sns.lineplot(data=profile, x=x_column, y="prediction", hue="group", marker="o", ax=ax)
    feature = profile["feature"].iloc[0] if len(profile) else ""
    ax.set_xlabel(x_label or feature)
    ax.set_ylabel("Mean predicted probability")
    ax.set_title(f"Partial dependence: {feature}")
    plt.tight_layout()
    plt.savefig(save_path)
    plt.close(fig)
