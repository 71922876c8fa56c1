"""
Model families and their hyperparameter search spaces.

The registry is a closed set of model families (logistic regression, linear
SVM, gradient-boosted trees, naive Bayes, decision tree). Each family declares
a default search space and builds an unfitted scikit-learn compatible
estimator from a HyperparameterPoint. New families are added by defining a new
ModelFamily subclass and listing it in ``REGISTERED_FAMILIES``.

Example:
    from model_registry import LOGISTIC_REGRESSION, ModelRegistry

    registry = ModelRegistry.from_config(["logistic_regression", "decision_tree"])
    space = registry.space_for(LOGISTIC_REGRESSION)
    estimator = LOGISTIC_REGRESSION.build(space.from_unit([0.5, 0.5]), seed=1)
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.linear_model import LogisticRegression
from sklearn.naive_bayes import GaussianNB
from sklearn.svm import SVC
from sklearn.tree import DecisionTreeClassifier
from xgboost import XGBClassifier

from experiment_config import ConfigurationError

_TOLERANCE = 1e-9


class InvalidHyperparameterError(ValueError):
    """Raised when a point lies outside its family's search space."""


def _plain(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


class HyperparameterPoint(Mapping):
    """
    Immutable assignment of hyperparameter values.

    Two points are equal when they hold the same names and values, and equal
    points hash identically, so points can key dictionaries and sets.

    Example:
        point = HyperparameterPoint(penalty=0.01, mixture=0.5)
        point["penalty"]  # 0.01
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        merged = dict(values or {})
        merged.update(kwargs)
        self._items: Tuple[Tuple[str, Any], ...] = tuple(
            sorted((name, _plain(value)) for name, value in merged.items())
        )

    def __getitem__(self, name: str) -> Any:
        for key, value in self._items:
            if key == name:
                return value
        raise KeyError(name)

    def __iter__(self) -> Iterator[str]:
        return (key for key, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self) -> int:
        return hash(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HyperparameterPoint):
            return self._items == other._items
        return super().__eq__(other)

    def __repr__(self) -> str:
        inner = ", ".join(f"{key}={value!r}" for key, value in self._items)
        return f"HyperparameterPoint({inner})"

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._items)


# ----------------------------------------------------------------------
# Search space dimensions
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ContinuousDimension:
    """Real-valued range, optionally searched on a log scale."""

    name: str
    low: float
    high: float
    log: bool = False
    base: float = 10.0

    def __post_init__(self) -> None:
        if self.low > self.high:
            raise ConfigurationError(f"Dimension '{self.name}': low {self.low} > high {self.high}")
        if self.log and self.low <= 0:
            raise ConfigurationError(f"Dimension '{self.name}': log scale needs a positive lower bound")

    def _scaled_bounds(self) -> Tuple[float, float]:
        if self.log:
            return math.log(self.low, self.base), math.log(self.high, self.base)
        return self.low, self.high

    def from_unit(self, u: float) -> Any:
        lo, hi = self._scaled_bounds()
        scaled = lo + float(np.clip(u, 0.0, 1.0)) * (hi - lo)
        value = self.base ** scaled if self.log else scaled
        return float(np.clip(value, self.low, self.high))

    def to_unit(self, value: Any) -> float:
        lo, hi = self._scaled_bounds()
        if hi == lo:
            return 0.5
        scaled = math.log(value, self.base) if self.log else float(value)
        return float(np.clip((scaled - lo) / (hi - lo), 0.0, 1.0))

    def contains(self, value: Any) -> bool:
        if isinstance(value, (bool, str)) or value is None:
            return False
        span = max(abs(self.high - self.low), 1.0)
        return self.low - _TOLERANCE * span <= float(value) <= self.high + _TOLERANCE * span

    def with_bounds(self, low: float, high: float) -> "ContinuousDimension":
        return type(self)(self.name, low, high, self.log, self.base)


@dataclass(frozen=True)
class IntegerDimension(ContinuousDimension):
    """Integer range; unit values round to the nearest integer."""

    def from_unit(self, u: float) -> Any:
        return int(round(super().from_unit(u)))

    def contains(self, value: Any) -> bool:
        if not isinstance(value, (int, np.integer)) or isinstance(value, bool):
            return False
        return self.low <= value <= self.high


@dataclass(frozen=True)
class CategoricalDimension:
    """Discrete set of levels; the unit interval is cut into equal bins."""

    name: str
    levels: Tuple[Any, ...]

    def __post_init__(self) -> None:
        if not self.levels:
            raise ConfigurationError(f"Dimension '{self.name}' has no levels")

    def from_unit(self, u: float) -> Any:
        index = min(int(float(np.clip(u, 0.0, 1.0)) * len(self.levels)), len(self.levels) - 1)
        return self.levels[index]

    def to_unit(self, value: Any) -> float:
        return (self.levels.index(value) + 0.5) / len(self.levels)

    def contains(self, value: Any) -> bool:
        return value in self.levels


Dimension = Union[ContinuousDimension, IntegerDimension, CategoricalDimension]


class SearchSpace:
    """
    Ordered set of tunable dimensions for one model family.

    Points are mapped to and from the unit hypercube, which is where the
    space-filling design and the annealing neighborhood operate.
    """

    def __init__(self, dimensions: Sequence[Dimension]) -> None:
        names = [d.name for d in dimensions]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate dimension names in {names}")
        self.dimensions: Tuple[Dimension, ...] = tuple(dimensions)

    @property
    def names(self) -> List[str]:
        return [d.name for d in self.dimensions]

    def __len__(self) -> int:
        return len(self.dimensions)

    def __getitem__(self, name: str) -> Dimension:
        for dimension in self.dimensions:
            if dimension.name == name:
                return dimension
        raise KeyError(name)

    def from_unit(self, vector: Sequence[float]) -> HyperparameterPoint:
        if len(vector) != len(self.dimensions):
            raise ValueError(f"Expected {len(self.dimensions)} coordinates, got {len(vector)}")
        return HyperparameterPoint(
            {d.name: d.from_unit(u) for d, u in zip(self.dimensions, vector)}
        )

    def to_unit(self, point: HyperparameterPoint) -> np.ndarray:
        return np.array([d.to_unit(point[d.name]) for d in self.dimensions], dtype=float)

    def validate(self, point: HyperparameterPoint) -> None:
        """
        Check that ``point`` assigns every dimension a value inside its bounds.

        Raises:
            InvalidHyperparameterError: On missing, extra or out-of-range values.
        """
        expected = set(self.names)
        given = set(point)
        if expected != given:
            raise InvalidHyperparameterError(
                f"Point {point} does not match dimensions {sorted(expected)}"
            )
        for dimension in self.dimensions:
            value = point[dimension.name]
            if not dimension.contains(value):
                raise InvalidHyperparameterError(
                    f"Value {value!r} for '{dimension.name}' is outside the search space {dimension}"
                )

    def with_overrides(self, overrides: Dict[str, Any]) -> "SearchSpace":
        """
        Return a copy with some dimensions replaced.

        Each override is either a mapping with ``low``/``high`` bounds (the
        dimension keeps its type and scale), a list of levels, or a single
        value fixing the dimension.

        Raises:
            ConfigurationError: If an override names an unknown dimension or is
                malformed.
        """
        unknown = sorted(set(overrides) - set(self.names))
        if unknown:
            raise ConfigurationError(f"Overrides for unknown dimensions {unknown}; known: {self.names}")
        dimensions: List[Dimension] = []
        for dimension in self.dimensions:
            if dimension.name not in overrides:
                dimensions.append(dimension)
                continue
            override = overrides[dimension.name]
            if isinstance(override, dict):
                if isinstance(dimension, CategoricalDimension):
                    raise ConfigurationError(
                        f"Dimension '{dimension.name}' is categorical; give a list of levels"
                    )
                try:
                    dimensions.append(dimension.with_bounds(override["low"], override["high"]))
                except KeyError as e:
                    raise ConfigurationError(
                        f"Override for '{dimension.name}' is missing bound {e}"
                    )
            elif isinstance(override, (list, tuple)):
                dimensions.append(CategoricalDimension(dimension.name, tuple(override)))
            else:
                dimensions.append(CategoricalDimension(dimension.name, (override,)))
        return SearchSpace(dimensions)

    def __repr__(self) -> str:
        return f"SearchSpace({list(self.dimensions)})"


# ----------------------------------------------------------------------
# Model families
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ModelFamily:
    """
    A trainable model capability with its own hyperparameter space.

    Subclasses set ``name`` and ``label`` and implement ``default_space`` and
    ``_build``.
    """

    name: ClassVar[str] = ""
    label: ClassVar[str] = ""

    def default_space(self) -> SearchSpace:
        raise NotImplementedError

    def _build(self, params: Dict[str, Any], seed: int) -> Any:
        raise NotImplementedError

    def build(
        self,
        point: HyperparameterPoint,
        seed: int = 0,
        space: Optional[SearchSpace] = None,
    ) -> Any:
        """
        Build an unfitted estimator for ``point``.

        Raises:
            InvalidHyperparameterError: If the point is outside ``space``
                (the family's default space when not given).
        """
        (space or self.default_space()).validate(point)
        return self._build(point.as_dict(), seed)

    def __str__(self) -> str:
        return self.name


def _elastic_net_arguments(mixture: float) -> Dict[str, Any]:
    # scikit-learn >= 1.8 selects the penalty through l1_ratio alone
    if LogisticRegression().get_params().get("penalty") == "deprecated":
        return {"l1_ratio": mixture}
    return {"penalty": "elasticnet", "l1_ratio": mixture}


@dataclass(frozen=True)
class LogisticRegressionFamily(ModelFamily):
    name: ClassVar[str] = "logistic_regression"
    label: ClassVar[str] = "Logistic regression"

    def default_space(self) -> SearchSpace:
        return SearchSpace([
            ContinuousDimension("penalty", 1e-10, 1.0, log=True),
            ContinuousDimension("mixture", 0.0, 1.0),
        ])

    def _build(self, params: Dict[str, Any], seed: int) -> Any:
        return LogisticRegression(
            C=1.0 / params["penalty"],
            solver="saga",
            max_iter=1000,
            random_state=seed,
            **_elastic_net_arguments(params["mixture"]),
        )


@dataclass(frozen=True)
class LinearSVMFamily(ModelFamily):
    name: ClassVar[str] = "svm_linear"
    label: ClassVar[str] = "Linear support vector machine"

    def default_space(self) -> SearchSpace:
        return SearchSpace([
            ContinuousDimension("cost", 2.0 ** -10, 2.0 ** 5, log=True, base=2.0),
        ])

    def _build(self, params: Dict[str, Any], seed: int) -> Any:
        return SVC(kernel="linear", C=params["cost"], probability=True, random_state=seed)


@dataclass(frozen=True)
class GradientBoostedTreesFamily(ModelFamily):
    name: ClassVar[str] = "gradient_boosted_trees"
    label: ClassVar[str] = "Gradient-boosted trees"

    def default_space(self) -> SearchSpace:
        return SearchSpace([
            IntegerDimension("trees", 50, 1000),
            IntegerDimension("tree_depth", 1, 15),
            ContinuousDimension("learn_rate", 1e-3, 10 ** -0.5, log=True),
            IntegerDimension("min_n", 2, 40),
            ContinuousDimension("loss_reduction", 1e-10, 10 ** 1.5, log=True),
            ContinuousDimension("sample_size", 0.1, 1.0),
            ContinuousDimension("mtry", 0.1, 1.0),
        ])

    def _build(self, params: Dict[str, Any], seed: int) -> Any:
        return XGBClassifier(
            n_estimators=params["trees"],
            max_depth=params["tree_depth"],
            learning_rate=params["learn_rate"],
            min_child_weight=params["min_n"],
            gamma=params["loss_reduction"],
            subsample=params["sample_size"],
            colsample_bytree=params["mtry"],
            tree_method="hist",
            eval_metric="logloss",
            n_jobs=1,
            random_state=seed,
        )


@dataclass(frozen=True)
class NaiveBayesFamily(ModelFamily):
    name: ClassVar[str] = "naive_bayes"
    label: ClassVar[str] = "Naive Bayes"

    def default_space(self) -> SearchSpace:
        return SearchSpace([
            ContinuousDimension("smoothness", 1e-12, 1e-1, log=True),
        ])

    def _build(self, params: Dict[str, Any], seed: int) -> Any:
        return GaussianNB(var_smoothing=params["smoothness"])


@dataclass(frozen=True)
class DecisionTreeFamily(ModelFamily):
    name: ClassVar[str] = "decision_tree"
    label: ClassVar[str] = "Decision tree"

    def default_space(self) -> SearchSpace:
        return SearchSpace([
            ContinuousDimension("cost_complexity", 1e-10, 1e-1, log=True),
            IntegerDimension("tree_depth", 1, 15),
            IntegerDimension("min_n", 2, 40),
        ])

    def _build(self, params: Dict[str, Any], seed: int) -> Any:
        return DecisionTreeClassifier(
            ccp_alpha=params["cost_complexity"],
            max_depth=params["tree_depth"],
            min_samples_split=params["min_n"],
            random_state=seed,
        )


LOGISTIC_REGRESSION = LogisticRegressionFamily()
SVM_LINEAR = LinearSVMFamily()
GRADIENT_BOOSTED_TREES = GradientBoostedTreesFamily()
NAIVE_BAYES = NaiveBayesFamily()
DECISION_TREE = DecisionTreeFamily()

REGISTERED_FAMILIES: Tuple[ModelFamily, ...] = (
    LOGISTIC_REGRESSION,
    SVM_LINEAR,
    GRADIENT_BOOSTED_TREES,
    NAIVE_BAYES,
    DECISION_TREE,
)

# Name index used only to resolve configuration entries.
FAMILIES_BY_NAME: Dict[str, ModelFamily] = {f.name: f for f in REGISTERED_FAMILIES}


class ModelRegistry:
    """
    Fixed, ordered mapping from model family to search space.

    Registration order is used to break selection ties deterministically.
    """

    def __init__(self, entries: Sequence[Tuple[ModelFamily, SearchSpace]]) -> None:
        if not entries:
            raise ConfigurationError("A model registry needs at least one family")
        self._entries: List[Tuple[ModelFamily, SearchSpace]] = list(entries)
        for family, space in self._entries:
            if len(space) == 0:
                raise ConfigurationError(f"Search space for {family.name} is empty")

    @classmethod
    def from_config(
        cls,
        family_names: Optional[Sequence[str]] = None,
        search_spaces: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> "ModelRegistry":
        """
        Build a registry from configuration names and space overrides.

        Args:
            family_names: Families to include, in order. None includes all.
            search_spaces: Per-family dimension overrides, see
                ``SearchSpace.with_overrides``.

        Raises:
            ConfigurationError: For unknown families or malformed overrides.
        """
        names = list(family_names) if family_names is not None else list(FAMILIES_BY_NAME)
        search_spaces = search_spaces or {}
        entries: List[Tuple[ModelFamily, SearchSpace]] = []
        for name in names:
            if name not in FAMILIES_BY_NAME:
                raise ConfigurationError(f"Unknown model family '{name}'")
            family = FAMILIES_BY_NAME[name]
            space = family.default_space()
            if name in search_spaces:
                space = space.with_overrides(search_spaces[name])
            entries.append((family, space))
        return cls(entries)

    @property
    def families(self) -> List[ModelFamily]:
        return [family for family, _ in self._entries]

    def space_for(self, family: ModelFamily) -> SearchSpace:
        for registered, space in self._entries:
            if registered == family:
                return space
        raise KeyError(f"Model family {family.name} is not registered")

    def order_of(self, family: ModelFamily) -> int:
        return self.families.index(family)

    def __iter__(self) -> Iterator[Tuple[ModelFamily, SearchSpace]]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
