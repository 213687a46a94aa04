"""
inputs.py
~~~~~~~~~

Samples fed to a network and the category labels bound to its answer nodes.

A category is one of ``bool``, ``int``, ``float`` or ``str``. Two
categories are equal only when both their type and their value match,
so ``True``, ``1`` and ``1.0`` are three distinct labels.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from nodenet.errors import ConfigurationError

Category = Union[bool, int, float, str]

CATEGORY_TYPES = (bool, int, float, str)


def validate_category(value, parameter: str = "category") -> Category:
    """
    Check that `value` is a usable category label.

    Raises:
        ConfigurationError: If the value is not bool, int, float or str
    """
    if type(value) not in CATEGORY_TYPES:
        raise ConfigurationError(
            f"Category must be bool, int, float or str, "
            f"got {type(value).__name__}",
            parameter=parameter,
            actual_value=value
        )
    return value


def categories_match(first: Optional[Category],
                     second: Optional[Category]) -> bool:
    """Type-strict equality between two category labels."""
    if first is None or second is None:
        return False
    return type(first) is type(second) and first == second


@dataclass
class Input:
    """One sample: its feature values and, when known, its label."""

    features: List[float]
    label: Optional[Category] = None

    def __post_init__(self):
        self.features = [float(value) for value in self.features]
        if self.label is not None:
            validate_category(self.label, "label")

    def __len__(self) -> int:
        return len(self.features)

    @property
    def labelled(self) -> bool:
        return self.label is not None


def categories_format(labels: Sequence) -> List[Category]:
    """
    Validate a sequence of category labels and return it as a list.

    Raises:
        ConfigurationError: If a label has an unsupported type or the
            sequence contains duplicates
    """
    categories: List[Category] = []
    for index, label in enumerate(labels):
        validate_category(label, f"categories[{index}]")
        if any(categories_match(label, seen) for seen in categories):
            raise ConfigurationError(
                f"Duplicate category {label!r}",
                parameter="categories",
                actual_value=list(labels)
            )
        if isinstance(label, float) and math.isnan(label):
            raise ConfigurationError(
                "NaN cannot be used as a category",
                parameter=f"categories[{index}]",
                actual_value=label
            )
        categories.append(label)
    return categories
