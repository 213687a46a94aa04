"""
activation.py
~~~~~~~~~~~~~

Activation functions shared by every node of a network.
"""

import math
from enum import Enum


class ActivationFunction(Enum):
    """The activation applied by every hidden and answer node.

    The value of each member is its canonical name, which is also the
    marker line written at the end of a ``.darj`` model file.

    Methods:
        evaluate, derivative, from_name
    """

    SIGMOID = "sigmoid"
    LINEAR = "linear"
    TANH = "tanh"
    STEP = "step"

    def __str__(self) -> str:
        return self.value

    def evaluate(self, x: float) -> float:
        """
        Evaluate the activation at the weighted input sum `x`.
        """
        if self is ActivationFunction.SIGMOID:
            if x >= 0:
                return 1.0 / (1.0 + math.exp(-x))
            # exp(-x) overflows for large negative x
            z = math.exp(x)
            return z / (1.0 + z)
        elif self is ActivationFunction.LINEAR:
            return 2.0 * x
        elif self is ActivationFunction.TANH:
            return math.tanh(x)
        else:  # step
            return -1.0 if x < 0 else 1.0

    def derivative(self, output: float) -> float:
        """
        Gradient of the activation, written in terms of its own `output`
        since nodes only cache what they emitted.

        The step function is treated as the identity when propagating
        error, otherwise no weight would ever move.
        """
        if self is ActivationFunction.SIGMOID:
            return output * (1.0 - output)
        elif self is ActivationFunction.LINEAR:
            return 2.0
        elif self is ActivationFunction.TANH:
            return 1.0 - output ** 2
        else:  # step
            return 1.0

    @classmethod
    def from_name(cls, name: str) -> "ActivationFunction":
        """
        Look up an activation by its canonical name.

        Raises:
            ValueError: If `name` is not a known activation
        """
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown activation function: {name!r}") from None
