"""
node.py
~~~~~~~

A single neuron: its incoming link weights, its bias weight, and the
values it caches while one sample passes forward and backward.
"""

from typing import List, Optional, Sequence

from nodenet.activation import ActivationFunction
from nodenet.errors import NetworkStateError
from nodenet.inputs import Category, categories_match


class Node:
    """
    One node of a fully-connected layer.

    Attributes:
        link_weights: One weight per node of the previous layer
        link_vals: Values most recently received over each link
        b_weight: Bias weight
        cached_output: Activation computed by the last forward pass
        err_sig: Error signal computed by the last backward pass
        correct_answer: 1.0 if this answer node's category is the label
            of the current sample, else 0.0
        category: Label bound to an answer node
    """

    def __init__(self, link_weights: Sequence[float], b_weight: float):
        self.link_weights: List[float] = [float(w) for w in link_weights]
        self.link_vals: List[Optional[float]] = [None] * len(self.link_weights)
        self.b_weight = float(b_weight)
        self.cached_output: Optional[float] = None
        self.err_sig: Optional[float] = None
        self.correct_answer: Optional[float] = None
        self.category: Optional[Category] = None

    def __repr__(self) -> str:
        return (f"Node(links={self.links}, b_weight={self.b_weight!r}, "
                f"category={self.category!r})")

    @property
    def links(self) -> int:
        return len(self.link_weights)

    def _require(self, value: Optional[float], field: str) -> float:
        if value is None:
            raise NetworkStateError(
                f"Node field '{field}' read before it was computed",
                field=field
            )
        return value

    def receive(self, values: Sequence[float]) -> None:
        """Copy the previous layer's outputs onto this node's links."""
        if len(values) != self.links:
            raise NetworkStateError(
                f"Node has {self.links} links but received "
                f"{len(values)} values",
                field="link_vals"
            )
        self.link_vals = list(values)

    def input(self) -> float:
        """Weighted sum of the link values plus the bias weight."""
        total = 0.0
        for val, weight in zip(self.link_vals, self.link_weights):
            total += self._require(val, "link_vals") * weight
        return total + self.b_weight

    def output(self, activation: ActivationFunction) -> float:
        self.cached_output = activation.evaluate(self.input())
        return self.cached_output

    def assign_answer(self, label: Optional[Category]) -> None:
        self.correct_answer = 1.0 if categories_match(self.category, label) else 0.0

    def compute_answer_err_sig(self, activation: ActivationFunction) -> float:
        output = self._require(self.cached_output, "cached_output")
        target = self._require(self.correct_answer, "correct_answer")
        self.err_sig = (target - output) * activation.derivative(output)
        return self.err_sig

    def compute_hidden_err_sig(self, downstream: float,
                               activation: ActivationFunction) -> float:
        """
        Scale the error propagated back from the next layer by the local
        derivative. `downstream` is the sum over next-layer nodes of their
        error signal times the weight of their link from this node.
        """
        output = self._require(self.cached_output, "cached_output")
        self.err_sig = downstream * activation.derivative(output)
        return self.err_sig

    def adjust_weights(self, learning_rate: float) -> None:
        err_sig = self._require(self.err_sig, "err_sig")
        self.b_weight += err_sig * learning_rate
        for link in range(self.links):
            val = self._require(self.link_vals[link], "link_vals")
            self.link_weights[link] += err_sig * val * learning_rate

    def clear(self) -> None:
        """Forget the error signal of the previous sample."""
        self.err_sig = None
