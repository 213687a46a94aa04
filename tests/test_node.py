"""
test_node.py
~~~~~~~~~~~~

Unit tests for activation functions, category labels and single nodes.
"""

import math

import pytest

from nodenet.activation import ActivationFunction
from nodenet.errors import (
    ConfigurationError,
    DistinguishingModelFailure,
    NetworkStateError,
    WriteModelFailed
)
from nodenet.inputs import Input, categories_format, categories_match
from nodenet.node import Node


@pytest.mark.unit
class TestActivationFunction:
    """Test activation values and derivatives."""

    def test_sigmoid(self):
        """Test sigmoid values, including extreme inputs."""
        sigmoid = ActivationFunction.SIGMOID
        assert sigmoid.evaluate(0.0) == 0.5
        assert sigmoid.evaluate(2.0) == pytest.approx(1 / (1 + math.exp(-2)))
        assert sigmoid.evaluate(-1000.0) == pytest.approx(0.0)
        assert sigmoid.evaluate(1000.0) == pytest.approx(1.0)
        assert sigmoid.derivative(0.5) == 0.25

    def test_linear(self):
        """Test that linear doubles its input and has slope 2."""
        assert ActivationFunction.LINEAR.evaluate(1.5) == 3.0
        assert ActivationFunction.LINEAR.derivative(123.0) == 2.0

    def test_tanh(self):
        """Test tanh and its derivative on the output."""
        tanh = ActivationFunction.TANH
        out = tanh.evaluate(0.7)
        assert out == pytest.approx(math.tanh(0.7))
        assert tanh.derivative(out) == pytest.approx(1 - math.tanh(0.7) ** 2)

    def test_step(self):
        """Test that step emits -1 below zero and 1 otherwise."""
        step = ActivationFunction.STEP
        assert step.evaluate(-0.01) == -1.0
        assert step.evaluate(0.0) == 1.0
        assert step.derivative(1.0) == 1.0

    @pytest.mark.parametrize("name", ["sigmoid", "linear", "tanh", "step"])
    def test_names_round_trip(self, name):
        """Test that canonical names map back to their members."""
        activation = ActivationFunction.from_name(name)
        assert str(activation) == name

    def test_unknown_name(self):
        """Test that unknown names raise ValueError."""
        with pytest.raises(ValueError):
            ActivationFunction.from_name("relu")


@pytest.mark.unit
class TestCategories:
    """Test category labels and samples."""

    def test_match_is_type_strict(self):
        """Test that labels of different types never match."""
        assert categories_match("1", "1")
        assert categories_match(2, 2)
        assert not categories_match(1, 1.0)
        assert not categories_match(True, 1)
        assert not categories_match(None, None)

    def test_categories_format_rejects_duplicates(self):
        """Test that the same label cannot be bound twice."""
        with pytest.raises(ConfigurationError):
            categories_format(["a", "b", "a"])

    def test_categories_format_rejects_unknown_types(self):
        """Test that only bool, int, float and str are labels."""
        with pytest.raises(ConfigurationError):
            categories_format(["a", ("tuple",)])

    def test_input_coerces_features(self):
        """Test that features are stored as floats."""
        sample = Input([1, 0], "yes")
        assert sample.features == [1.0, 0.0]
        assert sample.labelled
        assert not Input([0.5]).labelled

    def test_input_rejects_bad_label(self):
        """Test that an unsupported label type is rejected."""
        with pytest.raises(ConfigurationError):
            Input([0.0], ["list"])


@pytest.mark.unit
class TestNode:
    """Test a single node."""

    def test_input_and_output(self):
        """Test the weighted sum and the activation of a node."""
        node = Node([0.5, -1.0], 0.25)
        node.receive([2.0, 1.0])
        assert node.input() == pytest.approx(0.25)
        assert node.output(ActivationFunction.LINEAR) == pytest.approx(0.5)
        assert node.cached_output == pytest.approx(0.5)

    def test_receive_checks_length(self):
        """Test that a node refuses the wrong number of values."""
        node = Node([0.5, -1.0], 0.0)
        with pytest.raises(NetworkStateError):
            node.receive([1.0])

    def test_answer_error_signal(self):
        """Test the answer error signal of a sigmoid node."""
        node = Node([], 0.0)
        node.category = "yes"
        node.cached_output = 0.8
        node.assign_answer("yes")
        err = node.compute_answer_err_sig(ActivationFunction.SIGMOID)
        assert err == pytest.approx((1.0 - 0.8) * 0.8 * 0.2)

    def test_adjust_weights(self):
        """Test that weights move by err_sig * value * learning rate."""
        node = Node([0.1, 0.2], 0.3)
        node.receive([1.0, -2.0])
        node.err_sig = 0.5
        node.adjust_weights(0.1)
        assert node.b_weight == pytest.approx(0.35)
        assert node.link_weights == pytest.approx([0.15, 0.1])

    def test_adjust_without_error_signal(self):
        """Test that adjusting before backpropagation raises."""
        node = Node([0.1], 0.0)
        node.receive([1.0])
        with pytest.raises(NetworkStateError) as exc_info:
            node.adjust_weights(0.1)
        assert exc_info.value.field == "err_sig"

    def test_answer_error_without_ground_truth(self):
        """Test that a missing correct answer is reported, not guessed."""
        node = Node([], 0.0)
        node.cached_output = 0.4
        with pytest.raises(NetworkStateError):
            node.compute_answer_err_sig(ActivationFunction.SIGMOID)


@pytest.mark.unit
class TestErrors:
    """Test error formatting."""

    def test_error_code_in_message(self):
        """Test that errors render their code."""
        error = WriteModelFailed("model_x_1.darj", "disk full")
        assert str(error).startswith("[WRITE_MODEL_FAILED]")
        assert error.context["model_path"] == "model_x_1.darj"

    def test_distinguishing_failure_wraps_inner(self):
        """Test that the inner error is kept."""
        inner = WriteModelFailed("model_x_1.darj")
        error = DistinguishingModelFailure(inner)
        assert error.inner is inner
        assert error.context["inner_code"] == "WRITE_MODEL_FAILED"
