"""
network.py
~~~~~~~~~~

A fully-connected feedforward network trained by backpropagation to pick
one winning category among its answer nodes.

The network is a list of layers, each a list of `Node` objects. Layer 0
is the sensor layer, which holds raw feature values; the last layer is
the answer layer, whose nodes are each bound to one category. Every
hidden and answer node applies the same activation function.

Training mutates the weights in place, one sample at a time, and writes
the trained model to a ``.darj`` file once the epoch accuracy reaches
the requested target.
"""

import math
import time
import logging
from typing import (
    Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union
)

import numpy as np

from nodenet import model_store
from nodenet.activation import ActivationFunction
from nodenet.errors import ConfigurationError, NetworkStateError, TrainingDidNotConverge
from nodenet.inputs import Category, Input, categories_format, categories_match
from nodenet.node import Node

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_MAX_EPOCHS = 10000
PROGRESS_INTERVAL = 10


class TrainingResult(NamedTuple):
    """What `NeuralNetwork.learn` returns."""
    model_name: str
    accuracy: float
    mse: float


class EvaluationResult(NamedTuple):
    """Predictions for every sample plus accuracy/MSE over labelled ones."""
    predictions: List[Category]
    accuracy: float
    mse: float


class NeuralNetwork:
    """
    Feedforward network of individually weighted nodes.

    Attributes:
        node_array: List of layers, each a list of `Node`
        sensor: Index of the sensor layer (always 0)
        answer: Index of the answer layer (always the last)
        parameters: Number of weights, counting one bias per node
        activation_function: Activation shared by every node
        rng: numpy Generator used for initialization and shuffling
    """

    def __init__(
        self,
        sensor_count: int,
        hidden_count: int,
        answer_count: int,
        hidden_layer_count: int,
        activation_function: Union[ActivationFunction, str] = ActivationFunction.SIGMOID,
        seed: Optional[int] = None
    ):
        """
        Build a network with random weights drawn from [-0.5, 0.5].

        Args:
            sensor_count: Number of input features
            hidden_count: Number of nodes in each hidden layer
            answer_count: Number of categories
            hidden_layer_count: Number of hidden layers (may be 0)
            activation_function: ActivationFunction or its name
            seed: Optional seed for reproducible weights and shuffling

        Raises:
            ConfigurationError: If the topology is degenerate, the
                activation is unknown or the seed is not an integer

        Example:
            >>> net = NeuralNetwork(2, 2, 2, 1, 'sigmoid')
            >>> net.architecture
            [2, 2, 2]
        """
        for parameter, value, minimum in (
            ('sensor_count', sensor_count, 1),
            ('answer_count', answer_count, 1),
            ('hidden_layer_count', hidden_layer_count, 0),
        ):
            if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
                raise ConfigurationError(
                    f"{parameter} must be an integer >= {minimum}, got {value!r}",
                    parameter=parameter,
                    actual_value=value
                )
        if hidden_layer_count > 0 and (
            not isinstance(hidden_count, int) or isinstance(hidden_count, bool)
            or hidden_count < 1
        ):
            raise ConfigurationError(
                f"hidden_count must be an integer >= 1 when hidden layers "
                f"are requested, got {hidden_count!r}",
                parameter='hidden_count',
                actual_value=hidden_count
            )

        rng = np.random.default_rng(_check_seed(seed))
        sizes =[sensor_count] + [hidden_count] * hidden_layer_count + [answer_count]

        node_array: List[List[Node]] = []
        previous = 0
        for size in sizes:
            layer = []
            for _ in range(size):
                b_weight = rng.uniform(-0.5, 0.5)
                link_weights = rng.uniform(-0.5, 0.5, size=previous)
                layer.append(Node(link_weights.tolist(), b_weight))
            node_array.append(layer)
            previous = size

        self._setup(node_array, _as_activation(activation_function), rng)
        logger.debug(
            f"Created network {self.architecture} with {self.parameters} "
            f"parameters, activation={self.activation_function}"
        )

    def _setup(self, node_array: List[List[Node]],
               activation_function: ActivationFunction,
               rng: np.random.Generator) -> None:
        self.node_array = node_array
        self.sensor = 0
        self.answer = len(node_array) - 1
        self.activation_function = activation_function
        self.rng = rng
        self.parameters = sum(
            1 + node.links for layer in node_array for node in layer
        )

    @classmethod
    def from_layers(
        cls,
        node_array: List[List[Node]],
        activation_function: Union[ActivationFunction, str],
        seed: Optional[int] = None
    ) -> 'NeuralNetwork':
        """
        Wrap existing layers (for example ones read from a model file).

        Raises:
            ConfigurationError: If a node's link count does not match the
                size of the previous layer
        """
        if len(node_array) < 2:
            raise ConfigurationError(
                "A network needs at least a sensor and an answer layer",
                parameter='node_array',
                actual_value=len(node_array)
            )
        for index, layer in enumerate(node_array):
            expected = len(node_array[index - 1]) if index else 0
            if not layer or any(node.links != expected for node in layer):
                raise ConfigurationError(
                    f"Layer {index} must be non-empty with {expected} links "
                    f"per node",
                    parameter='node_array'
                )
        net = cls.__new__(cls)
        net._setup(node_array, _as_activation(activation_function),
                   np.random.default_rng(_check_seed(seed)))
        return net

    def __repr__(self) -> str:
        return (f"NeuralNetwork(architecture={self.architecture}, "
                f"activation={self.activation_function})")

    @property
    def architecture(self) -> List[int]:
        """Number of nodes in each layer, sensor layer first."""
        return [len(layer) for layer in self.node_array]

    @property
    def hidden_layers(self) -> int:
        return len(self.node_array) - 2

    @property
    def categories(self) -> List[Optional[Category]]:
        return [node.category for node in self.node_array[self.answer]]

    def set_activation_function(
        self,
        activation_function: Union[ActivationFunction, str]
    ) -> None:
        self.activation_function = _as_activation(activation_function)

    # ------------------------------------------------------------------
    # Categories and ground truth
    # ------------------------------------------------------------------

    def categorize(self, categories: Sequence[Category]) -> None:
        """
        Bind category `i` to answer node `i`.

        Raises:
            ConfigurationError: If the number of categories differs from
                the number of answer nodes, or a label is invalid
        """
        categories = categories_format(categories)
        answer_layer = self.node_array[self.answer]
        if len(categories) != len(answer_layer):
            raise ConfigurationError(
                f"Expected {len(answer_layer)} categories, one per answer "
                f"node, got {len(categories)}",
                parameter='categories',
                actual_value=categories
            )
        for node, category in zip(answer_layer, categories):
            node.category = category
        logger.debug(f"Bound categories {categories}")

    def assign_answers(self, sample: Input) -> None:
        """Mark the answer node whose category is the sample's label."""
        for node in self.node_array[self.answer]:
            node.assign_answer(sample.label)

    def _check_categorized(self) -> None:
        if any(category is None for category in self.categories):
            raise NetworkStateError(
                "Categories must be bound before the network is used",
                field='category'
            )

    def _check_sample(self, sample: Input) -> None:
        sensors = len(self.node_array[self.sensor])
        if len(sample.features) != sensors:
            raise ConfigurationError(
                f"Sample has {len(sample.features)} features, network has "
                f"{sensors} sensors",
                parameter='features',
                actual_value=len(sample.features)
            )

    # ------------------------------------------------------------------
    # Forward propagation
    # ------------------------------------------------------------------

    def push_downstream(self, sample: Input) -> None:
        """
        Load the sample into the sensors and propagate it, layer by layer,
        to the answer layer.
        """
        self._check_sample(sample)
        for node, value in zip(self.node_array[self.sensor], sample.features):
            node.cached_output = value

        for layer_index in range(self.sensor + 1, len(self.node_array)):
            previous = [
                node.cached_output for node in self.node_array[layer_index - 1]
            ]
            for node in self.node_array[layer_index]:
                node.clear()
                node.receive(previous)
                node.output(self.activation_function)

    def feedforward(self, features: Sequence[float]) -> List[float]:
        """Return the answer-layer outputs for one feature vector."""
        self.push_downstream(Input(list(features)))
        return [node.cached_output for node in self.node_array[self.answer]]

    def largest_node(self) -> int:
        """Index of the brightest answer node (first one wins ties)."""
        answer_layer = self.node_array[self.answer]
        largest = 0
        for index, node in enumerate(answer_layer):
            if node.cached_output is None:
                raise NetworkStateError(
                    "Answer node read before forward propagation",
                    field='cached_output'
                )
            if node.cached_output > answer_layer[largest].cached_output:
                largest = index
        return largest

    def predict(self, features: Sequence[float]) -> Category:
        """Return the category of the brightest answer node."""
        self._check_categorized()
        self.feedforward(features)
        return self.node_array[self.answer][self.largest_node()].category

    def _self_analysis(self, sample: Input) -> Tuple[Category, bool, float]:
        """
        Read the decision for the sample that was just propagated.

        Returns:
            tuple: (predicted category, whether it matches the label,
                mean squared error over the answer nodes)
        """
        answer_layer = self.node_array[self.answer]
        brightest = answer_layer[self.largest_node()]
        if not sample.labelled:
            return brightest.category, False, 0.0

        matched = categories_match(brightest.category, sample.label)
        squared = 0.0
        for node in answer_layer:
            # float ** raises OverflowError; a diverging output must give inf
            diff = node.correct_answer - node.cached_output
            squared += diff * diff
        return brightest.category, matched, squared / len(answer_layer)

    # ------------------------------------------------------------------
    # Backpropagation
    # ------------------------------------------------------------------

    def backpropagate(self, learning_rate: float) -> None:
        """
        Compute every error signal, answer layer first and then each
        hidden layer back to the first, then adjust all weights.
        """
        activation = self.activation_function
        for node in self.node_array[self.answer]:
            node.compute_answer_err_sig(activation)

        for layer_index in range(self.answer - 1, self.sensor, -1):
            next_layer = self.node_array[layer_index + 1]
            for position, node in enumerate(self.node_array[layer_index]):
                downstream = 0.0
                for next_node in next_layer:
                    downstream += next_node.err_sig * next_node.link_weights[position]
                node.compute_hidden_err_sig(downstream, activation)

        for layer_index in range(self.answer, self.sensor, -1):
            for node in self.node_array[layer_index]:
                node.adjust_weights(learning_rate)

    # ------------------------------------------------------------------
    # Training and testing
    # ------------------------------------------------------------------

    def learn(
        self,
        data: Sequence[Input],
        categories: Sequence[Category],
        learning_rate: float,
        name: str,
        target_accuracy: float,
        max_epochs: int = DEFAULT_MAX_EPOCHS,
        model_dir: str = '.',
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> TrainingResult:
        """
        Train until the epoch accuracy reaches `target_accuracy`, then
        save the model.

        Each epoch visits every sample once in a fresh random order:
        ground truth is assigned, the sample is propagated, the decision
        is scored, and the error is propagated back into the weights.
        At least one epoch always runs.

        Args:
            data: Labelled samples
            categories: One label per answer node, in node order
            learning_rate: Step size applied to every weight update
            name: Name embedded in the model file name
            target_accuracy: Required epoch accuracy, in percent
            max_epochs: Epoch limit
            model_dir: Directory the model file is written to
            callback: Called after every epoch with a dict of
                epoch, max_epochs, accuracy, mse, correct, total and
                elapsed_time
            yield_func: Called after every epoch so a cooperative
                scheduler can run other tasks

        Returns:
            TrainingResult: (model_name, accuracy, mse) where mse is the
                mean squared error of the final epoch

        Raises:
            ConfigurationError: If parameters, categories or samples are
                inconsistent with the network
            TrainingDidNotConverge: If `max_epochs` elapse first, or the
                epoch error stops being finite
            WriteModelFailed: If the trained model could not be saved
        """
        if not isinstance(learning_rate, (int, float)) or not math.isfinite(learning_rate):
            raise ConfigurationError(
                f"learning_rate must be a finite number, got {learning_rate!r}",
                parameter='learning_rate',
                actual_value=learning_rate
            )
        if not isinstance(max_epochs, int) or max_epochs < 1:
            raise ConfigurationError(
                f"max_epochs must be a positive integer, got {max_epochs!r}",
                parameter='max_epochs',
                actual_value=max_epochs
            )
        if not data:
            raise ConfigurationError("Training data is empty", parameter='data')
        for index, sample in enumerate(data):
            self._check_sample(sample)
            if not sample.labelled:
                raise ConfigurationError(
                    f"Training sample {index} has no label",
                    parameter='data',
                    actual_value=index
                )

        self.categorize(categories)

        start_time = time.time()
        epochs = 0
        while True:
            correct = 0
            total = 0
            squared_error = 0.0
            category: Optional[Category] = None
            for index in self.rng.permutation(len(data)):
                sample = data[index]
                self.assign_answers(sample)
                self.push_downstream(sample)
                category, matched, error = self._self_analysis(sample)
                if matched:
                    correct += 1
                total += 1
                squared_error += error
                self.backpropagate(learning_rate)

            epochs += 1
            accuracy = correct / total * 100.0
            mse = squared_error / total

            logger.debug(
                f"Epoch {epochs}: accuracy {accuracy:.2f}% "
                f"({correct}/{total}), mse {mse:.6f}"
            )
            if epochs % PROGRESS_INTERVAL == 0:
                brightness = self.node_array[self.answer][self.largest_node()].cached_output
                logger.info(
                    f"Epoch {epochs}: accuracy {accuracy:.2f}%, "
                    f"last category {category!r} at brightness {brightness:.4f}"
                )

            if callback is not None:
                callback({
                    'epoch': epochs,
                    'max_epochs': max_epochs,
                    'accuracy': accuracy,
                    'mse': mse,
                    'correct': correct,
                    'total': total,
                    'elapsed_time': time.time() - start_time
                })
            if yield_func is not None:
                yield_func()

            if not math.isfinite(mse):
                logger.warning(
                    f"Training diverged after {epochs} epochs: mse {mse}, "
                    f"accuracy {accuracy:.2f}%"
                )
                raise TrainingDidNotConverge(epochs, accuracy, mse, target_accuracy)
            if accuracy >= target_accuracy:
                break
            if epochs >= max_epochs:
                logger.warning(
                    f"Training stopped after {epochs} epochs at "
                    f"{accuracy:.2f}%, target was {target_accuracy:.2f}%"
                )
                raise TrainingDidNotConverge(epochs, accuracy, mse, target_accuracy)

        model_name = self.write_model(name, model_dir)
        logger.info(
            f"Training finished with accuracy {correct}/{total} or "
            f"{accuracy:.2f}% after {epochs} epochs, mse {mse:.6f}"
        )
        return TrainingResult(model_name, accuracy, mse)

    def evaluate(self, data: Sequence[Input]) -> EvaluationResult:
        """
        Propagate every sample without touching the weights.

        Returns:
            EvaluationResult: one prediction per sample in input order,
                plus accuracy (percent) and MSE over the labelled samples
        """
        self._check_categorized()
        predictions: List[Category] = []
        correct = 0
        total = 0
        squared_error = 0.0
        for sample in data:
            if sample.labelled:
                self.assign_answers(sample)
            self.push_downstream(sample)
            category, matched, error = self._self_analysis(sample)
            predictions.append(category)
            if sample.labelled:
                total += 1
                correct += int(matched)
                squared_error += error

        accuracy = correct / total * 100.0 if total else 0.0
        mse = squared_error / total if total else 0.0
        logger.info(
            f"Testing finished with accuracy {correct}/{total} or "
            f"{accuracy:.2f}%, mse {mse:.6f}"
        )
        return EvaluationResult(predictions, accuracy, mse)

    @staticmethod
    def test(data: Sequence[Input], categories: Sequence[Category],
             model_name: str) -> EvaluationResult:
        """
        Load a saved model, bind `categories` and evaluate `data`.

        Raises:
            ReadModelFailed: If the model file cannot be read
            ModelFormatError: If the model file is malformed
            ConfigurationError: If categories or samples do not fit
        """
        net = NeuralNetwork.read_model(model_name)
        net.categorize(categories)
        return net.evaluate(data)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write_model(self, name: str, model_dir: str = '.') -> str:
        """Save the weights to a new ``.darj`` file and return its path."""
        return model_store.write_model(
            self.node_array, self.activation_function, name, model_dir
        )

    @staticmethod
    def read_model(model_name: str) -> 'NeuralNetwork':
        """Rebuild a network from a ``.darj`` file; categories are unbound."""
        node_array, activation = model_store.read_model(model_name)
        return NeuralNetwork.from_layers(node_array, activation)


def _check_seed(seed: Optional[int]) -> Optional[int]:
    if seed is not None and (
        not isinstance(seed, int) or isinstance(seed, bool) or seed < 0
    ):
        raise ConfigurationError(
            f"seed must be a non-negative integer or None, got {seed!r}",
            parameter='seed',
            actual_value=seed
        )
    return seed


def _as_activation(
    activation_function: Union[ActivationFunction, str]
) -> ActivationFunction:
    if isinstance(activation_function, ActivationFunction):
        return activation_function
    try:
        return ActivationFunction.from_name(activation_function)
    except (AttributeError, ValueError):
        raise ConfigurationError(
            f"Unknown activation function {activation_function!r}",
            parameter='activation_function',
            actual_value=activation_function
        ) from None
