"""
model_store.py
~~~~~~~~~~~~~~

Line-oriented text persistence for trained networks (``.darj`` files).

Layout, one line per node, layer by layer::

    ;0.05                 <- sensor node: no links, only the bias
    lb                    <- end of a layer
    0.12,-0.34;0.05       <- link weights, then ';', then the bias
    lb
    sigmoid               <- activation function

Only numeric state is stored. Category bindings are re-applied by the
caller after loading.
"""

import os
import logging
from typing import List, Sequence, Tuple

import numpy as np

from nodenet.activation import ActivationFunction
from nodenet.errors import (
    ConfigurationError,
    WriteModelFailed,
    ModelNameCollision,
    ReadModelFailed,
    ModelFormatError,
    InvalidNodeValueRead,
    ActivationFunctionNotRead,
    UnknownModelError
)
from nodenet.node import Node

# Configure module logger
logger = logging.getLogger(__name__)

MODEL_EXTENSION = '.darj'
LAYER_BREAK = 'lb'
MAX_NAME_ATTEMPTS = 64

# Suffixes come from OS entropy so seeded networks never replay names
_suffix_rng = np.random.default_rng()


def serialize_network(node_array: Sequence[Sequence[Node]],
                      activation: ActivationFunction) -> str:
    """
    Render a network's weights in the ``.darj`` layout.

    Args:
        node_array: Layers of nodes, sensor layer first
        activation: The network's activation function

    Returns:
        str: The model text (no trailing newline)
    """
    lines: List[str] = []
    for layer in node_array:
        for node in layer:
            weights = ','.join(repr(weight) for weight in node.link_weights)
            lines.append(f"{weights};{node.b_weight!r}")
        lines.append(LAYER_BREAK)
    lines.append(activation.value)
    return '\n'.join(lines)


def _parse_value(token: str, field: str, model_path: str) -> float:
    try:
        return float(token)
    except ValueError as e:
        raise InvalidNodeValueRead(token, field, str(e), model_path) from e


def _parse_node(line: str, line_number: int, model_path: str) -> Node:
    if ';' not in line:
        raise ModelFormatError(
            f"Line {line_number} is neither a node nor a layer break: "
            f"{line!r}",
            model_path
        )
    weights_part, _, bias_part = line.partition(';')
    weights = []
    if weights_part:
        weights = [
            _parse_value(token.strip(), 'weight', model_path)
            for token in weights_part.split(',')
        ]
    bias = _parse_value(bias_part.strip(), 'bias', model_path)
    return Node(weights, bias)


def _check_topology(node_array: List[List[Node]], model_path: str) -> None:
    if len(node_array) < 2:
        raise ModelFormatError(
            f"Model must hold at least a sensor and an answer layer, "
            f"found {len(node_array)} layer(s)",
            model_path
        )
    for index, layer in enumerate(node_array):
        if not layer:
            raise ModelFormatError(f"Layer {index} has no nodes", model_path)
        expected = len(node_array[index - 1]) if index else 0
        for position, node in enumerate(layer):
            if node.links != expected:
                raise ModelFormatError(
                    f"Node {position} of layer {index} has {node.links} "
                    f"links, expected {expected}",
                    model_path
                )


def deserialize_network(
    text: str,
    model_path: str = '<memory>'
) -> Tuple[List[List[Node]], ActivationFunction]:
    """
    Parse ``.darj`` model text.

    Args:
        text: Model text as written by `serialize_network`
        model_path: Used in error messages only

    Returns:
        tuple: (node_array, activation)

    Raises:
        ActivationFunctionNotRead: If the last line is not a known activation
        InvalidNodeValueRead: If a weight or bias is not a number
        ModelFormatError: If the layer structure is inconsistent
    """
    lines = [
        (number, line.strip())
        for number, line in enumerate(text.splitlines(), start=1)
        if line.strip()
    ]
    if not lines:
        raise ActivationFunctionNotRead(model_path)

    _, marker = lines[-1]
    if marker == LAYER_BREAK or ';' in marker:
        raise ActivationFunctionNotRead(model_path)
    try:
        activation = ActivationFunction.from_name(marker)
    except ValueError:
        raise ActivationFunctionNotRead(model_path, marker) from None

    node_array: List[List[Node]] = []
    layer: List[Node] = []
    for number, line in lines[:-1]:
        if line == LAYER_BREAK:
            node_array.append(layer)
            layer = []
            continue
        layer.append(_parse_node(line, number, model_path))

    if layer:
        raise ModelFormatError(
            f"Last layer of {len(layer)} node(s) is not terminated by "
            f"'{LAYER_BREAK}'",
            model_path
        )

    _check_topology(node_array, model_path)
    return node_array, activation


def generate_model_path(name: str, model_dir: str = '.') -> str:
    """Build ``<model_dir>/model_<name>_<random u32>.darj``."""
    suffix = int(_suffix_rng.integers(0, 2 ** 32, dtype=np.uint64))
    return os.path.join(model_dir, f"model_{name}_{suffix}{MODEL_EXTENSION}")


def _claim_model_path(model_path: str):
    """
    Create `model_path` exclusively and return the open file.

    Raises:
        ModelNameCollision: If the file already exists
        UnknownModelError: If the filesystem refused for another reason
    """
    try:
        return open(model_path, 'x', encoding='utf-8')
    except FileExistsError:
        raise ModelNameCollision(model_path) from None
    except OSError as e:
        raise UnknownModelError(str(e), model_path) from e


def _discard_partial_model(model_path: str) -> None:
    try:
        os.remove(model_path)
    except OSError as e:
        logger.warning(f"Could not remove partial model {model_path}: {e}")


def write_model(node_array: Sequence[Sequence[Node]],
                activation: ActivationFunction,
                name: str,
                model_dir: str = '.') -> str:
    """
    Save a network to a new ``.darj`` file with a random suffix.

    Args:
        node_array: Layers of nodes, sensor layer first
        activation: The network's activation function
        name: Human-readable part of the file name
        model_dir: Directory the file is written to (created if missing)

    Returns:
        str: Path of the written model

    Raises:
        ConfigurationError: If `name` contains a path separator
        WriteModelFailed: If the file could not be written
        UnknownModelError: If the target directory is unusable
    """
    if os.sep in name or (os.altsep and os.altsep in name):
        raise ConfigurationError(
            "Model name must not contain path separators",
            parameter="name",
            actual_value=name
        )

    serialized = serialize_network(node_array, activation)

    if model_dir and not os.path.exists(model_dir):
        try:
            os.makedirs(model_dir)
        except OSError as e:
            raise UnknownModelError(str(e), model_dir) from e

    model_path = ''
    for attempt in range(MAX_NAME_ATTEMPTS):
        model_path = generate_model_path(name, model_dir)
        try:
            handle = _claim_model_path(model_path)
        except ModelNameCollision:
            logger.warning(
                f"Model name {model_path} already taken, retrying "
                f"(attempt {attempt + 1}/{MAX_NAME_ATTEMPTS})"
            )
            continue

        try:
            with handle:
                handle.write(serialized)
        except OSError as e:
            logger.error(f"Failed to write model {model_path}: {e}")
            _discard_partial_model(model_path)
            raise WriteModelFailed(model_path, str(e)) from e

        logger.info(
            f"Saved model {model_path}: "
            f"{[len(layer) for layer in node_array]}, {activation}"
        )
        return model_path

    raise WriteModelFailed(
        model_path,
        f"no free file name after {MAX_NAME_ATTEMPTS} attempts"
    )


def read_model(
    model_path: str
) -> Tuple[List[List[Node]], ActivationFunction]:
    """
    Load a ``.darj`` file.

    Returns:
        tuple: (node_array, activation)

    Raises:
        ReadModelFailed: If the file could not be opened or decoded
        ModelFormatError: If its content is not a valid model
    """
    logger.info(f"Loading model {model_path}")
    try:
        with open(model_path, encoding='utf-8') as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ReadModelFailed(model_path, str(e)) from e

    return deserialize_network(text, model_path)
