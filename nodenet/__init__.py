"""
nodenet package
~~~~~~~~~~~~~~~

Feedforward neural network engine for categorical classification.
Contains the node-level network implementation, the ``.darj`` model
store, the SQLite model registry, and the API server.
"""

__version__ = "1.0.0"
