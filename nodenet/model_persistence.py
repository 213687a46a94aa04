"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite registry of trained models.

A ``.darj`` file holds only weights and the activation function. The
registry remembers, for each saved model, where its file lives, the
categories it was trained with and how well it scored, so that it can
be listed and tested later without the caller re-supplying them.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator, Sequence, Tuple
from contextlib import contextmanager

from nodenet.errors import ModelStoreError
from nodenet.inputs import Category
from nodenet.network import NeuralNetwork

# Configure module logger
logger = logging.getLogger(__name__)

DB_FILENAME = 'models.db'


class ModelDatabase:
    """
    Manages the SQLite database that indexes saved models.

    The database stores:
    - Model metadata (architecture, activation, accuracy, MSE)
    - The category bound to each answer node, as JSON
    - The path of the ``.darj`` file holding the weights
    """

    def __init__(self, db_path: str = f'models/{DB_FILENAME}'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS models (
                    model_id TEXT PRIMARY KEY,
                    model_path TEXT NOT NULL,
                    architecture TEXT NOT NULL,
                    activation TEXT NOT NULL,
                    categories TEXT NOT NULL,
                    accuracy REAL,
                    mse REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON models(created_at DESC)
            ''')

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'model_id': row['model_id'],
            'model_path': row['model_path'],
            'architecture': json.loads(row['architecture']),
            'activation': row['activation'],
            'categories': json.loads(row['categories']),
            'accuracy': row['accuracy'],
            'mse': row['mse'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_model_to_db(
        self,
        model_id: str,
        model_path: str,
        network: NeuralNetwork,
        categories: Sequence[Category],
        accuracy: Optional[float] = None,
        mse: Optional[float] = None
    ) -> bool:
        """
        Record a saved model.

        Args:
            model_id: Unique identifier of the model
            model_path: Path of its ``.darj`` file
            network: The trained network (for architecture and activation)
            categories: Categories in answer-node order
            accuracy: Training accuracy in percent (0.0 to 100.0)
            mse: Mean squared error of the final epoch

        Returns:
            bool: True if successful

        Raises:
            ValueError: If accuracy is out of valid range or the number of
                categories does not match the answer layer
        """
        if accuracy is not None and not 0.0 <= accuracy <= 100.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 100.0, got {accuracy}"
            )
        if len(categories) != network.architecture[-1]:
            raise ValueError(
                f"Expected {network.architecture[-1]} categories, "
                f"got {len(categories)}"
            )

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO models
                (model_id, model_path, architecture, activation,
                 categories, accuracy, mse, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ''', (
                model_id,
                model_path,
                json.dumps(network.architecture),
                str(network.activation_function),
                json.dumps(list(categories)),
                accuracy,
                mse
            ))

        logger.info(
            f"Registered model '{model_id}' at {model_path} with "
            f"architecture {network.architecture}, accuracy={accuracy}"
        )
        return True

    def get_model_metadata_from_db(
        self,
        model_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get the metadata of one model.

        Args:
            model_id: Unique identifier of the model

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT * FROM models WHERE model_id = ?',
                (model_id,)
            )
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Model '{model_id}' not found")
                return None

            return self._row_to_metadata(row)

    def list_models_from_db(self) -> List[Dict[str, Any]]:
        """
        List all models with metadata, newest first.

        Returns:
            List of model metadata dictionaries
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM models ORDER BY created_at DESC')

            models = [self._row_to_metadata(row) for row in cursor.fetchall()]
            logger.debug(f"Listed {len(models)} models")
            return models

    def delete_model_from_db(self, model_id: str) -> bool:
        """
        Delete a model's row and its ``.darj`` file.

        Args:
            model_id: Unique identifier of the model

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT model_path FROM models WHERE model_id = ?',
                (model_id,)
            )
            row = cursor.fetchone()
            if row is None:
                logger.warning(
                    f"Could not delete model '{model_id}': not found"
                )
                return False

            cursor.execute(
                'DELETE FROM models WHERE model_id = ?',
                (model_id,)
            )

        _remove_model_file(row['model_path'])
        logger.info(f"Deleted model '{model_id}'")
        return True

    def delete_old_models_from_db(self, days: int) -> int:
        """
        Delete models registered more than `days` days ago.

        Args:
            days: Age threshold in days

        Returns:
            int: Number of models deleted

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT model_id, model_path FROM models
                WHERE julianday('now') - julianday(created_at) > ?
            ''', (days,))
            rows = cursor.fetchall()

            cursor.executemany(
                'DELETE FROM models WHERE model_id = ?',
                [(row['model_id'],) for row in rows]
            )

        for row in rows:
            _remove_model_file(row['model_path'])

        logger.info(f"Deleted {len(rows)} model(s) older than {days} day(s)")
        return len(rows)


def _remove_model_file(model_path: str) -> None:
    try:
        os.remove(model_path)
    except FileNotFoundError:
        logger.warning(f"Model file {model_path} was already gone")
    except OSError as e:
        logger.error(f"Could not remove model file {model_path}: {e}")


def _open_db(model_dir: str) -> ModelDatabase:
    return ModelDatabase(db_path=os.path.join(model_dir, DB_FILENAME))


def model_id_for(model_path: str) -> str:
    """The registry key of a model file: its name without extension."""
    return os.path.splitext(os.path.basename(model_path))[0]


def register_model(
    model_path: str,
    network: NeuralNetwork,
    categories: Sequence[Category],
    accuracy: Optional[float] = None,
    mse: Optional[float] = None,
    model_dir: str = 'models'
) -> Optional[str]:
    """
    Record a trained model in the registry.

    Args:
        model_path: Path returned by `NeuralNetwork.learn`
        network: The trained network
        categories: Categories in answer-node order
        accuracy: Training accuracy in percent
        mse: Mean squared error of the final epoch
        model_dir: Directory holding the registry database

    Returns:
        str: The model id, or None if the model could not be registered

    Example:
        >>> model_path, accuracy, mse = net.learn(data, [0, 1], 0.5, "xor", 100.0)
        >>> register_model(model_path, net, [0, 1], accuracy, mse)
        'model_xor_3141592653'
    """
    if not model_path or not isinstance(model_path, str):
        logger.error("Invalid model_path: must be a non-empty string")
        return None

    model_id = model_id_for(model_path)
    try:
        db = _open_db(model_dir)
        db.save_model_to_db(
            model_id, model_path, network, categories, accuracy, mse
        )
        return model_id

    except ValueError as e:
        logger.error(f"Validation error registering model '{model_id}': {e}")
        return None
    except TypeError as e:
        logger.error(
            f"Serialization error registering model '{model_id}': {e}"
        )
        return None
    except sqlite3.Error as e:
        logger.error(f"Database error registering model '{model_id}': {e}")
        return None


def get_model_metadata(
    model_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a specific model without loading its weights.

    Args:
        model_id: The unique identifier of the model
        model_dir: Directory where the database is stored

    Returns:
        dict: Model metadata or None if not found
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return None

    try:
        return _open_db(model_dir).get_model_metadata_from_db(model_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{model_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{model_id}': {e}"
        )
        return None


def load_registered_model(
    model_id: str,
    model_dir: str = 'models'
) -> Optional[Tuple[NeuralNetwork, List[Category]]]:
    """
    Read a registered model and bind its recorded categories.

    Args:
        model_id: The unique identifier of the model
        model_dir: Directory where the database is stored

    Returns:
        tuple: (network, categories) or None if not registered

    Raises:
        ModelStoreError: If the ``.darj`` file is missing or malformed
    """
    metadata = get_model_metadata(model_id, model_dir)
    if metadata is None:
        return None

    try:
        net = NeuralNetwork.read_model(metadata['model_path'])
    except ModelStoreError as e:
        logger.error(f"Registered model '{model_id}' could not be read: {e}")
        raise

    net.categorize(metadata['categories'])
    logger.info(f"Loaded model '{model_id}'")
    return net, metadata['categories']


def list_saved_models(
    model_dir: str = 'models'
) -> List[Dict[str, Any]]:
    """
    List all registered models with their metadata.

    Args:
        model_dir: Directory where the database is stored

    Returns:
        list: A list of metadata dictionaries for each model

    Example:
        >>> for model in list_saved_models():
        ...     print(f"{model['model_id']}: {model['architecture']}")
    """
    try:
        return _open_db(model_dir).list_models_from_db()

    except sqlite3.Error as e:
        logger.error(f"Database error listing models: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing models: {e}")
        return []


def delete_model(model_id: str, model_dir: str = 'models') -> bool:
    """
    Delete a registered model and its file.

    Args:
        model_id: The unique identifier of the model to delete
        model_dir: Directory where the database is stored

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not model_id or not isinstance(model_id, str):
        logger.error("Invalid model_id: must be a non-empty string")
        return False

    try:
        return _open_db(model_dir).delete_model_from_db(model_id)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting model '{model_id}': {e}")
        return False


def delete_old_models(days: int = 2, model_dir: str = 'models') -> int:
    """
    Delete models registered more than `days` days ago.

    Args:
        days: Age threshold in days
        model_dir: Directory where the database is stored

    Returns:
        int: Number of models deleted, or -1 on database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _open_db(model_dir).delete_old_models_from_db(days)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting old models: {e}")
        return -1
