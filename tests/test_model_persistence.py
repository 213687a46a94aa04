"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for the SQLite model registry.
"""

import pytest
import os
import sqlite3

from nodenet.inputs import Input
from nodenet.network import NeuralNetwork
from nodenet.model_persistence import (
    register_model,
    load_registered_model,
    list_saved_models,
    delete_model,
    get_model_metadata,
    delete_old_models,
    model_id_for,
    ModelDatabase,
    DB_FILENAME
)


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database and model storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def simple_network():
    """Create a simple 3-4-2 network for testing."""
    return NeuralNetwork(3, 4, 2, 1, seed=0)


@pytest.fixture
def saved_model(simple_network, temp_db_dir):
    """Write the simple network to a model file and return its path."""
    return simple_network.write_model("registry", temp_db_dir)


def age_model(temp_db_dir, model_id, modifier):
    """Move a model's created_at into the past."""
    conn = sqlite3.connect(os.path.join(temp_db_dir, DB_FILENAME))
    cursor = conn.cursor()
    cursor.execute('''
        UPDATE models
        SET created_at = datetime('now', ?)
        WHERE model_id = ?
    ''', (modifier, model_id))
    conn.commit()
    conn.close()


@pytest.mark.unit
class TestModelRegistry:
    """Test basic registry operations."""

    def test_register_creates_database(self, simple_network, saved_model,
                                       temp_db_dir):
        """Test that registering a model creates the database file."""
        model_id = register_model(
            saved_model, simple_network, ['a', 'b'], model_dir=temp_db_dir)

        assert model_id == model_id_for(saved_model)
        assert os.path.exists(os.path.join(temp_db_dir, DB_FILENAME))

    def test_register_with_metadata(self, simple_network, saved_model,
                                    temp_db_dir):
        """Test that model metadata is saved correctly."""
        model_id = register_model(
            saved_model, simple_network, [0, 1.5],
            accuracy=85.0, mse=0.125, model_dir=temp_db_dir)

        metadata = get_model_metadata(model_id, temp_db_dir)
        assert metadata is not None
        assert metadata['model_id'] == model_id
        assert metadata['model_path'] == saved_model
        assert metadata['architecture'] == [3, 4, 2]
        assert metadata['activation'] == 'sigmoid'
        assert metadata['categories'] == [0, 1.5]
        assert metadata['accuracy'] == 85.0
        assert metadata['mse'] == 0.125

    def test_category_types_survive(self, simple_network, saved_model,
                                    temp_db_dir):
        """Test that bool, int, float and str labels keep their types."""
        net = NeuralNetwork(2, 2, 4, 1)
        path = net.write_model("types", temp_db_dir)
        model_id = register_model(path, net, [True, 1, 1.0, '1'],
                                  model_dir=temp_db_dir)

        categories = get_model_metadata(model_id, temp_db_dir)['categories']
        assert [type(c) for c in categories] == [bool, int, float, str]

    def test_load_registered_model(self, simple_network, saved_model,
                                   temp_db_dir):
        """Test that loading binds the recorded categories and weights."""
        model_id = register_model(
            saved_model, simple_network, ['a', 'b'], model_dir=temp_db_dir)

        net, categories = load_registered_model(model_id, temp_db_dir)

        assert categories == ['a', 'b']
        assert net.categories == ['a', 'b']
        for original, loaded in zip(simple_network.node_array, net.node_array):
            for node_a, node_b in zip(original, loaded):
                assert node_a.link_weights == node_b.link_weights
                assert node_a.b_weight == node_b.b_weight

    def test_load_nonexistent_model(self, temp_db_dir):
        """Test that loading an unknown model returns None."""
        assert load_registered_model("nonexistent", temp_db_dir) is None

    def test_register_rejects_wrong_category_count(self, simple_network,
                                                   saved_model, temp_db_dir):
        """Test that the categories must match the answer layer."""
        model_id = register_model(
            saved_model, simple_network, ['a'], model_dir=temp_db_dir)
        assert model_id is None

    def test_register_rejects_bad_accuracy(self, simple_network, saved_model,
                                           temp_db_dir):
        """Test that accuracy is a percentage."""
        model_id = register_model(
            saved_model, simple_network, ['a', 'b'], accuracy=120.0,
            model_dir=temp_db_dir)
        assert model_id is None

    def test_invalid_ids(self, temp_db_dir):
        """Test that empty identifiers are refused."""
        assert get_model_metadata("", temp_db_dir) is None
        assert delete_model("", temp_db_dir) is False

    def test_list_saved_models_empty(self, temp_db_dir):
        """Test listing models when the database is empty."""
        assert list_saved_models(temp_db_dir) == []

    def test_list_saved_models(self, simple_network, temp_db_dir):
        """Test that listing returns every registered model."""
        first = simple_network.write_model("one", temp_db_dir)
        second = simple_network.write_model("two", temp_db_dir)
        register_model(first, simple_network, [0, 1], model_dir=temp_db_dir)
        register_model(second, simple_network, [0, 1], model_dir=temp_db_dir)

        models = list_saved_models(temp_db_dir)

        assert len(models) == 2
        assert {m['model_id'] for m in models} == {
            model_id_for(first), model_id_for(second)}
        assert all('created_at' in m and 'updated_at' in m for m in models)

    def test_update_model(self, simple_network, saved_model, temp_db_dir):
        """Test that registering the same file again updates it."""
        register_model(saved_model, simple_network, [0, 1],
                       model_dir=temp_db_dir)
        register_model(saved_model, simple_network, [0, 1], accuracy=88.0,
                       model_dir=temp_db_dir)

        models = list_saved_models(temp_db_dir)
        assert len(models) == 1
        assert models[0]['accuracy'] == 88.0

    def test_delete_model_removes_file(self, simple_network, saved_model,
                                       temp_db_dir):
        """Test that deleting a model removes its row and its file."""
        model_id = register_model(
            saved_model, simple_network, [0, 1], model_dir=temp_db_dir)

        assert delete_model(model_id, temp_db_dir) is True
        assert get_model_metadata(model_id, temp_db_dir) is None
        assert not os.path.exists(saved_model)

    def test_delete_nonexistent_model(self, temp_db_dir):
        """Test that deleting an unknown model returns False."""
        ModelDatabase(db_path=os.path.join(temp_db_dir, DB_FILENAME))
        assert delete_model("nonexistent", temp_db_dir) is False


@pytest.mark.integration
class TestRegistryIntegration:
    """Integration tests for training, registering and reloading."""

    def test_train_register_test_cycle(self, temp_db_dir):
        """Test complete cycle: train, register, load, evaluate."""
        data = [
            Input([1.0, 0.0], 'left'),
            Input([0.0, 1.0], 'right'),
        ]
        net = NeuralNetwork(2, 3, 2, 1, seed=2)
        model_path, accuracy, mse = net.learn(
            data, ['left', 'right'], 0.5, "cycle", 0.0,
            model_dir=temp_db_dir)

        model_id = register_model(model_path, net, ['left', 'right'],
                                  accuracy, mse, model_dir=temp_db_dir)
        loaded, categories = load_registered_model(model_id, temp_db_dir)

        assert categories == ['left', 'right']
        assert loaded.evaluate(data).predictions == net.evaluate(data).predictions


class TestDeleteOldModels:
    """Tests for automatic cleanup of old models."""

    def test_delete_old_models_basic(self, simple_network, saved_model,
                                     temp_db_dir):
        """Test that models older than the threshold are deleted."""
        model_id = register_model(
            saved_model, simple_network, [0, 1], model_dir=temp_db_dir)
        age_model(temp_db_dir, model_id, '-3 days')

        deleted_count = delete_old_models(days=2, model_dir=temp_db_dir)

        assert deleted_count == 1
        assert get_model_metadata(model_id, temp_db_dir) is None
        assert not os.path.exists(saved_model)

    def test_delete_old_models_preserves_recent(self, simple_network,
                                                saved_model, temp_db_dir):
        """Test that recent models are not deleted."""
        model_id = register_model(
            saved_model, simple_network, [0, 1], model_dir=temp_db_dir)

        assert delete_old_models(days=2, model_dir=temp_db_dir) == 0
        assert get_model_metadata(model_id, temp_db_dir) is not None

    def test_delete_old_models_mixed_ages(self, simple_network, temp_db_dir):
        """Test with a mix of old and recent models."""
        paths = [simple_network.write_model(f"m{i}", temp_db_dir)
                 for i in range(4)]
        ids = [register_model(p, simple_network, [0, 1], model_dir=temp_db_dir)
               for p in paths]
        old_ids, recent_ids = ids[:2], ids[2:]
        for model_id in old_ids:
            age_model(temp_db_dir, model_id, '-3 days')

        deleted_count = delete_old_models(days=2, model_dir=temp_db_dir)

        assert deleted_count == len(old_ids)
        for model_id in old_ids:
            assert get_model_metadata(model_id, temp_db_dir) is None
        for model_id in recent_ids:
            assert get_model_metadata(model_id, temp_db_dir) is not None

    def test_delete_old_models_missing_file(self, simple_network, saved_model,
                                            temp_db_dir):
        """Test that a row is removed even when its file is already gone."""
        model_id = register_model(
            saved_model, simple_network, [0, 1], model_dir=temp_db_dir)
        os.remove(saved_model)
        age_model(temp_db_dir, model_id, '-5 days')

        assert delete_old_models(days=1, model_dir=temp_db_dir) == 1

    def test_delete_old_models_empty_db(self, temp_db_dir):
        """Test delete_old_models on an empty database."""
        assert delete_old_models(days=2, model_dir=temp_db_dir) == 0

    def test_delete_old_models_negative_days(self, temp_db_dir):
        """Test that negative days raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            delete_old_models(days=-1, model_dir=temp_db_dir)
        assert "non-negative" in str(exc_info.value)

    def test_delete_old_models_zero_days(self, simple_network, saved_model,
                                         temp_db_dir):
        """Test delete_old_models with days=0."""
        model_id = register_model(
            saved_model, simple_network, [0, 1], model_dir=temp_db_dir)
        age_model(temp_db_dir, model_id, '-1 hour')

        assert delete_old_models(days=0, model_dir=temp_db_dir) == 1
