"""Tests for online adapter training with EWC++ (lorapersona/service/training.py)."""

import numpy as np
import pytest

from lorapersona.config import LoRAConfig
from lorapersona.service import kernels
from lorapersona.service.engine import LoRAPersonalizationEngine
from lorapersona.service.errors import DimensionMismatchError
from lorapersona.service.feedback import create_adapter_feedback
from lorapersona.storage.models import AdapterFeedback


def _feedback(embedding, reward=1.0, target=None):
    return AdapterFeedback(content_embedding=embedding, reward=reward, target_embedding=target)


def _snapshot(adapter):
    return {
        "version": adapter.version,
        "matrix_a": adapter.matrix_a.copy(),
        "matrix_b": adapter.matrix_b.copy(),
        "fisher": None if adapter.fisher_information is None else adapter.fisher_information.copy(),
        "metadata": adapter.metadata,
        "updated_at": adapter.updated_at,
    }


def test_empty_feedback_is_noop(engine):
    adapter = engine.create_adapter("u1")
    assert engine.update_adapter(adapter, []) is adapter


def test_update_increments_version_and_leaves_input_untouched(engine, rng):
    adapter = engine.create_adapter("u1")
    before = _snapshot(adapter)
    batch = [_feedback(rng.standard_normal(64), reward=0.3) for _ in range(3)]

    updated = engine.update_adapter(adapter, batch)

    assert updated is not adapter
    assert updated.version == adapter.version + 1
    assert adapter.version == before["version"]
    np.testing.assert_array_equal(adapter.matrix_a, before["matrix_a"])
    np.testing.assert_array_equal(adapter.matrix_b, before["matrix_b"])
    assert adapter.fisher_information is None
    assert adapter.metadata is before["metadata"]
    assert adapter.updated_at == before["updated_at"]


def test_published_matrices_are_read_only(engine):
    adapter = engine.create_adapter("u1")
    with pytest.raises(ValueError):
        adapter.matrix_a[0] = 1.0


def test_adapter_owns_a_copy_of_caller_arrays(engine):
    source = np.zeros(256, dtype=np.float32)
    source.setflags(write=False)
    adapter = engine.create_adapter("u1").with_changes(matrix_b=source)

    source.setflags(write=True)
    source[0] = 5.0

    assert adapter.matrix_b is not source
    assert adapter.matrix_b[0] == 0.0
    assert adapter.matrix_b.flags.owndata
    assert not adapter.matrix_b.flags.writeable


def test_single_feedback_scenario(engine):
    adapter = engine.create_adapter("u1")
    content = np.full(64, 0.5, dtype=np.float32)
    before = engine.forward(content, adapter)

    updated = engine.update_adapter(adapter, [_feedback(content, reward=1.0)])

    assert updated.version == 2
    assert updated.metadata.total_samples == 1
    after = engine.forward(content, updated)
    assert after.shape == (64,)
    assert np.all(np.isfinite(after))
    # The implicit target equals the current output, so the gradient is zero
    np.testing.assert_array_equal(after, before)
    assert updated.metadata.avg_loss == 0.0


def test_partial_reward_moves_output_toward_target(engine, watch_event):
    adapter = engine.create_adapter("u1")
    content = np.full(64, 0.5, dtype=np.float32)
    before = engine.forward(content, adapter)
    feedback = create_adapter_feedback(watch_event, content)
    assert feedback.reward == pytest.approx(0.64)

    updated = engine.update_adapter(adapter, [feedback])

    after = engine.forward(content, updated)
    assert updated.version == 2
    assert np.all(np.isfinite(after))
    assert not np.array_equal(after, before)
    assert np.count_nonzero(updated.matrix_b) > 0
    target = content * feedback.reward
    assert np.linalg.norm(after - target) < np.linalg.norm(before - target)


def test_repeated_training_reduces_loss(rng):
    config = LoRAConfig(rank=4, embedding_dim=16, learning_rate=0.05, use_ewc=False, seed=3)
    engine = LoRAPersonalizationEngine(config)
    adapter = engine.create_adapter("u1")
    content = rng.standard_normal(16).astype(np.float32)
    target = rng.standard_normal(16).astype(np.float32)

    def loss(a):
        return kernels.mean_squared(engine.forward(content, a) - target)

    initial = loss(adapter)
    for _ in range(50):
        adapter = engine.update_adapter(adapter, [_feedback(content, target=target)])
    assert loss(adapter) < initial
    assert adapter.version == 51
    assert adapter.metadata.total_samples == 50


def test_gradients_match_manual_backprop(rng):
    config = LoRAConfig(rank=2, embedding_dim=6, learning_rate=0.1, use_ewc=False, gradient_clip_threshold=1e6)
    engine = LoRAPersonalizationEngine(config)
    adapter = engine.create_adapter("u1").with_changes(
        matrix_b=rng.standard_normal(12).astype(np.float32) * 0.1
    )
    content = rng.standard_normal(6).astype(np.float32)
    target = rng.standard_normal(6).astype(np.float32)

    updated = engine.update_adapter(adapter, [_feedback(content, target=target)])

    a = adapter.matrix_a.reshape(2, 6).astype(np.float64)
    b = adapter.matrix_b.reshape(6, 2).astype(np.float64)
    x = content.astype(np.float64)
    s = adapter.scaling_factor / adapter.rank
    error = x + s * (b @ (a @ x)) - target
    scaled_error = error / s
    grad_b = np.outer(scaled_error, a @ x)
    grad_a = np.outer(b.T @ scaled_error, x)
    np.testing.assert_allclose(updated.matrix_a, (a - 0.1 * grad_a).reshape(-1), rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(updated.matrix_b, (b - 0.1 * grad_b).reshape(-1), rtol=1e-4, atol=1e-5)
    assert updated.fisher_information is None


def test_gradients_are_clipped():
    config = LoRAConfig(rank=2, embedding_dim=8, learning_rate=1.0, use_ewc=False, gradient_clip_threshold=0.5)
    engine = LoRAPersonalizationEngine(config)
    adapter = engine.create_adapter("u1").with_changes(matrix_b=np.ones(16, dtype=np.float32))
    content = np.full(8, 10.0, dtype=np.float32)

    updated = engine.update_adapter(adapter, [_feedback(content, reward=0.0)])

    # With lr=1 the parameter step equals the clipped gradient
    step_a = kernels.l2_norm(adapter.matrix_a - updated.matrix_a)
    step_b = kernels.l2_norm(adapter.matrix_b - updated.matrix_b)
    assert step_a == pytest.approx(0.5, rel=1e-3)
    assert step_b == pytest.approx(0.5, rel=1e-3)


def test_gradients_averaged_over_batch(engine, rng):
    adapter = engine.create_adapter("u1").with_changes(
        matrix_b=rng.standard_normal(256).astype(np.float32) * 0.01
    )
    content = rng.standard_normal(64).astype(np.float32) * 0.01
    single = engine.update_adapter(adapter, [_feedback(content, reward=0.5)])
    doubled = engine.update_adapter(adapter, [_feedback(content, reward=0.5)] * 2)
    np.testing.assert_allclose(single.matrix_a, doubled.matrix_a, rtol=1e-5, atol=1e-7)
    np.testing.assert_allclose(single.matrix_b, doubled.matrix_b, rtol=1e-5, atol=1e-7)
    assert doubled.metadata.total_samples == 2


def test_metadata_ema(engine, rng):
    adapter = engine.create_adapter("u1")
    content = rng.standard_normal(64).astype(np.float32)

    updated = engine.update_adapter(adapter, [_feedback(content, reward=0.0)])

    batch_loss = kernels.mean_squared(content)
    assert updated.metadata.avg_loss == pytest.approx(0.1 * batch_loss, rel=1e-5)
    assert updated.metadata.learning_rate == engine.config.learning_rate
    assert updated.metadata.last_trained_at == updated.updated_at
    assert updated.updated_at >= adapter.updated_at
    assert updated.created_at == adapter.created_at


def test_target_dimension_mismatch(engine):
    adapter = engine.create_adapter("u1")
    with pytest.raises(DimensionMismatchError):
        engine.update_adapter(adapter, [_feedback(np.ones(64), target=np.ones(32))])


def test_content_dimension_mismatch(engine):
    adapter = engine.create_adapter("u1")
    with pytest.raises(DimensionMismatchError):
        engine.update_adapter(adapter, [_feedback(np.ones(65))])


class TestEWC:
    """Fisher tracking and the EWC++ penalty."""

    def test_first_update_uses_fresh_fisher(self, engine, rng):
        adapter = engine.create_adapter("u1").with_changes(
            matrix_b=rng.standard_normal(256).astype(np.float32) * 0.1
        )
        assert adapter.fisher_information is None
        content = rng.standard_normal(64).astype(np.float32)

        updated = engine.update_adapter(adapter, [_feedback(content, reward=0.2)])

        fisher = updated.fisher_information
        assert fisher is not None
        assert fisher.size == adapter.matrix_a.size + adapter.matrix_b.size
        assert np.all(fisher >= 0)
        assert np.any(fisher > 0)

    def test_fisher_blends_with_previous(self, rng):
        config = LoRAConfig(rank=2, embedding_dim=8, ewc_lambda=0.0, gradient_clip_threshold=1e6, seed=11)
        engine = LoRAPersonalizationEngine(config)
        adapter = engine.create_adapter("u1").with_changes(
            matrix_b=rng.standard_normal(16).astype(np.float32)
        )
        content = rng.standard_normal(8).astype(np.float32)
        first = engine.update_adapter(adapter, [_feedback(content, reward=0.0)])
        stale = first.with_changes(fisher_information=np.full(32, 2.0, dtype=np.float32))

        # Fresh estimate computed against `first`'s weights, which `stale` shares
        no_history = engine.update_adapter(
            first.with_changes(fisher_information=None), [_feedback(content, reward=0.0)]
        )
        blended = engine.update_adapter(stale, [_feedback(content, reward=0.0)])

        np.testing.assert_allclose(
            blended.fisher_information,
            0.9 * 2.0 + 0.1 * no_history.fisher_information,
            rtol=1e-5,
        )

    def test_penalty_pulls_important_weights(self, rng):
        base = LoRAConfig(rank=2, embedding_dim=8, learning_rate=0.1, gradient_clip_threshold=1e6, seed=5)
        plain = LoRAPersonalizationEngine(base.model_copy(update={"use_ewc": False}))
        ewc = LoRAPersonalizationEngine(base.model_copy(update={"ewc_lambda": 1.0}))
        adapter = plain.create_adapter("u1").with_changes(
            matrix_b=rng.standard_normal(16).astype(np.float32),
            fisher_information=np.ones(32, dtype=np.float32),
        )
        content = rng.standard_normal(8).astype(np.float32)
        feedback = [_feedback(content, reward=1.0)]

        without = plain.update_adapter(adapter, feedback)
        with_penalty = ewc.update_adapter(adapter, feedback)

        # The penalty adds lambda * fisher * weight to each gradient entry
        np.testing.assert_allclose(
            with_penalty.matrix_a,
            without.matrix_a - 0.1 * adapter.matrix_a,
            rtol=1e-4,
            atol=1e-6,
        )
        np.testing.assert_allclose(
            with_penalty.matrix_b,
            without.matrix_b - 0.1 * adapter.matrix_b,
            rtol=1e-4,
            atol=1e-6,
        )
        assert without.fisher_information is None

    def test_disabled_ewc_drops_fisher(self, rng):
        engine = LoRAPersonalizationEngine(LoRAConfig(use_ewc=False))
        adapter = engine.create_adapter("u1").with_changes(fisher_information=np.ones(512, dtype=np.float32))
        updated = engine.update_adapter(adapter, [_feedback(rng.standard_normal(64), reward=0.5)])
        assert updated.fisher_information is None
