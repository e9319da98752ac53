import math

import pytest

from rbmtrain.rbm import AdaptiveController, GradientStats, StopReason
from rbmtrain.rbm.controller import MAX_LEARNING_RATE, MIN_LEARNING_RATE, adjust_learning_rate, clamp_learning_rate


def make_controller(**kwargs) -> AdaptiveController:
    settings = dict(n_weights=100, learning_rate=0.1, start_momentum=0.5, end_momentum=0.9, n_chain_start=1,
                    n_chain_end=1, n_chain_rate=0.5, convergence_crit=1e-3, max_no_imp=100)
    settings.update(kwargs)
    return AdaptiveController(**settings)


class TestLearningRateRule:
    @pytest.mark.parametrize("dot, factor", [(0.9, 1.2), (0.51, 1.2), (0.5, 1.1), (0.31, 1.1), (0.3, 1.0), (0.0, 1.0),
                                             (-0.3, 1.0), (-0.31, 1 / 1.1), (-0.5, 1 / 1.1), (-0.51, 1 / 1.2),
                                             (-1.0, 1 / 1.2)])
    def test_rate_table(self, dot, factor):
        assert adjust_learning_rate(0.1, dot) == pytest.approx(0.1 * factor)

    def test_upper_clamp(self):
        assert adjust_learning_rate(0.95, 1.0) == MAX_LEARNING_RATE

    def test_lower_clamp(self):
        assert adjust_learning_rate(0.0011, -1.0) == MIN_LEARNING_RATE

    def test_starting_rate_clamped(self):
        assert clamp_learning_rate(5.0) == MAX_LEARNING_RATE
        assert make_controller(learning_rate=1e-6).learning_rate == MIN_LEARNING_RATE


class TestBatchUpdate:
    """Tests for the per-batch learning rate and momentum adaptation."""

    def test_first_batch_only_records_length(self):
        controller = make_controller()
        assert controller.batch_update(GradientStats(length=4.0, dot=4.0)) is None
        assert controller.learning_rate == pytest.approx(0.1)
        assert controller.momentum == pytest.approx(0.5)
        assert controller.len_prev == 4.0
        assert controller.smoothed_len == pytest.approx(math.sqrt(4.0 / 100))

    def test_dot_normalized_by_both_lengths(self):
        controller = make_controller()
        controller.batch_update(GradientStats(length=4.0, dot=0.))
        dot = controller.batch_update(GradientStats(length=9.0, dot=3.0))
        assert dot == pytest.approx(3.0 / 6.0)
        assert controller.len_prev == 9.0

    def test_agreeing_gradients_raise_rate_and_damp_momentum(self):
        controller = make_controller()
        controller.batch_update(GradientStats(length=1.0, dot=0.))
        controller.batch_update(GradientStats(length=1.0, dot=0.9))
        assert controller.learning_rate == pytest.approx(0.12)
        assert controller.momentum == pytest.approx(0.5 / 1.5)
        assert controller.smoothed_dot == pytest.approx(0.09)

    def test_opposing_gradients_lower_rate_and_damp_momentum(self):
        controller = make_controller()
        controller.batch_update(GradientStats(length=1.0, dot=0.))
        controller.batch_update(GradientStats(length=1.0, dot=-0.4))
        assert controller.learning_rate == pytest.approx(0.1 / 1.1)
        assert controller.momentum == pytest.approx(0.5 / 1.5)

    def test_small_dot_leaves_everything(self):
        controller = make_controller()
        controller.batch_update(GradientStats(length=1.0, dot=0.))
        controller.batch_update(GradientStats(length=1.0, dot=0.2))
        assert controller.learning_rate == pytest.approx(0.1)
        assert controller.momentum == pytest.approx(0.5)

    def test_zero_length_gradient(self):
        controller = make_controller()
        controller.batch_update(GradientStats(length=0., dot=0.))
        assert controller.batch_update(GradientStats(length=0., dot=0.)) == 0.
        assert controller.learning_rate == pytest.approx(0.1)

    def test_rate_stays_in_bounds(self):
        controller = make_controller()
        controller.batch_update(GradientStats(length=1.0, dot=0.))
        for _ in range(100):
            controller.batch_update(GradientStats(length=1.0, dot=1.0))
            assert MIN_LEARNING_RATE <= controller.learning_rate <= MAX_LEARNING_RATE
        assert controller.learning_rate == MAX_LEARNING_RATE
        for _ in range(100):
            controller.batch_update(GradientStats(length=1.0, dot=-1.0))
            assert MIN_LEARNING_RATE <= controller.learning_rate <= MAX_LEARNING_RATE
        assert controller.learning_rate == MIN_LEARNING_RATE


class TestEpochUpdate:
    """Tests for the per-epoch convergence tests and schedules."""

    def test_converged(self):
        controller = make_controller(convergence_crit=0.01)
        assert controller.epoch_update(max_increment=0.001, max_weight=1.0) is StopReason.CONVERGED
        assert controller.last_ratio == pytest.approx(0.001)
        # nothing else moves when stopping
        assert controller.momentum == pytest.approx(0.5)

    def test_ratio_at_criterion_is_not_converged(self):
        controller = make_controller(convergence_crit=0.5)
        assert controller.epoch_update(max_increment=1.0, max_weight=2.0) is None

    def test_zero_weights_never_converge(self):
        controller = make_controller()
        assert controller.epoch_update(max_increment=0., max_weight=0.) is None
        assert controller.last_ratio == math.inf

    def test_first_epoch_with_zero_weights_is_an_improvement(self):
        controller = make_controller(max_no_imp=0)
        assert controller.epoch_update(max_increment=0., max_weight=0.) is None
        assert controller.n_no_improvement == 0
        assert controller.best_crit == math.inf
        # nothing beats inf, so the next epoch stalls right away
        assert controller.epoch_update(max_increment=0.5, max_weight=0.) is StopReason.STALLED

    def test_stalled_after_patience_exceeded(self):
        controller = make_controller(max_no_imp=3)
        assert controller.epoch_update(0.5, 1.0) is None
        for _ in range(3):
            assert controller.epoch_update(0.5, 1.0) is None
        assert controller.epoch_update(0.5, 1.0) is StopReason.STALLED
        assert controller.n_no_improvement == 4
        assert controller.best_crit == pytest.approx(0.5)

    def test_convergence_checked_before_stall(self):
        controller = make_controller(max_no_imp=0, convergence_crit=0.1)
        controller.epoch_update(0.5, 1.0)
        assert controller.epoch_update(0.01, 1.0) is StopReason.CONVERGED

    def test_momentum_drifts_toward_end(self):
        controller = make_controller(start_momentum=0.5, end_momentum=0.9)
        controller.epoch_update(0.5, 1.0)
        assert controller.momentum == pytest.approx(0.99 * 0.5 + 0.01 * 0.9)

    def test_chain_length_annealing(self):
        controller = make_controller(n_chain_start=3, n_chain_end=1, n_chain_rate=0.5)
        lengths = []
        for ratio in [0.9, 0.8, 0.7]:
            lengths.append(controller.chain_length)
            controller.epoch_update(ratio, 1.0)
        lengths.append(controller.chain_length)
        assert lengths == pytest.approx([3.0, 2.0, 1.5, 1.25])

    @pytest.mark.parametrize("chain_length, n_chain", [(1.0, 1), (1.49, 1), (1.5, 2), (2.4, 2), (2.6, 3)])
    def test_n_chain_rounds(self, chain_length, n_chain):
        controller = make_controller()
        controller.chain_length = chain_length
        assert controller.n_chain == n_chain

    def test_smoothed_ratio(self):
        controller = make_controller()
        controller.epoch_update(0.5, 1.0)
        assert controller.smoothed_ratio == pytest.approx(0.5)
        controller.epoch_update(0.3, 1.0)
        assert controller.smoothed_ratio == pytest.approx(0.9 * 0.5 + 0.1 * 0.3)

    def test_learning_rate_ratchet(self):
        controller = make_controller(learning_rate=0.5, max_no_imp=1000)
        controller.epoch_update(0.5, 1.0)
        for _ in range(50):
            controller.epoch_update(0.5, 1.0)
        assert controller.n_no_improvement == 50
        assert controller.learning_rate == pytest.approx(0.5)
        controller.epoch_update(0.5, 1.0)
        assert controller.n_no_improvement == 51
        assert controller.learning_rate == pytest.approx(0.03)
        for _ in range(50):
            controller.epoch_update(0.5, 1.0)
        assert controller.learning_rate == pytest.approx(0.02)

    def test_ratchet_never_raises_rate(self):
        controller = make_controller(learning_rate=0.001, max_no_imp=1000)
        for _ in range(300):
            controller.epoch_update(0.5, 1.0)
        assert controller.learning_rate == pytest.approx(0.001)

    def test_improvement_resets_ratchet_count(self):
        controller = make_controller(learning_rate=0.5, max_no_imp=1000)
        controller.epoch_update(0.5, 1.0)
        for _ in range(40):
            controller.epoch_update(0.5, 1.0)
        controller.epoch_update(0.4, 1.0)
        assert controller.n_no_improvement == 0
        for _ in range(20):
            controller.epoch_update(0.5, 1.0)
        assert controller.learning_rate == pytest.approx(0.5)
