import math

import pytest
import torch

from rbmtrain.rbm import RBM, BestSnapshot


class TestRBM:
    def test_shapes_and_no_grad(self):
        rbm = RBM(10, 5)
        assert rbm.w.shape == (5, 10)
        assert rbm.in_bias.shape == (10,)
        assert rbm.hid_bias.shape == (5,)
        assert not any(p.requires_grad for p in rbm.parameters())

    def test_from_tensors_checks_shapes(self):
        with pytest.raises(ValueError):
            RBM.from_tensors(torch.zeros(5, 10), torch.zeros(5), torch.zeros(5))

    def test_needs_units(self):
        with pytest.raises(ValueError):
            RBM(0, 3)

    def test_clone_shares_nothing(self, small_rbm):
        copy = small_rbm.clone()
        copy.w.add_(1.0)
        copy.hid_bias.add_(1.0)
        assert not torch.equal(copy.w, small_rbm.w)
        assert torch.all(small_rbm.hid_bias == 0)

    def test_conditional_probabilities(self, small_rbm):
        visible = torch.ones(3, 10, dtype=torch.float64)
        hidden_p = small_rbm.to_hidden_p(visible)
        assert hidden_p.shape == (3, 5)
        assert torch.allclose(hidden_p[0], torch.sigmoid(small_rbm.w.sum(dim=1)))
        visible_p = small_rbm.to_visible_p(hidden_p)
        assert visible_p.shape == (3, 10)
        assert torch.all((visible_p > 0) & (visible_p < 1))


class TestBestSnapshot:
    def test_empty(self):
        snapshot = BestSnapshot.empty()
        assert snapshot.is_empty
        assert snapshot.score == math.inf
        assert snapshot.improved_by(1e300)
        with pytest.raises(ValueError):
            snapshot.restore_into(RBM(2, 2))

    def test_improvement_is_strict(self, small_rbm):
        snapshot = BestSnapshot.capture(1.0, small_rbm)
        assert not snapshot.improved_by(1.0)
        assert snapshot.improved_by(0.999)

    def test_capture_is_not_aliased(self, small_rbm):
        snapshot = BestSnapshot.capture(1.0, small_rbm)
        original = small_rbm.w.clone()
        small_rbm.w.add_(5.0)
        assert torch.equal(snapshot.params.w, original)

    def test_restore_is_not_aliased(self, small_rbm):
        snapshot = BestSnapshot.capture(1.0, small_rbm)
        target = RBM(10, 5)
        snapshot.restore_into(target)
        assert torch.equal(target.w, small_rbm.w)
        target.w.add_(5.0)
        assert torch.equal(snapshot.params.w, small_rbm.w)
