"""Tests for the ring-artifact offset vector."""

import unittest
import torch

from astra_fista.rings import RingTracker, soft_threshold


class TestSoftThreshold(unittest.TestCase):

    def test_shrinks_towards_zero(self):
        x = torch.tensor([-3.0, -1.0, 0.0, 0.5, 2.5])
        out = soft_threshold(x, 1.0)
        torch.testing.assert_close(out, torch.tensor([-2.0, 0.0, 0.0, 0.0, 1.5]))

    def test_never_grows_magnitude(self):
        x = torch.randn(100, generator=torch.Generator().manual_seed(0)) * 5
        out = soft_threshold(x, 2.0)
        self.assertTrue(bool((out.abs() <= torch.clamp(x.abs() - 2.0, min=0.0) + 1e-6).all()))
        self.assertTrue(bool((out * x >= 0).all()))


class TestRingTracker(unittest.TestCase):

    def test_inactive_tracker_is_inert(self):
        ring = RingTracker((2, 4), lambda_r=0.0)
        self.assertFalse(ring.active)
        ring.gradient_step(torch.ones((2, 4)), 1.0)
        ring.shrink()
        ring.extrapolate(1.0, 1.618)
        self.assertTrue(torch.equal(ring.r, torch.zeros((2, 4))))
        self.assertTrue(torch.equal(ring.offset(), torch.zeros((2, 4))))

    def test_gradient_step_then_shrink(self):
        ring = RingTracker((1, 3), lambda_r=2.0)
        ring.gradient_step(torch.tensor([[-5.0, 1.0, 3.0]]), 1.0)
        ring.shrink()
        torch.testing.assert_close(ring.r, torch.tensor([[3.0, 0.0, -1.0]]))

    def test_extrapolation(self):
        ring = RingTracker((1, 2), lambda_r=0.5, alpha=2.0)
        ring.gradient_step(torch.tensor([[-2.0, 0.0]]), 1.0)
        ring.shrink()
        ring.extrapolate(2.0, 4.0)
        # r = [1.5, 0], r_old = 0 -> r_x = r + (1 / 4) * r
        torch.testing.assert_close(ring.r_x, torch.tensor([[1.875, 0.0]]))
        torch.testing.assert_close(ring.offset(), torch.tensor([[3.75, 0.0]]))

    def test_hold_gives_zero_extrapolation(self):
        ring = RingTracker((1, 2), lambda_r=0.5)
        ring.gradient_step(torch.tensor([[-2.0, 0.0]]), 1.0)
        ring.hold()
        ring.shrink()
        ring.extrapolate(3.0, 4.0)
        torch.testing.assert_close(ring.r_x, ring.r + 0.5 * (ring.r - torch.tensor([[2.0, 0.0]])))


if __name__ == '__main__':
    unittest.main()
