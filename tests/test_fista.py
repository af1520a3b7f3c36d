"""Tests for the FISTA / OS-FISTA driver."""

import math
import unittest
import numpy as np
import torch

from astra_fista import (
    ConfigurationError,
    FISTAConfig,
    NumericalAnomaly,
    RegularisationSettings,
    VolumeGeometry,
    fista_reconstruction,
    momentum_sequence,
    next_momentum,
)
from astra_fista.fidelity import FidelityKind
from astra_fista.geometry import GeometryKind
from astra_fista.rings import soft_threshold

from doubles import NaNProjector, RecordingRegulariser, RowSelectProjector, ZeroProjector, row_geometry


class TestMomentum(unittest.TestCase):

    def test_first_values(self):
        self.assertAlmostEqual(next_momentum(1.0), (1 + math.sqrt(5)) / 2)
        self.assertEqual(momentum_sequence(1), [1.0])

    def test_sequence_increases(self):
        seq = momentum_sequence(50)
        self.assertTrue(all(b > a for a, b in zip(seq, seq[1:])))
        for k, t in enumerate(seq):
            self.assertGreaterEqual(t, (k + 2) / 2 - 1e-12)


class FISTATestCase(unittest.TestCase):
    """4x4 single-slice problem with the row-selection stub operator."""

    n = 4

    def setUp(self):
        rng = np.random.default_rng(0)
        self.geometry = row_geometry(self.n)
        self.vol = VolumeGeometry(n=self.n, slices=1)
        self.projector = RowSelectProjector(self.vol, self.geometry.angles)
        self.sino = torch.from_numpy(rng.uniform(0.0, 1.0, size=(1, self.n, self.n)).astype(np.float32))
        self.x0 = torch.from_numpy(rng.uniform(0.0, 1.0, size=(1, self.n, self.n)).astype(np.float32))

    def config(self, **kwargs):
        options = dict(geometry=self.geometry, volume_geometry=self.vol, sinogram=self.sino)
        options.update(kwargs)
        return FISTAConfig(**options)


class TestClassicalFISTA(FISTATestCase):

    def test_single_gradient_step(self):
        L = 2.0
        result = fista_reconstruction(self.config(iterations=1, lipschitz=L, initial=self.x0),
                                      projector=self.projector)
        expected = self.x0 - (1.0 / L) * (self.x0 - self.sino)
        torch.testing.assert_close(result.volume, expected)
        self.assertAlmostEqual(result.objective[0],
                               0.5 * float(torch.linalg.vector_norm(self.x0 - self.sino)), places=5)
        self.assertEqual(result.lipschitz, L)
        self.assertIsNone(result.error)
        self.assertIsNone(result.ring)

    def test_accelerated_iterates(self):
        """Three iterations reproduce the Beck-Teboulle recursion."""
        scale = torch.linspace(0.5, 1.5, self.n * self.n).reshape(self.n, self.n)
        projector = RowSelectProjector(self.vol, self.geometry.angles, scale=scale)
        L = 2.25
        result = fista_reconstruction(self.config(iterations=3, lipschitz=L, initial=self.x0),
                                      projector=projector)

        def grad_step(z):
            return z - (1.0 / L) * scale * (scale * z - self.sino)

        x_prev, x_t, t = self.x0, self.x0, 1.0
        objectives = []
        for _ in range(3):
            objectives.append(0.5 * float(torch.linalg.vector_norm(scale * x_t - self.sino)))
            x = grad_step(x_t)
            t_new = (1 + math.sqrt(1 + 4 * t * t)) / 2
            x_t = x + ((t - 1) / t_new) * (x - x_prev)
            x_prev, t = x, t_new

        torch.testing.assert_close(result.volume, x_prev, rtol=1e-5, atol=1e-6)
        np.testing.assert_allclose(result.objective, objectives, rtol=1e-5)

    def test_converges_towards_least_squares_solution(self):
        result = fista_reconstruction(self.config(iterations=30, lipschitz=1.0), projector=self.projector)
        torch.testing.assert_close(result.volume, self.sino, rtol=1e-4, atol=1e-5)

    def test_lipschitz_estimated_when_missing(self):
        result = fista_reconstruction(self.config(iterations=2, seed=0), projector=self.projector)
        self.assertAlmostEqual(result.lipschitz, 1.0, places=4)

    def test_zero_operator_rejected(self):
        with self.assertRaisesRegex(ConfigurationError, "Lipschitz"):
            fista_reconstruction(self.config(iterations=2),
                                 projector=ZeroProjector(self.vol, self.geometry.angles))

    def test_error_trace_with_ground_truth(self):
        result = fista_reconstruction(self.config(iterations=5, lipschitz=1.0, ground_truth=self.sino[0]),
                                      projector=self.projector)
        self.assertEqual(result.error.shape, (5,))
        self.assertTrue(np.all(np.diff(result.error) <= 1e-7))

    def test_callback_per_iteration(self):
        seen = []
        fista_reconstruction(self.config(iterations=4, lipschitz=1.0), projector=self.projector,
                             callback=lambda i, x: seen.append((i, tuple(x.shape))))
        self.assertEqual(seen, [(i, (1, self.n, self.n)) for i in range(4)])

    def test_zero_iterations_returns_initial_volume(self):
        result = fista_reconstruction(self.config(iterations=0, lipschitz=1.0, initial=self.x0),
                                      projector=self.projector)
        torch.testing.assert_close(result.volume, self.x0)
        self.assertEqual(result.objective.shape, (0,))

    def test_student_t_fidelity(self):
        result = fista_reconstruction(self.config(iterations=3, lipschitz=1.0, fidelity='students_data'),
                                      projector=self.projector)
        self.assertTrue(np.all(np.isfinite(result.objective)))
        self.assertTrue(bool(torch.isfinite(result.volume).all()))

    def test_volume_projection_geometry(self):
        geometry = row_geometry(self.n, kind=GeometryKind.PARALLEL3D, det_rows=2)
        vol = VolumeGeometry(n=self.n, slices=2)
        projector = RowSelectProjector(vol, geometry.angles)
        sino = torch.rand((2, self.n, self.n), generator=torch.Generator().manual_seed(1))
        config = FISTAConfig(geometry=geometry, volume_geometry=vol, sinogram=sino, iterations=1, lipschitz=1.0)
        result = fista_reconstruction(config, projector=projector)
        torch.testing.assert_close(result.volume, sino)
        self.assertEqual(projector.forward_calls, 1)


class TestRingRemoval(FISTATestCase):

    def setUp(self):
        super().setUp()
        rng = np.random.default_rng(2)
        self.clean = torch.from_numpy(rng.uniform(0.0, 0.1, size=(1, self.n, self.n)).astype(np.float32))
        # constant offset on detector 2 for every view: a ring
        self.sino = self.clean.clone()
        self.sino[:, :, 2] += 10.0

    def test_first_iteration_ring_update(self):
        result = fista_reconstruction(self.config(iterations=1, lipschitz=1.0, ring_lambda=2.0),
                                      projector=self.projector)
        self.assertEqual(tuple(result.ring.shape), (1, self.n))
        expected = torch.zeros((1, self.n))
        expected[0, 2] = float(self.sino[0, :, 2].sum()) - 2.0
        torch.testing.assert_close(result.ring, expected)

    def test_group_huber_without_ring_weight_fails_before_projecting(self):
        with self.assertRaises(ConfigurationError):
            fista_reconstruction(self.config(iterations=1, lipschitz=1.0, fidelity=FidelityKind.GROUP_HUBER),
                                 projector=self.projector)
        self.assertEqual(self.projector.forward_calls, 0)

    def test_three_iterations(self):
        """Image and ring vector follow the Group-Huber FISTA recursion with a shared momentum."""
        L, lam, alpha = 2.0, 2.0, 1.0
        x_prev = x_t = torch.zeros((1, self.n, self.n))
        r = r_x = torch.zeros((1, self.n))
        t = 1.0
        expected_rings, pre_shrink = [], []
        for _ in range(3):
            residual = x_t - (self.sino - alpha * r_x[:, None, :])
            x = x_t - residual / L
            r_old = r
            v = r_x - residual.sum(dim=1) / L
            r = soft_threshold(v, lam)
            t_new = (1 + math.sqrt(1 + 4 * t * t)) / 2
            x_t = x + ((t - 1) / t_new) * (x - x_prev)
            r_x = r + ((t - 1) / t_new) * (r - r_old)
            x_prev, t = x, t_new
            expected_rings.append(r)
            pre_shrink.append(v)

        for k in range(3):
            result = fista_reconstruction(
                self.config(iterations=k + 1, lipschitz=L, ring_lambda=lam, ring_alpha=alpha),
                projector=self.projector,
            )
            torch.testing.assert_close(result.ring, expected_rings[k], rtol=1e-5, atol=1e-5)
            # soft-thresholding removes at most lambda from every entry
            self.assertTrue(bool((result.ring.abs() <= torch.clamp(pre_shrink[k].abs() - lam, min=0.0) + 1e-5).all()))
            self.assertTrue(bool((result.ring * pre_shrink[k] >= 0).all()))

        torch.testing.assert_close(result.volume, x_prev, rtol=1e-5, atol=1e-5)
        self.assertEqual(result.objective.shape, (3,))
        self.assertTrue(np.all(np.isfinite(result.objective)))
        self.assertGreater(float(expected_rings[-1][0, 2]), 0.0)

    def test_zero_ring_weight_reduces_to_least_squares(self):
        plain = fista_reconstruction(self.config(iterations=3, lipschitz=1.0), projector=self.projector)
        ringless = fista_reconstruction(self.config(iterations=3, lipschitz=1.0, ring_lambda=0.0),
                                        projector=self.projector)
        torch.testing.assert_close(plain.volume, ringless.volume)
        self.assertIsNone(ringless.ring)

    def test_ordered_subsets_ring_lags_one_iteration(self):
        first = fista_reconstruction(self.config(iterations=1, lipschitz=1.0, ring_lambda=2.0, subsets=2),
                                     projector=self.projector)
        self.assertTrue(torch.equal(first.ring, torch.zeros((1, self.n))))

        second = fista_reconstruction(self.config(iterations=2, lipschitz=1.0, ring_lambda=2.0, subsets=2),
                                      projector=self.projector)
        nonzero = torch.nonzero(second.ring[0]).flatten().tolist()
        self.assertEqual(nonzero, [2])
        self.assertGreater(float(second.ring[0, 2]), 0.0)


class TestOrderedSubsets(FISTATestCase):

    def test_one_pass_recovers_identity_problem(self):
        """Subsets of disjoint rows with L = 1 solve the identity problem in one outer iteration."""
        result = fista_reconstruction(self.config(iterations=1, lipschitz=1.0, subsets=2),
                                      projector=self.projector)
        torch.testing.assert_close(result.volume, self.sino)
        self.assertTrue(np.isfinite(result.objective[0]))

    def test_subset_regularisation_scaling(self):
        backend = RecordingRegulariser(factor=1.0)
        settings = RegularisationSettings(fgp_tv=0.4, iterations=25)
        fista_reconstruction(self.config(iterations=3, lipschitz=2.0, subsets=2, regularisation=settings),
                             projector=self.projector, regulariser=backend)
        self.assertEqual(len(backend.calls), 3 * 2)
        for penalty, shape, strength, iterations in backend.calls:
            self.assertEqual(shape, (self.n, self.n))
            self.assertAlmostEqual(strength, 0.4 / 2.0 / 2)
            self.assertEqual(iterations, 13)

    def test_too_many_subsets(self):
        with self.assertRaises(ConfigurationError):
            fista_reconstruction(self.config(iterations=1, lipschitz=1.0, subsets=5), projector=self.projector)


class TestRegularisedFISTA(FISTATestCase):

    def test_regulariser_required(self):
        settings = RegularisationSettings(rof_tv=0.1)
        with self.assertRaises(ConfigurationError):
            fista_reconstruction(self.config(iterations=1, lipschitz=1.0, regularisation=settings),
                                 projector=self.projector)

    def test_objective_includes_tv_energy(self):
        backend = RecordingRegulariser(factor=1.0, energy=3.0)
        settings = RegularisationSettings(rof_tv=0.1)
        result = fista_reconstruction(
            self.config(iterations=1, lipschitz=1.0, initial=self.x0, regularisation=settings),
            projector=self.projector, regulariser=backend,
        )
        fidelity = 0.5 * float(torch.linalg.vector_norm(self.x0 - self.sino))
        self.assertAlmostEqual(result.objective[0], fidelity + 1.5, places=5)

    def test_threaded_slices(self):
        geometry = row_geometry(self.n)
        vol = VolumeGeometry(n=self.n, slices=3)
        sino = torch.rand((3, self.n, self.n), generator=torch.Generator().manual_seed(4))
        settings = RegularisationSettings(fgp_tv=0.1, workers=2)
        backend = RecordingRegulariser(factor=0.5)
        config = FISTAConfig(geometry=geometry, volume_geometry=vol, sinogram=sino,
                             iterations=1, lipschitz=1.0, regularisation=settings)
        result = fista_reconstruction(config, projector=RowSelectProjector(vol, geometry.angles),
                                      regulariser=backend)
        torch.testing.assert_close(result.volume, 0.5 * sino)
        self.assertEqual(len(backend.calls), 3)


class TestNaNPolicy(FISTATestCase):

    def test_raise(self):
        projector = NaNProjector(self.vol, self.geometry.angles)
        with self.assertRaises(NumericalAnomaly) as ctx:
            fista_reconstruction(self.config(iterations=3, lipschitz=1.0, nan_policy='raise'), projector=projector)
        self.assertEqual(ctx.exception.iteration, 1)

    def test_warn(self):
        projector = NaNProjector(self.vol, self.geometry.angles)
        with self.assertLogs('astra_fista.monitor', level='WARNING'):
            result = fista_reconstruction(self.config(iterations=2, lipschitz=1.0, nan_policy='warn'),
                                          projector=projector)
        self.assertEqual(result.objective.shape, (2,))

    def test_ignore(self):
        projector = NaNProjector(self.vol, self.geometry.angles)
        result = fista_reconstruction(self.config(iterations=2, lipschitz=1.0), projector=projector)
        self.assertTrue(np.all(np.isnan(result.objective)))


def test_classical_and_ordered_subsets_agree(small_problem):
    geometry, vol, projector, sino = small_problem
    classical = fista_reconstruction(
        FISTAConfig(geometry=geometry, volume_geometry=vol, sinogram=sino, iterations=5, lipschitz=1.0),
        projector=projector,
    )
    ordered = fista_reconstruction(
        FISTAConfig(geometry=geometry, volume_geometry=vol, sinogram=sino, iterations=5, lipschitz=1.0,
                    subsets=2),
        projector=projector,
    )
    torch.testing.assert_close(classical.volume, sino)
    torch.testing.assert_close(ordered.volume, sino)


def test_result_stays_on_device(device):
    n = 4
    geometry = row_geometry(n)
    vol = VolumeGeometry(n=n, slices=1)
    sino = torch.ones((1, n, n))
    config = FISTAConfig(geometry=geometry, volume_geometry=vol, sinogram=sino,
                         iterations=2, lipschitz=1.0, device=device)
    result = fista_reconstruction(config, projector=RowSelectProjector(vol, geometry.angles))
    assert result.volume.device.type == device.type


if __name__ == '__main__':
    unittest.main()
