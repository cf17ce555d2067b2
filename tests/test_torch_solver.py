"""Tests for the sparse torch backend, skipped when torch is not installed."""

import numpy as np
import pytest

torch = pytest.importorskip('torch')
pytest.importorskip('pypose')

from instantgp.utils.cost_function import PairwiseDirectionError, PositionPriorError
from instantgp.utils.least_squares import (HuberLoss, ParameterBlockOrdering, Problem, Solve, SolverOptions,
                                           SolverStrategy, SolverSummary, TerminationType)
from instantgp.utils.torch_solver import BlockHuber, ProblemLayout


def sparse_options(**kwargs):
    return SolverOptions(strategy=SolverStrategy.GPU_SPARSE, device='cpu', **kwargs)


class TestBlockHuber:

    def test_matches_huber(self):
        kernel = BlockHuber(torch.tensor([1., 1., np.inf], dtype=torch.float64),
                            torch.tensor([1., 2., 1.], dtype=torch.float64))
        values = kernel(torch.tensor([0.25, 4., 4.], dtype=torch.float64))
        assert torch.allclose(values, torch.tensor([0.25, 2. * (2. * 2. - 1.), 4.], dtype=torch.float64))

    def test_derivative(self):
        kernel = BlockHuber(torch.tensor([1., 1.], dtype=torch.float64), torch.tensor([1., 3.], dtype=torch.float64))
        derivative = kernel.Derivative(torch.tensor([0.25, 4.], dtype=torch.float64))
        assert torch.allclose(derivative, torch.tensor([1., 3. * 0.5], dtype=torch.float64))


class TestProblemLayout:

    def test_layout_follows_groups(self):
        problem = Problem()
        p1, p2, s = np.array([0., 0., 0.]), np.array([1., 1., 1.]), np.array([2.])
        problem.AddResidualBlock(PairwiseDirectionError([1., 0., 0.]), None, [p1, p2, s])
        problem.SetParameterLowerBound(s, 0, 3.)
        ordering = ParameterBlockOrdering()
        ordering.AddElementToGroup(s, 0)
        ordering.AddElementToGroup(p1, 1)
        ordering.AddElementToGroup(p2, 1)
        layout = ProblemLayout(problem, ordering)
        # the scale starts clamped to its bound
        assert np.array_equal(layout.x0.numpy(), [3., 0., 0., 0., 1., 1., 1.])
        assert layout.num_free == 7

    def test_sparse_jacobian_matches_finite_differences(self):
        rng = np.random.default_rng(1)
        problem = Problem()
        positions = [rng.normal(size=3) for _ in range(4)]
        scales = [rng.uniform(0.5, 2., size=1) for _ in range(3)]
        for i, scale in enumerate(scales):
            direction = rng.normal(size=3)
            problem.AddResidualBlock(PairwiseDirectionError(direction / np.linalg.norm(direction)), None,
                                     [positions[i], positions[i + 1], scale])
        problem.AddResidualBlock(PositionPriorError(np.zeros(3), np.diag([1., 2., 3.])), None, [positions[0]])
        problem.SetParameterBlockConstant(positions[3])

        layout = ProblemLayout(problem)
        x = layout.x0
        residuals, J, _ = layout.Linearize(x)
        assert J.shape == (layout.num_rows, layout.num_free)

        def flat_residuals(x):
            return torch.cat([r.reshape(-1) for r in layout.Residuals(x)])

        h = 1e-7
        numeric = torch.zeros(layout.num_rows, layout.num_free, dtype=torch.float64)
        for k in range(layout.num_free):
            dx = torch.zeros_like(x)
            dx[k] = h
            numeric[:, k] = (flat_residuals(x + dx) - flat_residuals(x - dx)) / (2 * h)
        assert torch.allclose(J.to_dense(), numeric, atol=1e-6)
        assert torch.allclose(residuals, flat_residuals(x))

    def test_robust_weights_on_outliers(self):
        problem = Problem()
        x = np.zeros(3)
        problem.AddResidualBlock(PositionPriorError([0., 3., 4.], np.eye(3)), HuberLoss(1.), [x])
        layout = ProblemLayout(problem)
        residuals, J, cost = layout.Linearize(layout.x0)
        # rho'(25) = 1 / 5 for a = 1
        assert torch.allclose(residuals, torch.tensor([0., -3., -4.], dtype=torch.float64) / np.sqrt(5.))
        assert torch.allclose(J.to_dense(), torch.eye(3, dtype=torch.float64) / np.sqrt(5.))
        assert cost == pytest.approx(0.5 * (2 * 5. - 1.))


class TestSolveTorch:

    def test_pulls_position_to_prior(self):
        problem = Problem()
        x = np.zeros(3)
        prior = np.array([1., -2., 3.])
        problem.AddResidualBlock(PositionPriorError(prior, np.eye(3)), None, [x])
        summary = SolverSummary()
        Solve(sparse_options(), problem, summary)
        assert summary.IsSolutionUsable()
        assert np.allclose(x, prior, atol=1e-4)
        assert 'GPU_SPARSE' in summary.BriefReport()

    def test_lower_bound_is_respected(self):
        problem = Problem()
        p1, p2, s = np.zeros(3), np.array([1., 0., 0.]), np.array([1.])
        problem.AddResidualBlock(PairwiseDirectionError([-1., 0., 0.]), None, [p1, p2, s])
        problem.SetParameterBlockConstant(p1)
        problem.SetParameterBlockConstant(p2)
        problem.SetParameterLowerBound(s, 0, 1e-5)
        summary = SolverSummary()
        Solve(sparse_options(), problem, summary)
        assert summary.IsSolutionUsable()
        assert s[0] >= 1e-5

    def test_failure_leaves_blocks_untouched(self):
        problem = Problem()
        x = np.array([np.nan, 0., 0.])
        problem.AddResidualBlock(PositionPriorError(np.ones(3), np.eye(3)), None, [x])
        summary = SolverSummary()
        Solve(sparse_options(), problem, summary)
        assert summary.termination_type == TerminationType.FAILURE
        assert np.isnan(x[0]) and np.array_equal(x[1:], [0., 0.])

    @pytest.mark.skipif(not torch.cuda.is_available(), reason='CUDA is not available')
    def test_cuda_device(self):
        problem = Problem()
        x = np.zeros(3)
        problem.AddResidualBlock(PositionPriorError(np.ones(3), np.eye(3)), None, [x])
        summary = SolverSummary()
        Solve(SolverOptions(strategy=SolverStrategy.GPU_SPARSE, device='cuda:0'), problem, summary)
        assert np.allclose(x, np.ones(3), atol=1e-4)
