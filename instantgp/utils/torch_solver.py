import numpy as np
import tqdm
import sys

import torch
from torch import nn
from pypose.optim.solver import CG

from instantgp.utils.least_squares import BlockKey, TerminationType


class BlockHuber(nn.Module):
    """Huber kernel with a threshold and scale per residual block.

    Acts on the squared norm of each residual block.
    """
    def __init__(self, thresholds, weights):
        super().__init__()
        self.register_buffer('thresholds', thresholds)
        self.register_buffer('weights', weights)

    def forward(self, input):
        outlier = input > self.thresholds.square()
        sqrt_input = input.clamp(min=1e-32).sqrt()
        robust = 2 * self.thresholds * sqrt_input - self.thresholds.square()
        return self.weights * torch.where(outlier, robust, input)

    def Derivative(self, input):
        outlier = input > self.thresholds.square()
        sqrt_input = input.clamp(min=1e-32).sqrt()
        return self.weights * torch.where(outlier, self.thresholds / sqrt_input, torch.ones_like(input))


class CostGroup:
    """All residual blocks sharing one cost function type."""
    def __init__(self, cost_class, measurements, param_indices, row_start, block_start):
        self.cost_class = cost_class
        self.measurements = measurements
        self.param_indices = param_indices
        self.num_residuals = cost_class.NUM_RESIDUALS
        self.row_start = row_start
        self.block_start = block_start
        self.num_blocks = measurements.shape[0]


class ProblemLayout:
    """Flat view of a Problem: free parameters first, ordered by elimination
    group, then the constant blocks. Residual blocks are grouped by cost type
    so each type is evaluated in one batched call."""

    def __init__(self, problem, ordering=None, device='cpu'):
        self.device = device
        blocks = problem.ParameterBlocks()
        free = [values for values in blocks if not problem.IsParameterBlockConstant(values)]
        constant = [values for values in blocks if problem.IsParameterBlockConstant(values)]
        if ordering is not None:
            free.sort(key=ordering.GroupId)
        self.free_blocks = free

        offsets = {}
        start = 0
        for values in free + constant:
            offsets[BlockKey(values)] = start
            start += values.shape[0]
        self.num_free = int(sum(values.shape[0] for values in free))

        lower_bounds = np.concatenate([[problem.GetParameterLowerBound(values, i) for i in range(values.shape[0])]
                                       for values in free])
        x0 = np.maximum(np.concatenate(free), lower_bounds)
        constants = np.concatenate(constant) if len(constant) > 0 else np.zeros(0)
        self.x0 = torch.tensor(x0, dtype=torch.float64, device=device)
        self.lower_bounds = torch.tensor(lower_bounds, dtype=torch.float64, device=device)
        self.constants = torch.tensor(constants, dtype=torch.float64, device=device)

        residual_blocks = {}
        for rb in problem.ResidualBlocks():
            residual_blocks.setdefault(type(rb.cost_function), []).append(rb)

        self.cost_groups = []
        thresholds, weights = [], []
        row_start, block_start = 0, 0
        for cost_class, rbs in residual_blocks.items():
            measurements = np.stack([rb.cost_function.measurement for rb in rbs])
            param_indices = []
            for slot, size in enumerate(cost_class.PARAMETER_BLOCK_SIZES):
                first = np.array([offsets[BlockKey(rb.parameter_blocks[slot])] for rb in rbs])
                param_indices.append(torch.tensor(first[:, np.newaxis] + np.arange(size), dtype=torch.long, device=device))
            group = CostGroup(cost_class, torch.tensor(measurements, dtype=torch.float64, device=device),
                              param_indices, row_start, block_start)
            self.cost_groups.append(group)
            thresholds.extend(rb.loss_function.threshold for rb in rbs)
            weights.extend(rb.loss_function.weight for rb in rbs)
            row_start += len(rbs) * cost_class.NUM_RESIDUALS
            block_start += len(rbs)
        self.num_rows = row_start
        self.kernel = BlockHuber(torch.tensor(thresholds, dtype=torch.float64, device=device),
                                 torch.tensor(weights, dtype=torch.float64, device=device))

    def Residuals(self, x):
        """Unweighted residuals, one (K, num_residuals) tensor per cost group."""
        full = torch.cat([x, self.constants])
        return [group.cost_class.EvaluateTorch(group.measurements, *[full[idx] for idx in group.param_indices])
                for group in self.cost_groups]

    def Cost(self, x):
        squared_norms = torch.cat([residual.square().sum(dim=1) for residual in self.Residuals(x)])
        return 0.5 * self.kernel(squared_norms).sum().item()

    def Linearize(self, x):
        """Robustified residual vector and sparse Jacobian over the free parameters.

        Each block is weighted by sqrt(rho'(|r|^2)), the first order part of the
        Triggs correction.
        """
        full = torch.cat([x, self.constants])
        residual_parts, rows, cols, values = [], [], [], []
        squared_norms = []
        for group in self.cost_groups:
            params = [full[idx] for idx in group.param_indices]
            residual = group.cost_class.EvaluateTorch(group.measurements, *params)
            squared_norms.append(residual.square().sum(dim=1))
            residual_parts.append(residual)

            def single(measurement, *block_params, cost_class=group.cost_class):
                return cost_class.EvaluateTorch(measurement[None], *[p[None] for p in block_params])[0]

            argnums = tuple(range(1, len(params) + 1))
            jacobians = torch.func.vmap(torch.func.jacrev(single, argnums=argnums))(group.measurements, *params)
            m = group.num_residuals
            block_rows = group.row_start + torch.arange(group.num_blocks * m, device=self.device).reshape(-1, m)
            for J, indices in zip(jacobians, group.param_indices):
                size = indices.shape[1]
                r = block_rows[:, :, None].expand(-1, -1, size)
                c = indices[:, None, :].expand(-1, m, -1)
                rows.append(r.reshape(-1))
                cols.append(c.reshape(-1))
                values.append(J.reshape(-1))

        squared_norms = torch.cat(squared_norms)
        sqrt_rho = self.kernel.Derivative(squared_norms).sqrt()
        row_weights = torch.cat([sqrt_rho[group.block_start:group.block_start + group.num_blocks]
                                 .repeat_interleave(group.num_residuals) for group in self.cost_groups])
        residuals = torch.cat([residual.reshape(-1) for residual in residual_parts]) * row_weights

        rows, cols, values = torch.cat(rows), torch.cat(cols), torch.cat(values)
        # constant columns are not optimized
        free = cols < self.num_free
        rows, cols, values = rows[free], cols[free], values[free] * row_weights[rows[free]]
        jacobian = torch.sparse_coo_tensor(torch.stack([rows, cols]), values,
                                           size=(self.num_rows, self.num_free)).coalesce()
        cost = 0.5 * self.kernel(squared_norms).sum().item()
        return residuals, jacobian, cost

    def WriteBack(self, x):
        x = x.detach().cpu().numpy()
        start = 0
        for values in self.free_blocks:
            values[:] = x[start:start + values.shape[0]]
            start += values.shape[0]


def SparseDiagonal(diagonal):
    n = diagonal.shape[0]
    indices = torch.arange(n, device=diagonal.device)
    return torch.sparse_coo_tensor(torch.stack([indices, indices]), diagonal, size=(n, n))


def SolveTorch(problem, options, summary):
    """Sparse Levenberg-Marquardt with a Jacobi preconditioned conjugate
    gradient solve of the damped normal equations.

    Lower bounds are enforced by clamping every step. The parameter blocks are
    only written when the result is usable.
    """
    layout = ProblemLayout(problem, options.linear_solver_ordering, options.device)
    sparse_solver = CG(tol=1e-5)

    radius, max_radius, up, down, reject = 1e3, 1e8, 2.0, 0.5 ** 4, 30
    x = layout.x0.clone()
    summary.initial_cost = layout.Cost(x)
    cost = summary.initial_cost

    window_size = 4
    loss_history = []
    termination = TerminationType.NO_CONVERGENCE
    progress_bar = tqdm.trange(options.max_num_iterations, file=sys.stdout,
                               disable=not options.minimizer_progress_to_stdout)
    try:
        for iteration in progress_bar:
            summary.num_iterations = iteration + 1
            residuals, J, cost = layout.Linearize(x)
            Jt = J.t().coalesce()
            gradient = torch.sparse.mm(Jt, residuals[:, None]).squeeze(-1)
            if gradient.abs().max().item() <= options.gradient_tolerance:
                termination = TerminationType.CONVERGENCE
                summary.message = 'Gradient tolerance reached'
                break

            A = torch.sparse.mm(Jt, J).coalesce()
            diagonal = torch.zeros(layout.num_free, dtype=torch.float64, device=x.device)
            diagonal.index_add_(0, J.indices()[1], J.values().square())
            diagonal = diagonal.clamp(min=1e-6, max=1e32)

            accepted = False
            for _ in range(reject):
                damped = (A + SparseDiagonal(diagonal / radius)).coalesce()
                preconditioner = SparseDiagonal(1. / (diagonal * (1. + 1. / radius)))
                step = sparse_solver(damped, -gradient[:, None], M=preconditioner).reshape(-1)
                x_new = torch.maximum(x + step, layout.lower_bounds)
                delta = x_new - x
                if delta.norm().item() <= options.parameter_tolerance * (x.norm().item() + options.parameter_tolerance):
                    termination = TerminationType.CONVERGENCE
                    summary.message = 'Parameter tolerance reached'
                    break
                new_cost = layout.Cost(x_new)
                if np.isfinite(new_cost) and new_cost < cost:
                    accepted = True
                    radius = min(radius * up, max_radius)
                    break
                radius *= down
            if termination == TerminationType.CONVERGENCE:
                break
            if not accepted:
                termination = TerminationType.FAILURE if not np.isfinite(cost) else TerminationType.CONVERGENCE
                summary.message = 'No step decreased the cost'
                break

            x = x_new
            cost = new_cost
            progress_bar.set_postfix({"loss": cost})

            loss_history.append(cost)
            if len(loss_history) >= 2 * window_size:
                avg_recent = np.mean(loss_history[-window_size:])
                avg_previous = np.mean(loss_history[-2 * window_size:-window_size])
                if avg_previous <= np.finfo(np.float64).tiny:
                    termination = TerminationType.CONVERGENCE
                    break
                improvement = (avg_previous - avg_recent) / avg_previous
                if abs(improvement) < options.function_tolerance:
                    termination = TerminationType.CONVERGENCE
                    summary.message = f'Function tolerance reached ({improvement:.2e})'
                    break
    except RuntimeError as e:
        termination = TerminationType.FAILURE
        summary.message = str(e)
    finally:
        progress_bar.close()

    summary.termination_type = termination
    if termination == TerminationType.FAILURE:
        return
    if not torch.all(torch.isfinite(x)).item():
        summary.termination_type = TerminationType.FAILURE
        summary.message = 'Non-finite parameters'
        return
    summary.final_cost = layout.Cost(x)
    layout.WriteBack(x)
