"""Robust nonlinear least-squares problem description on top of Ceres.

The positioning code only talks to this module: it creates parameter blocks
(numpy arrays owned by the caller), adds residual blocks made of a cost
function, an optional robust loss and the blocks it depends on, marks blocks
constant or bounded, and hands the problem to `Solve`. The backend is picked
by `SolverOptions.strategy`:

    CPU_SPARSE -> pyceres Levenberg-Marquardt, sparse Schur complement
    GPU_SPARSE -> torch sparse Levenberg-Marquardt with pypose CG (utils/torch_solver.py)

Ceres aborts the process on misuse instead of raising, so block sizes and
block membership are checked here before anything reaches pyceres.
"""
import numpy as np
from enum import Enum
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import pyceres

TerminationType = pyceres.TerminationType


class SolverStrategy(Enum):
    CPU_SPARSE = 0
    GPU_SPARSE = 1


def BlockKey(values: np.ndarray) -> int:
    # Ceres identifies parameter blocks by their memory
    return values.ctypes.data


# ============================================================================
# Loss functions
# ============================================================================

class TrivialLoss(pyceres.TrivialLoss):
    """rho(s) = weight * s"""
    threshold = np.inf

    def __init__(self, weight: float = 1.0):
        super().__init__()
        self.weight = float(weight)


class HuberLoss(pyceres.HuberLoss):
    """rho(s) = weight * s for s <= a^2, weight * (2 a sqrt(s) - a^2) otherwise.

    A scaled Huber loss is still a Huber loss: w * rho_a(s) = rho_{a sqrt(w)}(w s).
    The Ceres loss therefore uses the threshold a * sqrt(weight) and the
    residuals of its block are multiplied by sqrt(weight).
    """

    def __init__(self, a: float, weight: float = 1.0):
        if a <= 0:
            raise ValueError(f"Huber threshold has to be positive: {a}")
        if weight <= 0:
            raise ValueError(f"Loss scale has to be positive: {weight}")
        super().__init__(a * np.sqrt(weight))
        self.threshold = float(a)
        self.weight = float(weight)


def ScaledLoss(loss, a: float):
    """rho(s) = a * loss(s), for a trivial (None) or Huber loss."""
    if a <= 0:
        raise ValueError(f"Loss scale has to be positive: {a}")
    if loss is None or isinstance(loss, TrivialLoss):
        weight = loss.weight if loss is not None else 1.0
        return TrivialLoss(weight * a)
    if isinstance(loss, HuberLoss):
        return HuberLoss(loss.threshold, loss.weight * a)
    raise TypeError(f"Cannot scale a {type(loss).__name__}")


# ============================================================================
# Cost functions
# ============================================================================

class CostFunction(pyceres.CostFunction):
    """A Ceres residual functor with a fixed-size measurement.

    Subclasses declare `NUM_RESIDUALS` and `PARAMETER_BLOCK_SIZES` and
    implement batched evaluation, shared by Ceres (one block at a time) and by
    the GPU strategy (all blocks of one type at once):

        EvaluateBatch(measurements, *params, compute_jacobians=True)
            -> residuals (K, NUM_RESIDUALS), [jacobian (K, NUM_RESIDUALS, size_i)]
        EvaluateTorch(measurements, *params) -> residuals tensor (K, NUM_RESIDUALS)
    """
    NUM_RESIDUALS = 0
    PARAMETER_BLOCK_SIZES = ()

    def __init__(self, measurement):
        super().__init__()
        self.measurement = np.asarray(measurement, dtype=np.float64).ravel()
        # set from the loss scale when the block is added to a problem
        self.sqrt_weight = 1.0
        self.set_num_residuals(self.NUM_RESIDUALS)
        self.set_parameter_block_sizes(list(self.PARAMETER_BLOCK_SIZES))

    @staticmethod
    def EvaluateBatch(measurements, *parameters, compute_jacobians=True):
        raise NotImplementedError

    @staticmethod
    def EvaluateTorch(measurements, *parameters):
        raise NotImplementedError

    def Evaluate(self, parameters, residuals, jacobians):
        params = [np.asarray(p, dtype=np.float64).reshape(1, -1) for p in parameters]
        values, blocks = type(self).EvaluateBatch(self.measurement[np.newaxis], *params,
                                                  compute_jacobians=jacobians is not None)
        residuals[:] = self.sqrt_weight * values[0]
        if jacobians is not None:
            for jacobian, J in zip(jacobians, blocks):
                # Ceres skips the jacobians of constant blocks
                if jacobian is not None and len(jacobian) > 0:
                    jacobian[:] = self.sqrt_weight * J[0].ravel()
        return True


# ============================================================================
# Problem
# ============================================================================

class ResidualBlock:
    def __init__(self, cost_function: CostFunction, loss_function, parameter_blocks: List[np.ndarray]):
        self.cost_function = cost_function
        self.loss_function = loss_function if loss_function is not None else TrivialLoss()
        self.parameter_blocks = parameter_blocks


class ParameterBlockOrdering:
    """Elimination groups; blocks in lower groups are eliminated first."""

    def __init__(self):
        self._group_of: Dict[int, int] = {}

    def AddElementToGroup(self, values: np.ndarray, group: int):
        if group < 0:
            raise ValueError(f"Group id has to be non-negative: {group}")
        self._group_of[BlockKey(values)] = group

    def GroupId(self, values: np.ndarray) -> int:
        return self._group_of.get(BlockKey(values), -1)

    def NumElements(self) -> int:
        return len(self._group_of)

    def NumGroups(self) -> int:
        return len(set(self._group_of.values()))


class Problem:
    """A pyceres.Problem plus the block records the GPU strategy needs.

    Parameter blocks are identified by their memory, so the arrays have to
    stay alive and in place until the problem is solved.
    """

    def __init__(self):
        self.ceres_problem = pyceres.Problem()
        self._parameter_blocks: Dict[int, np.ndarray] = {}
        self._lower_bounds: Dict[int, np.ndarray] = {}
        self._residual_blocks: List[ResidualBlock] = []

    def AddParameterBlock(self, values: np.ndarray) -> np.ndarray:
        if (not isinstance(values, np.ndarray) or values.dtype != np.float64
                or values.ndim != 1 or not values.flags.c_contiguous):
            raise TypeError("Parameter blocks have to be contiguous 1-D float64 numpy arrays")
        key = BlockKey(values)
        known = self._parameter_blocks.get(key)
        if known is not None:
            if known.shape[0] != values.shape[0]:
                raise ValueError(f"Parameter block was added with size {known.shape[0]}, got {values.shape[0]}")
            return known
        self.ceres_problem.add_parameter_block(values, values.shape[0])
        self._parameter_blocks[key] = values
        self._lower_bounds[key] = np.full(values.shape[0], -np.inf)
        return values

    def AddResidualBlock(self, cost_function: CostFunction, loss_function,
                         parameter_blocks: Sequence[np.ndarray]) -> ResidualBlock:
        sizes = cost_function.PARAMETER_BLOCK_SIZES
        if len(parameter_blocks) != len(sizes):
            raise ValueError(f"{type(cost_function).__name__} expects {len(sizes)} parameter blocks, got {len(parameter_blocks)}")
        for values, size in zip(parameter_blocks, sizes):
            if isinstance(values, np.ndarray) and values.ndim == 1 and values.shape[0] != size:
                raise ValueError(f"Parameter block of size {values.shape[0]} does not match the expected size {size}")
        if len({BlockKey(np.asarray(values)) for values in parameter_blocks}) != len(parameter_blocks):
            raise ValueError("A residual block cannot use the same parameter block twice")
        blocks = [self.AddParameterBlock(values) for values in parameter_blocks]

        residual_block = ResidualBlock(cost_function, loss_function, blocks)
        cost_function.sqrt_weight = np.sqrt(residual_block.loss_function.weight)
        self.ceres_problem.add_residual_block(cost_function, loss_function, blocks)
        self._residual_blocks.append(residual_block)
        return residual_block

    def _Key(self, values: np.ndarray) -> int:
        key = BlockKey(values)
        if key not in self._parameter_blocks:
            raise KeyError("Parameter block is not part of the problem")
        return key

    def HasParameterBlock(self, values: np.ndarray) -> bool:
        return BlockKey(values) in self._parameter_blocks

    def SetParameterBlockConstant(self, values: np.ndarray):
        self._Key(values)
        self.ceres_problem.set_parameter_block_constant(values)

    def SetParameterBlockVariable(self, values: np.ndarray):
        self._Key(values)
        self.ceres_problem.set_parameter_block_variable(values)

    def IsParameterBlockConstant(self, values: np.ndarray) -> bool:
        self._Key(values)
        return self.ceres_problem.is_parameter_block_constant(values)

    def SetParameterLowerBound(self, values: np.ndarray, index: int, lower_bound: float):
        key = self._Key(values)
        if not 0 <= index < values.shape[0]:
            raise IndexError(f"Index {index} out of range for a block of size {values.shape[0]}")
        self.ceres_problem.set_parameter_lower_bound(values, index, lower_bound)
        self._lower_bounds[key][index] = lower_bound

    def GetParameterLowerBound(self, values: np.ndarray, index: int) -> float:
        return float(self._lower_bounds[self._Key(values)][index])

    def NumParameterBlocks(self) -> int:
        return self.ceres_problem.num_parameter_blocks()

    def NumResidualBlocks(self) -> int:
        return self.ceres_problem.num_residual_blocks()

    def NumResiduals(self) -> int:
        return self.ceres_problem.num_residuals()

    def ParameterBlocks(self) -> List[np.ndarray]:
        return list(self._parameter_blocks.values())

    def ResidualBlocks(self) -> List[ResidualBlock]:
        return list(self._residual_blocks)


# ============================================================================
# Solver
# ============================================================================

@dataclass
class SolverOptions:
    max_num_iterations: int = 100
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    strategy: SolverStrategy = SolverStrategy.CPU_SPARSE
    device: str = 'cpu'
    minimizer_progress_to_stdout: bool = False
    linear_solver_ordering: Optional[ParameterBlockOrdering] = None


@dataclass
class SolverSummary:
    termination_type: TerminationType = TerminationType.FAILURE
    num_iterations: int = 0
    initial_cost: float = float('nan')
    final_cost: float = float('nan')
    num_residual_blocks: int = 0
    num_parameters: int = 0
    strategy: Optional[SolverStrategy] = None
    message: str = ''

    def IsSolutionUsable(self) -> bool:
        return self.termination_type in (TerminationType.CONVERGENCE, TerminationType.NO_CONVERGENCE,
                                         TerminationType.USER_SUCCESS)

    def BriefReport(self) -> str:
        strategy = self.strategy.name if self.strategy is not None else 'NONE'
        return (f"Strategy: {strategy}, Residual blocks: {self.num_residual_blocks}, "
                f"Parameters: {self.num_parameters}, Iterations: {self.num_iterations}, "
                f"Initial cost: {self.initial_cost:.6e}, Final cost: {self.final_cost:.6e}, "
                f"Termination: {self.termination_type.name}")


def SolveCeres(problem: Problem, options: SolverOptions, summary: SolverSummary):
    """Levenberg-Marquardt in Ceres, sparse Schur for anything but tiny problems.
    Ceres writes the solution into the parameter blocks only when it is usable."""
    ceres_options = pyceres.SolverOptions()
    if problem.NumParameterBlocks() < 50:
        ceres_options.linear_solver_type = pyceres.LinearSolverType.DENSE_NORMAL_CHOLESKY
    else:
        ceres_options.linear_solver_type = pyceres.LinearSolverType.SPARSE_SCHUR
    ceres_options.max_num_iterations = options.max_num_iterations
    ceres_options.function_tolerance = options.function_tolerance
    ceres_options.gradient_tolerance = options.gradient_tolerance
    ceres_options.parameter_tolerance = options.parameter_tolerance
    ceres_options.minimizer_progress_to_stdout = options.minimizer_progress_to_stdout
    if not options.minimizer_progress_to_stdout:
        ceres_options.logging_type = pyceres.LoggingType.SILENT

    ceres_summary = pyceres.SolverSummary()
    pyceres.solve(ceres_options, problem.ceres_problem, ceres_summary)

    summary.termination_type = ceres_summary.termination_type
    summary.num_iterations = ceres_summary.num_successful_steps + ceres_summary.num_unsuccessful_steps
    summary.initial_cost = ceres_summary.initial_cost
    summary.final_cost = ceres_summary.final_cost
    summary.message = ceres_summary.message


def Solve(options: SolverOptions, problem: Problem, summary: SolverSummary):
    summary.num_residual_blocks = problem.NumResidualBlocks()
    summary.strategy = options.strategy
    if problem.NumResidualBlocks() == 0:
        summary.termination_type = TerminationType.FAILURE
        summary.message = 'Problem has no residual blocks'
        return

    free_blocks = [values for values in problem.ParameterBlocks() if not problem.IsParameterBlockConstant(values)]
    summary.num_parameters = int(sum(values.shape[0] for values in free_blocks))
    if summary.num_parameters == 0:
        # everything is held constant, nothing to optimize
        summary.termination_type = TerminationType.CONVERGENCE
        summary.message = 'No free parameters'
        return

    if options.strategy == SolverStrategy.GPU_SPARSE:
        from instantgp.utils.torch_solver import SolveTorch
        SolveTorch(problem, options, summary)
    else:
        SolveCeres(problem, options, summary)
