"""
Quadratic programming / constrained least squares solver.

Solves problems of the form

    min 0.5*x'*H*x - x'*f    subject to    B*x >= c

with a primal log-barrier interior point method, plus the weighted least
squares problems the kinematic controller needs, which are all lowered onto
that form. The solver has no robotics knowledge.

Failure policy:
- Dimension mismatches are programmer errors. They are logged at ERROR and
  the initial guess x0 is returned unchanged.
- Numerical trouble (iteration cap, singular Newton system) is not an error.
  The best iterate found so far is returned.
No method raises for either case, and every method returns a vector with the
length of x0.
"""

import numpy as np
from typing import Optional

from .config import SolverConfig, get_logger


def _shape(M: np.ndarray) -> str:
    if M.ndim == 1:
        return f"{M.shape[0]}x1"
    return "x".join(str(s) for s in M.shape)


class QPSolver:
    """Log-barrier interior point QP solver with least squares front-ends."""

    SINGULAR_PIVOT = 1e-5
    """Diagonal magnitude below which back substitution treats a row as singular."""

    def __init__(self, config: Optional[SolverConfig] = None, verbose: bool = True, log_level: str = "INFO"):
        """
        Args:
            config: Solver parameters, fixed for the lifetime of the solver
            verbose: Quiet mode when False, only warnings and errors are logged
            log_level: Logging level - "DEBUG", "INFO", "WARNING", "ERROR"
        """
        self.config = config if config is not None else SolverConfig()
        self.logger = get_logger(f"{__name__}.QPSolver", log_level, verbose)

    def set_log_level(self, level: str) -> None:
        self.logger.setLevel(level.upper())

    # ------------------------------------------------------------------
    # Generic QP
    # ------------------------------------------------------------------

    def solve(self, H, f, x0, B=None, c=None) -> np.ndarray:
        """
        Minimize 0.5*x'*H*x - x'*f, optionally subject to B*x >= c.

        Args:
            H: (n, n) symmetric matrix, positive definite on the feasible set
            f: (n,) linear term
            x0: (n,) initial guess; must be strictly feasible for the
                feasibility guarantee to hold
            B: (m, n) constraint matrix (optional)
            c: (m,) constraint vector (optional)

        Returns:
            The minimizer, or the best estimate available.
        """
        H = np.asarray(H, dtype=np.float64)
        f = np.asarray(f, dtype=np.float64).reshape(-1)
        x0 = np.asarray(x0, dtype=np.float64).reshape(-1)
        n = x0.size

        if H.ndim != 2 or H.shape != (n, n) or f.size != n:
            self.logger.error(
                f"solve(): Dimensions of input arguments do not match. "
                f"H matrix was {_shape(H)}, f vector was {f.size}x1, and x0 vector was {n}x1."
            )
            return x0.copy()

        if B is None and c is None:
            # Unconstrained optimum satisfies H*x = f
            try:
                x = np.linalg.solve(H, f)
            except np.linalg.LinAlgError:
                self.logger.warning("solve(): H matrix is singular. Returning the initial guess.")
                return x0.copy()
            if not np.all(np.isfinite(x)):
                self.logger.warning("solve(): Solution was not finite. Returning the initial guess.")
                return x0.copy()
            return x

        if B is None or c is None:
            self.logger.error("solve(): Constraints need both the B matrix and the c vector.")
            return x0.copy()

        B = np.asarray(B, dtype=np.float64)
        c = np.asarray(c, dtype=np.float64).reshape(-1)
        if B.ndim != 2 or B.shape[1] != n or B.shape[0] != c.size:
            self.logger.error(
                f"solve(): Dimensions of input arguments do not match. "
                f"H matrix was {_shape(H)}, f vector was {f.size}x1, B matrix was {_shape(B)}, "
                f"c vector was {c.size}x1, and x0 vector was {n}x1."
            )
            return x0.copy()

        return self._interior_point(H, f, B, c, x0)

    def _interior_point(self, H, f, B, c, x0) -> np.ndarray:
        # Newton's method on the barrier function
        #
        #    p(x) = 0.5*x'*H*x - x'*f - u*sum(log(d_i)),    d_i = b_i*x - c_i
        #
        #    grad(x) = H*x - f - u*sum((1/d_i)*b_i')
        #    hess(x) = H + u*sum((1/d_i^2)*b_i'*b_i)
        cfg = self.config

        x = x0.copy()
        x_prev = x0.copy()
        u = float(cfg.barrier_weight)
        beta = float(cfg.barrier_decay)

        iterations = 0
        converged = False
        for iterations in range(1, int(cfg.max_iterations) + 1):
            d = B @ x - c
            violated = d <= 0.0
            num_violated = int(np.count_nonzero(violated))

            if num_violated:
                # Discard the offending iterate and come back with a stiffer barrier
                u *= cfg.barrier_growth ** num_violated
                beta += cfg.decay_slowdown * (1.0 - beta)
                x = x_prev.copy()
                d = B @ x - c
                d[d <= 0.0] = cfg.violation_floor

            inv_d = 1.0 / d
            grad = H @ x - f - u * (B.T @ inv_d)
            hess = H + B.T @ (B * (u * inv_d * inv_d)[:, None])

            try:
                dx = np.linalg.solve(hess, -grad)
            except np.linalg.LinAlgError:
                self.logger.debug("solve(): Newton system is singular, stopping at iteration %d", iterations)
                break
            if not np.all(np.isfinite(dx)):
                self.logger.debug("solve(): Newton step is not finite, stopping at iteration %d", iterations)
                break

            # Backtrack until every constraint stays satisfied after the step
            alpha = float(cfg.step_size)
            b_dx = B @ dx
            for _ in range(64):
                if np.all(d + alpha * b_dx >= 0.0):
                    break
                alpha *= cfg.step_shrink

            step = alpha * dx
            x_prev = x.copy()
            x = x + step

            # Judge convergence on the full Newton step: a line search pinned
            # against a wall shrinks alpha, not dx
            if np.linalg.norm(dx) < cfg.tolerance:
                converged = True
                break
            if alpha < cfg.tolerance:
                self.logger.debug("solve(): Line search stalled at iteration %d (alpha=%.2e)", iterations, alpha)

            u *= beta

        if not converged:
            self.logger.debug("solve(): No convergence after %d iterations, returning best iterate", iterations)

        # Never hand back something that breaks the constraints more than the guess did
        worst = max(0.0, -float(np.min(B @ x - c)))
        worst_x0 = max(0.0, -float(np.min(B @ x0 - c)))
        if not np.all(np.isfinite(x)) or worst > worst_x0 + cfg.violation_floor:
            self.logger.debug("solve(): Final iterate is worse than the initial guess, returning x0")
            return x0.copy()
        return x

    # ------------------------------------------------------------------
    # Weighted least squares
    # ------------------------------------------------------------------

    def least_squares(self, y, A, W, x0, x_min=None, x_max=None) -> np.ndarray:
        """
        Minimize 0.5*(y - A*x)'*W*(y - A*x), optionally with x_min <= x <= x_max.

        Args:
            y: (m,) target
            A: (m, n) matrix
            W: (m, m) weighting matrix
            x0: (n,) initial guess (strictly inside the box when bounds are given)
            x_min, x_max: (n,) bounds, both or neither
        """
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        A = np.atleast_2d(np.asarray(A, dtype=np.float64))
        W = np.atleast_2d(np.asarray(W, dtype=np.float64))
        x0 = np.asarray(x0, dtype=np.float64).reshape(-1)
        m, n = A.shape

        bounded = x_min is not None or x_max is not None
        if bounded:
            if x_min is None or x_max is None:
                self.logger.error("least_squares(): Both x_min and x_max are needed for a bounded problem.")
                return x0.copy()
            x_min = np.asarray(x_min, dtype=np.float64).reshape(-1)
            x_max = np.asarray(x_max, dtype=np.float64).reshape(-1)

        if y.size != m or x0.size != n or (bounded and (x_min.size != n or x_max.size != n)):
            msg = (f"least_squares(): Dimensions of input arguments do not match! "
                   f"The y vector was {y.size}x1, the A matrix was {m}x{n}, the W matrix was {_shape(W)}, ")
            if bounded:
                msg += f"the x_min vector was {x_min.size}x1, the x_max vector was {x_max.size}x1, "
            self.logger.error(msg + f"and the x0 vector was {x0.size}x1.")
            return x0.copy()

        if W.shape != (m, m):
            self.logger.error(f"least_squares(): Weighting matrix W was {_shape(W)}, but expected {m}x{m}.")
            return x0.copy()

        AtW = A.T @ W
        if not bounded:
            return self.solve(AtW @ A, AtW @ y, x0)

        if not self._bounds_are_sound(x_min, x_max, "least_squares"):
            return x0.copy()

        B, c = self.box_constraints(x_min, x_max)
        return self.solve(AtW @ A, AtW @ y, x0, B=B, c=c)

    def constrained_least_squares(self, xd, W, y, A, x0, x_min=None, x_max=None) -> np.ndarray:
        """
        Minimize 0.5*(xd - x)'*W*(xd - x) subject to A*x = y,
        optionally with x_min <= x <= x_max.

        The Lagrangian L = 0.5*x'*W*x - x'*W*xd + (A*x - y)'*lambda is
        stationary where

            [ 0   A ][ lambda ]   [   y  ]
            [ A'  W ][   x    ] = [ W*xd ]

        Without bounds this saddle system is QR factorised and only the
        x block is back-substituted. With bounds the interior point method
        runs over the augmented state [lambda; x] with the box on x only.

        Args:
            xd: (n,) desired value, the secondary objective
            W: (n, n) weighting matrix
            y: (m,) equality target
            A: (m, n) equality matrix, full row rank
            x0: (n,) initial guess
            x_min, x_max: (n,) bounds, both or neither
        """
        xd = np.asarray(xd, dtype=np.float64).reshape(-1)
        W = np.atleast_2d(np.asarray(W, dtype=np.float64))
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        A = np.atleast_2d(np.asarray(A, dtype=np.float64))
        x0 = np.asarray(x0, dtype=np.float64).reshape(-1)
        m, n = A.shape

        bounded = x_min is not None or x_max is not None
        if bounded:
            if x_min is None or x_max is None:
                self.logger.error("constrained_least_squares(): Both x_min and x_max are needed for a bounded problem.")
                return x0.copy()
            x_min = np.asarray(x_min, dtype=np.float64).reshape(-1)
            x_max = np.asarray(x_max, dtype=np.float64).reshape(-1)

        if xd.size != n or y.size != m or x0.size != n or (bounded and (x_min.size != n or x_max.size != n)):
            msg = (f"constrained_least_squares(): Dimensions of input arguments do not match. "
                   f"The xd vector was {xd.size}x1, the W matrix was {_shape(W)}, the y vector was {y.size}x1, "
                   f"the A matrix was {m}x{n}, ")
            if bounded:
                msg += f"the x_min vector was {x_min.size}x1, the x_max vector was {x_max.size}x1, "
            self.logger.error(msg + f"and the x0 vector was {x0.size}x1.")
            return x0.copy()

        if W.shape != (n, n):
            self.logger.error(
                f"constrained_least_squares(): Weighting matrix W was {_shape(W)}, but expected {n}x{n}."
            )
            return x0.copy()

        K = np.zeros((m + n, m + n))
        K[0:m, m:] = A
        K[m:, 0:m] = A.T
        K[m:, m:] = W

        if not bounded:
            Q, R = np.linalg.qr(K)
            # Bottom rows of R*[lambda; x] = Q'*[y; W*xd] only involve x
            rhs = Q[0:m, m:].T @ y + Q[m:, m:].T @ (W @ xd)
            return self.backward_substitution(rhs, R[m:, m:], x0)

        if not self._bounds_are_sound(x_min, x_max, "constrained_least_squares"):
            return x0.copy()

        f = np.concatenate((y, W @ xd))

        # B = [ 0 -I ]    c = [ -x_max ]
        #     [ 0  I ]        [  x_min ]
        B_box, c = self.box_constraints(x_min, x_max)
        B = np.zeros((2 * n, m + n))
        B[:, m:] = B_box

        state = np.concatenate((np.zeros(m), x0))
        state = self.solve(K, f, state, B=B, c=c)
        return state[m:]

    def backward_substitution(self, y, U, x0) -> np.ndarray:
        """
        Solve U*x = y for upper-triangular U, last row first.

        A row whose pivot is numerically zero cannot be solved; that element
        is set to 90% of its value in x0 instead.
        """
        y = np.asarray(y, dtype=np.float64).reshape(-1)
        U = np.atleast_2d(np.asarray(U, dtype=np.float64))
        x0 = np.asarray(x0, dtype=np.float64).reshape(-1)
        n = x0.size

        if U.shape != (n, n) or y.size != n:
            self.logger.error(
                f"backward_substitution(): Dimensions of input arguments do not match. "
                f"The y vector was {y.size}x1, the U matrix was {_shape(U)}, and the x0 vector was {n}x1."
            )
            return x0.copy()

        x = np.zeros(n)
        for i in range(n - 1, -1, -1):
            acc = float(U[i, i + 1:] @ x[i + 1:])
            if abs(U[i, i]) < self.SINGULAR_PIVOT:
                x[i] = 0.9 * x0[i]  # Singular, slow down instead
            else:
                x[i] = (y[i] - acc) / U[i, i]
        return x

    @staticmethod
    def box_constraints(x_min: np.ndarray, x_max: np.ndarray):
        """Lower x_min <= x <= x_max to B*x >= c with B = [-I; I], c = [-x_max; x_min]."""
        n = x_min.size
        B = np.vstack((-np.eye(n), np.eye(n)))
        c = np.concatenate((-x_max, x_min))
        return B, c

    def _bounds_are_sound(self, x_min: np.ndarray, x_max: np.ndarray, caller: str) -> bool:
        bad = np.flatnonzero(x_min > x_max)
        if bad.size:
            i = int(bad[0])
            self.logger.error(
                f"{caller}(): Lower bound {x_min[i]} is greater than upper bound {x_max[i]} for element {i}."
            )
            return False
        return True
