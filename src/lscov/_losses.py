"""Robust loss functions, and the Jacobian correction used when they are
applied before covariance estimation."""

from __future__ import annotations

import abc

import jax_dataclasses as jdc
import numpy as onp


class LossFunction(abc.ABC):
    @abc.abstractmethod
    def evaluate(self, s: float) -> tuple[float, float, float]:
        """Returns `(rho(s), rho'(s), rho''(s))` for a squared residual norm `s`."""


@jdc.pytree_dataclass
class TrivialLoss(LossFunction):
    def evaluate(self, s: float) -> tuple[float, float, float]:
        return s, 1.0, 0.0


@jdc.pytree_dataclass
class HuberLoss(LossFunction):
    """Quadratic for `s <= a^2`, linear in the residual norm beyond."""

    a: jdc.Static[float] = 1.0

    def evaluate(self, s: float) -> tuple[float, float, float]:
        b = self.a * self.a
        if s > b:
            r = onp.sqrt(s)
            rho1 = max(self.a / r, onp.finfo(float).tiny)
            return 2.0 * self.a * r - b, rho1, -rho1 / (2.0 * s)
        return s, 1.0, 0.0


@jdc.pytree_dataclass
class CauchyLoss(LossFunction):
    a: jdc.Static[float] = 1.0

    def evaluate(self, s: float) -> tuple[float, float, float]:
        b = self.a * self.a
        c = 1.0 / b
        inv = 1.0 / (1.0 + s * c)
        return b * onp.log1p(s * c), inv, -c * inv * inv


def correct_jacobians(
    loss: LossFunction, residual: onp.ndarray, jacobians: list[onp.ndarray]
) -> list[onp.ndarray]:
    """Scale residual block Jacobians so that `J'J` matches the curvature of
    the robustified cost.

    With `s = |r|^2`, the corrected Jacobian is
    `sqrt(rho') * (J - alpha / s * r r' J)` where
    `alpha = 1 - sqrt(1 + 2 s rho'' / rho')`.
    """
    s = float(residual @ residual)
    _, rho1, rho2 = loss.evaluate(s)
    sqrt_rho1 = onp.sqrt(rho1)

    # Outlier region or zero residual: plain scaling.
    if s == 0.0 or rho2 <= 0.0:
        return [sqrt_rho1 * jac for jac in jacobians]

    D = 1.0 + 2.0 * s * rho2 / rho1
    alpha = 1.0 - onp.sqrt(D)
    alpha_sq_norm = alpha / s
    return [
        sqrt_rho1 * (jac - alpha_sq_norm * onp.outer(residual, residual @ jac))
        for jac in jacobians
    ]
