"""
Element kernel for one implicit theta-step of the Fisher-Kolmogorov equation.

Residual (negative strong residual, tested with phi_i):

    b_i = sum_q [ -(u - u_old)/dt phi_i
                  + theta     ( -(D grad phi_i).grad u     + alpha u (1 - u) phi_i         + f_new phi_i )
                  + (1-theta) ( -(D grad phi_i).grad u_old + alpha u_old (1 - u_old) phi_i + f_old phi_i ) ] JxW

Jacobian A = -db/du, so the Newton update is u <- u + delta with A delta = b:

    A_ij = sum_q [ phi_i phi_j / dt + theta (D grad phi_i).grad phi_j
                   - theta alpha (1 - 2u) phi_i phi_j ] JxW

All arrays carry a leading cell axis; nothing here touches global state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from core.types import FloatArray


@dataclass(frozen=True, slots=True)
class StepCoefficients:
    dt: float
    alpha: float
    theta: float = 1.0

    def __post_init__(self) -> None:
        if not self.dt > 0.0:
            raise ValueError(f"dt must be > 0, got {self.dt}")
        if not 0.0 <= self.theta <= 1.0:
            raise ValueError(f"theta must be in [0, 1], got {self.theta}")


@dataclass(frozen=True, slots=True)
class ElementSamples:
    """Quadrature-point data for a batch of cells."""

    phi: FloatArray  # (n_q, n_loc)
    grad_phi: FloatArray  # (n_c, n_q, n_loc, 3)
    JxW: FloatArray  # (n_c, n_q)
    u: FloatArray  # (n_c, n_q)
    grad_u: FloatArray  # (n_c, n_q, 3)
    u_old: FloatArray  # (n_c, n_q)
    grad_u_old: FloatArray  # (n_c, n_q, 3)
    D: FloatArray  # (n_c, n_q, 3, 3)
    f_new: FloatArray  # (n_c, n_q)
    f_old: FloatArray  # (n_c, n_q)


def _test_against_phi(samples: ElementSamples, values: FloatArray) -> FloatArray:
    return np.einsum("cq,qi,cq->ci", values, samples.phi, samples.JxW)


def _test_against_grad(samples: ElementSamples, grad_u: FloatArray) -> FloatArray:
    """sum_q (D grad phi_i) . grad_u JxW."""
    flux = np.einsum("cqnm,cqn->cqm", samples.D, grad_u)
    return np.einsum("cqim,cqm,cq->ci", samples.grad_phi, flux, samples.JxW)


def residual_contributions(samples: ElementSamples, coeffs: StepCoefficients) -> Dict[str, FloatArray]:
    """Split b_local into time, diffusion, reaction and forcing parts, each (n_c, n_loc)."""
    th = float(coeffs.theta)
    alpha = float(coeffs.alpha)
    u, u_old = samples.u, samples.u_old

    time = -_test_against_phi(samples, (u - u_old) / coeffs.dt)

    diffusion = -th * _test_against_grad(samples, samples.grad_u)
    reaction = th * _test_against_phi(samples, alpha * u * (1.0 - u))
    forcing = th * _test_against_phi(samples, samples.f_new)
    if th < 1.0:
        diffusion = diffusion - (1.0 - th) * _test_against_grad(samples, samples.grad_u_old)
        reaction = reaction + (1.0 - th) * _test_against_phi(samples, alpha * u_old * (1.0 - u_old))
        forcing = forcing + (1.0 - th) * _test_against_phi(samples, samples.f_old)

    return {"time": time, "diffusion": diffusion, "reaction": reaction, "forcing": forcing}


def assemble_element(samples: ElementSamples, coeffs: StepCoefficients) -> Tuple[FloatArray, FloatArray]:
    """Return (A_local (n_c, n_loc, n_loc), b_local (n_c, n_loc))."""
    th = float(coeffs.theta)
    phi, JxW = samples.phi, samples.JxW

    mass = np.einsum("qi,qj,cq->cij", phi, phi, JxW) / coeffs.dt
    stiff = np.einsum("cqim,cqnm,cqjn,cq->cij", samples.grad_phi, samples.D, samples.grad_phi, JxW)
    react = np.einsum("qi,cq,qj,cq->cij", phi, 1.0 - 2.0 * samples.u, phi, JxW)
    A_local = mass + th * stiff - th * coeffs.alpha * react

    parts = residual_contributions(samples, coeffs)
    b_local = parts["time"] + parts["diffusion"] + parts["reaction"] + parts["forcing"]
    return A_local, b_local
