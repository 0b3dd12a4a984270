"""
Hydrogen-like wave functions

psi_nlm(r, theta, phi) = R_nl(r) * Y_lm(theta, phi), built on the special
function library. The angular part is the real spherical harmonic so p, d and f
lobes line up with the Cartesian axes.

Distances are in Angstrom; the Bohr radius is injectable for tests and for the
atomic-unit helpers in orbital_properties.
"""

import math
from dataclasses import dataclass
from numbers import Integral

import numpy as np

from logging_config import get_logger
from special_functions import Evaluation, Failure, SpecialFunctions, finite_or_zero, zeros_like_input

logger = get_logger(__name__)

BOHR_RADIUS = 0.529  # Angstrom

ORBITAL_LABELS = {0: 's', 1: 'p', 2: 'd', 3: 'f', 4: 'g', 5: 'h', 6: 'i', 7: 'j'}


class ElectronCloudError(Exception):
    """Base class for errors raised by the sampling engine"""


class InvalidQuantumState(ElectronCloudError, ValueError):
    """(n, l, m) violates n >= 1, 0 <= l < n, |m| <= l"""


def _integer_problem(**values):
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, Integral):
            return f"{name}={value!r} must be an integer"
    return None


def validate_angular_numbers(l, m):
    """Return why (l, m) is invalid, or None"""
    problem = _integer_problem(l=l, m=m)
    if problem is not None:
        return problem
    if l < 0:
        return f"Invalid azimuthal quantum number: l={l} must be non-negative"
    if abs(m) > l:
        return f"Invalid magnetic quantum number: m={m} must be in range [{-l}, {l}]"
    return None


def validate_quantum_numbers(n, l, m):
    """Return why (n, l, m) is invalid, or None when it is a valid state"""
    problem = _integer_problem(n=n, l=l, m=m)
    if problem is not None:
        return problem
    if n < 1:
        return f"Invalid principal quantum number: n={n} must be a positive integer"
    if not 0 <= l < n:
        return f"Invalid azimuthal quantum number: l={l} must be in range [0, {n - 1}]"
    return validate_angular_numbers(l, m)


@dataclass(frozen=True)
class QuantumState:
    """Immutable, validated (n, l, m) triple"""
    n: int
    l: int
    m: int = 0

    def __post_init__(self):
        problem = validate_quantum_numbers(self.n, self.l, self.m)
        if problem is not None:
            raise InvalidQuantumState(problem)

    @property
    def label(self):
        return f"{self.n}{ORBITAL_LABELS.get(self.l, '?')}"

    def as_tuple(self):
        return (self.n, self.l, self.m)


def require_valid_state(n, l, m, max_n=None):
    """
    Build a QuantumState from raw numbers or raise InvalidQuantumState.

    ``max_n`` caps the principal quantum number for callers with a
    configured ceiling.
    """
    problem = validate_quantum_numbers(n, l, m)
    if problem is None and max_n is not None and n > max_n:
        problem = f"Principal quantum number n={n} exceeds the configured maximum {max_n}"
    if problem is not None:
        logger.error("Contract violation: %s", problem)
        raise InvalidQuantumState(problem)
    return QuantumState(int(n), int(l), int(m))


class WaveFunctionEvaluator:
    """
    Radial, angular and total wave functions of a hydrogen-like atom.

    Parameters:
    -----------
    special : SpecialFunctions, optional
        Polynomial evaluators; owns the factorial cache.
    bohr_radius : float
        a0 in the length unit used for r (Angstrom by default).
    atomic_number : int
        Z in rho = 2Zr / (n a0). Orbital clouds use Z = 1 so every element is
        drawn with hydrogen-like shapes.

    Every method validates its quantum numbers. A violation is logged and
    returns Evaluation(0, Failure.INVALID_QUANTUM_NUMBERS) without computing
    anything, so one bad orbital cannot abort a batch.
    """

    def __init__(self, special=None, bohr_radius=BOHR_RADIUS, atomic_number=1):
        self.special = special if special is not None else SpecialFunctions()
        self.bohr_radius = bohr_radius
        self.atomic_number = atomic_number

    @staticmethod
    def _rejected(problem, *coordinates):
        logger.error("Contract violation: %s", problem)
        return Evaluation(zeros_like_input(*coordinates), Failure.INVALID_QUANTUM_NUMBERS)

    def radial_wave_function(self, n, l, r):
        """
        R_nl(r) = N exp(-rho/2) rho^l L_{n-l-1}^{2l+1}(rho),  rho = 2Zr / (n a0)

        N is assembled in log space so it stays finite for large n. Returns 0
        for r < 0; at r = 0 returns 1 for s states and 0 otherwise.
        """
        problem = validate_quantum_numbers(n, l, 0)
        if problem is not None:
            return self._rejected(problem, r)

        r = np.asarray(r, dtype=np.float64)
        Z = self.atomic_number
        a0 = self.bohr_radius
        rho = 2.0 * Z * r / (n * a0)

        log_norm = 0.5 * (
            3 * math.log(2.0 * Z / (n * a0))
            + self.special.log_factorial(n - l - 1)
            - math.log(2 * n)
            - self.special.log_factorial(n + l)
        )
        norm = math.exp(log_norm)

        laguerre = self.special.associated_laguerre(n - l - 1, 2 * l + 1, rho)

        with np.errstate(over='ignore', invalid='ignore', under='ignore'):
            values = norm * np.exp(-rho / 2.0) * rho**l * laguerre.value
        values = np.where(r > 0, values, 0.0)
        values = np.where(r == 0, 1.0 if l == 0 else 0.0, values)

        return finite_or_zero(values, "radial wave function")

    def angular_wave_function(self, l, m, theta, phi):
        """Real spherical harmonic Y_lm(theta, phi)"""
        problem = validate_angular_numbers(l, m)
        if problem is not None:
            return self._rejected(problem, theta, phi)
        return self.special.spherical_harmonic_real(l, m, theta, phi)

    def wave_function(self, n, l, m, r, theta, phi):
        """psi_nlm = R_nl(r) * Y_lm(theta, phi); non-finite products are clamped to 0"""
        problem = validate_quantum_numbers(n, l, m)
        if problem is not None:
            return self._rejected(problem, r, theta, phi)

        radial = self.radial_wave_function(n, l, r)
        angular = self.angular_wave_function(l, m, theta, phi)

        with np.errstate(over='ignore', invalid='ignore'):
            result = finite_or_zero(np.multiply(radial.value, angular.value), "wave function")
        return Evaluation(result.value, result.failure or radial.failure or angular.failure)

    def probability_density(self, n, l, m, r, theta, phi):
        """|psi_nlm|^2"""
        psi = self.wave_function(n, l, m, r, theta, phi)
        if psi.failure is Failure.INVALID_QUANTUM_NUMBERS:
            return psi

        with np.errstate(over='ignore', under='ignore'):
            result = finite_or_zero(np.square(psi.value), "probability density")
        return Evaluation(result.value, result.failure or psi.failure)


def radial_wave_function(n, l, r, bohr_radius=BOHR_RADIUS):
    """R_nl(r) as a plain number or array (0 where the evaluation failed)"""
    return WaveFunctionEvaluator(bohr_radius=bohr_radius).radial_wave_function(n, l, r).value


def probability_density(n, l, m, r, theta, phi, bohr_radius=BOHR_RADIUS):
    """|psi_nlm(r, theta, phi)|^2 as a plain number or array"""
    return WaveFunctionEvaluator(bohr_radius=bohr_radius).probability_density(n, l, m, r, theta, phi).value
