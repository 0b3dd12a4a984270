"""
Special functions for hydrogen-like wavefunctions.

Factorials, associated Laguerre polynomials (radial part), associated Legendre
polynomials and real spherical harmonics (angular part). All polynomial
evaluators accept scalars or numpy arrays and return an ``Evaluation``, so a
caller can tell a legitimate zero from a zero produced by a failed computation.
"""

import math
from enum import Enum
from numbers import Integral
from typing import NamedTuple, Optional, Union

import numpy as np

from logging_config import get_logger

logger = get_logger(__name__)

SQRT2 = math.sqrt(2.0)


class Failure(Enum):
    """Reason an evaluation fell back to zero."""
    INVALID_DEGREE = "invalid degree"
    ORDER_EXCEEDS_DEGREE = "order exceeds degree"
    INVALID_QUANTUM_NUMBERS = "invalid quantum numbers"
    NON_FINITE = "non-finite result"


class Evaluation(NamedTuple):
    """Numeric value of an evaluator plus the failure that produced it, if any."""
    value: Union[float, np.ndarray]
    failure: Optional[Failure] = None

    @property
    def ok(self):
        return self.failure is None

    def __float__(self):
        return float(self.value)


def zeros_like_input(*arrays):
    """0.0 for scalar inputs, otherwise a float64 zero array of the broadcast shape."""
    shape = np.broadcast_shapes(*(np.shape(a) for a in arrays))
    if shape == ():
        return 0.0
    return np.zeros(shape, dtype=np.float64)


def fallback(failure, message, *args, inputs=(0.0,)):
    """Log ``message`` and return a zero Evaluation shaped like ``inputs``."""
    logger.warning(message, *args)
    return Evaluation(zeros_like_input(*inputs), failure)


def finite_or_zero(values, context):
    """Zero every non-finite entry of ``values``; flag the evaluation if any were found."""
    if np.ndim(values) == 0:
        value = float(values)
        if math.isfinite(value):
            return Evaluation(value)
        logger.warning("Non-finite %s value %r clamped to 0", context, value)
        return Evaluation(0.0, Failure.NON_FINITE)

    values = np.asarray(values, dtype=np.float64)
    bad = ~np.isfinite(values)
    if bad.any():
        logger.warning("%d non-finite %s value(s) clamped to 0", int(bad.sum()), context)
        return Evaluation(np.where(bad, 0.0, values), Failure.NON_FINITE)
    return Evaluation(values)


class FactorialCache:
    """Memoized exact factorials, keyed by argument"""
    def __init__(self):
        self.cache = {0: 1, 1: 1}

    def __contains__(self, n):
        return n in self.cache

    def __len__(self):
        return len(self.cache)

    def get(self, n):
        value = self.cache.get(n)
        if value is None:
            value = math.factorial(n)
            self.cache[n] = value
        return value

    def clear(self):
        """Drop everything except 0! and 1!"""
        self.cache = {0: 1, 1: 1}


class SpecialFunctions:
    """
    Orthogonal-polynomial evaluators used by the wave function.

    Parameters:
    -----------
    factorial_cache : FactorialCache, optional
        Cache of exact factorials. Pass the same object to several instances
        to share it; by default every instance owns a fresh one.
    """

    def __init__(self, factorial_cache=None):
        self.factorial_cache = factorial_cache if factorial_cache is not None else FactorialCache()

    def factorial(self, n):
        """Exact n! as a Python int; 0 for negative or non-integral n"""
        if isinstance(n, bool) or not isinstance(n, Integral):
            logger.warning("factorial of non-integral argument n=%r, returning 0", n)
            return 0
        if n < 0:
            logger.warning("factorial of negative argument n=%d, returning 0", n)
            return 0
        return self.factorial_cache.get(int(n))

    def log_factorial(self, n):
        """ln(n!) summed term by term so it stays finite where n! overflows a double"""
        if n < 0:
            return -math.inf
        if n in (0, 1):
            return 0.0
        return math.fsum(math.log(i) for i in range(2, n + 1))

    def associated_laguerre(self, n, k, x):
        """
        Generalized Laguerre polynomial L_n^k(x) via the three-term recurrence

            L_0 = 1,  L_1 = 1 + k - x,
            L_i = [(2i - 1 + k - x) L_{i-1} - (i - 1 + k) L_{i-2}] / i
        """
        if n < 0:
            return fallback(Failure.INVALID_DEGREE,
                            "Laguerre degree must be >= 0, got n=%d", n, inputs=(x,))

        x = np.asarray(x, dtype=np.float64)
        with np.errstate(over='ignore', invalid='ignore'):
            if n == 0:
                result = np.ones_like(x)
            else:
                previous, result = np.ones_like(x), 1.0 + k - x
                for i in range(2, n + 1):
                    previous, result = result, ((2 * i - 1 + k - x) * result - (i - 1 + k) * previous) / i

        return finite_or_zero(result, "Laguerre")

    def associated_legendre(self, l, m, x):
        """
        Associated Legendre function P_l^|m|(x), Condon-Shortley phase included.

        Starts from P_m^m, steps to P_{m+1}^m and recurs upward in degree.
        """
        if l < 0:
            return fallback(Failure.INVALID_DEGREE,
                            "Legendre degree must be >= 0, got l=%d", l, inputs=(x,))
        m_abs = abs(m)
        if m_abs > l:
            return fallback(Failure.ORDER_EXCEEDS_DEGREE,
                            "Legendre order |m|=%d exceeds degree l=%d", m_abs, l, inputs=(x,))

        x = np.asarray(x, dtype=np.float64)
        with np.errstate(over='ignore', invalid='ignore'):
            pmm = np.ones_like(x)
            if m_abs > 0:
                somx2 = np.sqrt((1.0 - x) * (1.0 + x))
                fact = 1.0
                for _ in range(m_abs):
                    pmm = -fact * somx2 * pmm
                    fact += 2.0

            if l == m_abs:
                result = pmm
            else:
                pmmp1 = x * (2 * m_abs + 1) * pmm
                for ll in range(m_abs + 2, l + 1):
                    pll = (x * (2 * ll - 1) * pmmp1 - (ll + m_abs - 1) * pmm) / (ll - m_abs)
                    pmm, pmmp1 = pmmp1, pll
                result = pmmp1

        return finite_or_zero(result, "Legendre")

    def spherical_harmonic_real(self, l, m, theta, phi):
        """
        Real spherical harmonic Y_lm(theta, phi)

        Parameters:
        -----------
        l : int
            Angular momentum quantum number
        m : int
            Magnetic quantum number (-l <= m <= l)
        theta : array_like
            Polar angle [0, pi]
        phi : array_like
            Azimuthal angle [0, 2pi]

        Returns:
        --------
        Evaluation
            norm * P_l^|m|(cos theta) times 1 (m = 0), sqrt(2) cos(m phi) (m > 0)
            or sqrt(2) sin(|m| phi) (m < 0). The real form gives the px/py/pz
            style lobes instead of complex ring currents.
        """
        if l < 0:
            return fallback(Failure.INVALID_DEGREE,
                            "Spherical harmonic degree must be >= 0, got l=%d", l, inputs=(theta, phi))
        m_abs = abs(m)
        if m_abs > l:
            return fallback(Failure.ORDER_EXCEEDS_DEGREE,
                            "Spherical harmonic order |m|=%d exceeds degree l=%d", m_abs, l,
                            inputs=(theta, phi))

        theta = np.asarray(theta, dtype=np.float64)
        phi = np.asarray(phi, dtype=np.float64)

        # int / int is exact-rounded even when both factorials exceed float range
        ratio = self.factorial(l - m_abs) / self.factorial(l + m_abs)
        norm = math.sqrt((2 * l + 1) / (4 * math.pi) * ratio)

        legendre = self.associated_legendre(l, m_abs, np.cos(theta))

        if m == 0:
            angular = np.ones_like(phi)
        elif m > 0:
            angular = SQRT2 * np.cos(m * phi)
        else:
            angular = SQRT2 * np.sin(m_abs * phi)

        with np.errstate(over='ignore', invalid='ignore'):
            result = finite_or_zero(norm * legendre.value * angular, "spherical harmonic")
        return Evaluation(result.value, result.failure or legendre.failure)
