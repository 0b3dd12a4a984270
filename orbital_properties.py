"""
Analytic properties of hydrogen-like orbitals: energies, expectation values,
radial nodes and a Monte Carlo normalization check. Everything here works in
atomic units (a0 = 1).
"""

import numpy as np
from scipy.special import genlaguerre as scipy_genlaguerre

from logging_config import get_logger
from wavefunction import ORBITAL_LABELS, WaveFunctionEvaluator, require_valid_state

logger = get_logger(__name__)

HARTREE_TO_EV = 27.211386245988


def orbital_label(n, l):
    """Spectroscopic label, e.g. (3, 2) -> '3d'"""
    return f"{n}{ORBITAL_LABELS.get(l, '?')}"


def calculate_energy(n, Z=1):
    """Energy eigenvalue in Hartree and eV"""
    E_hartree = -Z**2 / (2 * n**2)
    E_eV = E_hartree * HARTREE_TO_EV
    return E_hartree, E_eV


def calculate_expectation_values(n, l, Z=1):
    """
    Expectation values <r>, <r²> and <1/r> in units of a0

    Returns analytical values using standard formulas
    """
    r_mean = (1.0 / (2 * Z)) * (3 * n**2 - l * (l + 1))
    r2_mean = (n**2 / (2 * Z**2)) * (5 * n**2 + 1 - 3 * l * (l + 1))
    r_inv_mean = Z / n**2

    return {
        '<r>': r_mean,
        '<r²>': r2_mean,
        '<1/r>': r_inv_mean
    }


def find_radial_nodes(n, l, Z=1):
    """
    Radial node positions in units of a0, from the roots of L_{n-l-1}^{2l+1}

    Returns:
    --------
    nodes : ndarray
        Sorted positive node radii; empty when n - l - 1 == 0
    """
    require_valid_state(n, l, 0)
    n_nodes = n - l - 1
    if n_nodes == 0:
        return np.array([])

    poly = scipy_genlaguerre(n_nodes, 2 * l + 1)
    rho_nodes = np.real(poly.roots)
    r_nodes = rho_nodes * n / (2.0 * Z)
    return np.sort(r_nodes[r_nodes > 0])


def check_normalization(n, l, m, Z=1, n_samples=100000, rng=None):
    """
    Monte Carlo estimate of the integral of |psi|² over a cube enclosing the orbital

    Returns:
    --------
    integral : float
        Should be close to 1.0 for a correctly normalized wave function
    """
    require_valid_state(n, l, m)
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    r_max = n * (n + 20) / Z

    logger.info("Checking normalization of %s with %d Monte Carlo samples", orbital_label(n, l), n_samples)

    x, y, z = rng.uniform(-r_max, r_max, (3, n_samples))

    R = np.sqrt(x**2 + y**2 + z**2)
    R_safe = np.where(R == 0, 1e-12, R)
    Theta = np.arccos(np.clip(z / R_safe, -1.0, 1.0))
    Phi = np.arctan2(y, x)

    evaluator = WaveFunctionEvaluator(bohr_radius=1.0, atomic_number=Z)
    prob_density = evaluator.probability_density(n, l, m, R, Theta, Phi).value

    volume = (2 * r_max)**3
    return float(volume * np.mean(prob_density))


def describe_orbital(n, l, m, Z=1):
    """Orbital summary used by the API server and the interactive toolkit"""
    state = require_valid_state(n, l, m)
    E_hartree, E_eV = calculate_energy(n, Z)
    nodes = find_radial_nodes(n, l, Z)

    return {
        'n': state.n, 'l': state.l, 'm': state.m, 'Z': Z,
        'label': state.label,
        'energy_hartree': E_hartree,
        'energy_ev': E_eV,
        'nodes_radial': n - l - 1,
        'nodes_angular': l,
        'nodes_total': n - 1,
        'node_positions': nodes.tolist(),
        'expectation_values': calculate_expectation_values(n, l, Z),
    }
