"""
CDF particle sampler

Draws electron positions from P(r, theta, phi) ~ r²|R_nl(r)|² |Y_lm(theta, phi)|²
by treating the radius, polar angle and azimuth as three independent
one-dimensional distributions. Each one is tabulated on a fixed grid, turned
into a cumulative table and inverted with a binary search. All particles of an
orbital share the same three tables, so a batch costs O(resolution) to set up
and O(count log resolution) to draw.
"""

import math
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, NamedTuple

import numpy as np
from tqdm import tqdm

from logging_config import get_logger
from wavefunction import (
    BOHR_RADIUS, ORBITAL_LABELS, ElectronCloudError, InvalidQuantumState,
    QuantumState, WaveFunctionEvaluator, require_valid_state, validate_angular_numbers,
)

logger = get_logger(__name__)

TWO_PI = 2.0 * math.pi

DEFAULT_PARTICLE_COUNT = 100000

QUALITY_PRESETS = {
    'Low':    {'radius_resolution': 250,  'theta_resolution': 125,  'phi_resolution': 125},
    'Medium': {'radius_resolution': 1000, 'theta_resolution': 500,  'phi_resolution': 500},
    'High':   {'radius_resolution': 4000, 'theta_resolution': 2000, 'phi_resolution': 2000},
    'Ultra':  {'radius_resolution': 8000, 'theta_resolution': 4000, 'phi_resolution': 4000},
}


class GenerationCancelled(ElectronCloudError):
    """A cancel event was set before every orbital was generated"""


@dataclass(frozen=True)
class SamplerSettings:
    """
    Tunables of the sampler. Defaults reproduce the interactive viewer;
    lower resolutions and tighter particle bounds suit quick previews.
    """
    bohr_radius: float = BOHR_RADIUS
    scale_factor: float = 2.0
    min_particle_count: int = 5000
    max_particle_count: int = 1000000
    max_total_particles: int = 2000000
    radius_resolution: int = 1000
    theta_resolution: int = 500
    phi_resolution: int = 500
    pilot_size: int = 100
    min_radius_factor: float = 0.01   # r_min = factor * a0
    max_radius_factor: float = 3.0    # r_max = factor * n² * a0
    theta_epsilon: float = 0.001
    empty_orbital_fraction: float = 0.3
    max_n: int = 7                    # highest principal quantum number sampled

    def __post_init__(self):
        if self.min_particle_count < 1:
            raise ValueError(f"min_particle_count must be >= 1, got {self.min_particle_count}")
        if self.max_particle_count < self.min_particle_count:
            raise ValueError(
                f"max_particle_count ({self.max_particle_count}) is below "
                f"min_particle_count ({self.min_particle_count})"
            )
        for name in ('radius_resolution', 'theta_resolution', 'phi_resolution'):
            if getattr(self, name) < 2:
                raise ValueError(f"{name} must be at least 2, got {getattr(self, name)}")
        if self.pilot_size < 0:
            raise ValueError(f"pilot_size must be >= 0, got {self.pilot_size}")
        if not 0.0 < self.min_radius_factor < self.max_radius_factor:
            raise ValueError("radius factors must satisfy 0 < min_radius_factor < max_radius_factor")
        if not 0.0 <= self.theta_epsilon < math.pi / 2:
            raise ValueError(f"theta_epsilon must lie in [0, pi/2), got {self.theta_epsilon}")
        if self.max_n < 1:
            raise ValueError(f"max_n must be >= 1, got {self.max_n}")

    @classmethod
    def from_quality(cls, name, **overrides):
        """Settings for one of QUALITY_PRESETS, with individual fields overridden"""
        try:
            preset = QUALITY_PRESETS[name]
        except KeyError:
            raise ValueError(
                f"Unknown quality preset {name!r}; choose one of {', '.join(QUALITY_PRESETS)}"
            ) from None
        return cls(**{**preset, **overrides})

    def clamp_count(self, count):
        return max(self.min_particle_count, min(int(count), self.max_particle_count))


class CDFTable:
    """
    Normalized cumulative distribution over a fixed grid of one variable.

    The grid and cumulative arrays are read-only once built, so one table can
    be shared between threads and between calls. When the weights sum to zero
    or to a non-finite value the table is marked degenerate and every draw
    returns ``fallback`` (or a uniform value within ``bounds`` when
    ``fallback`` is None).
    """

    def __init__(self, name, grid, weights, fallback=None, bounds=(0.0, 1.0)):
        self.name = name
        self.fallback = fallback
        self.bounds = bounds
        self.grid = np.array(grid, dtype=np.float64)

        cumulative = np.cumsum(np.asarray(weights, dtype=np.float64))
        total = float(cumulative[-1]) if cumulative.size else 0.0
        self.degenerate = not (math.isfinite(total) and total > 0.0)
        if self.degenerate:
            logger.warning("Invalid CDF sum for %s sampling: %r; using fallback", name, total)
            self.cdf = np.zeros_like(cumulative)
        else:
            self.cdf = cumulative / total

        self.grid.flags.writeable = False
        self.cdf.flags.writeable = False

    def __len__(self):
        return self.grid.size

    def sample(self, rng, size=None):
        """Grid values for ``size`` uniform draws: the first grid point whose cdf >= u"""
        if size is None:
            return float(self.sample(rng, 1)[0])

        if self.degenerate:
            if self.fallback is None:
                low, high = self.bounds
                return rng.uniform(low, high, size)
            return np.full(size, self.fallback, dtype=np.float64)

        draws = rng.random(size)
        index = np.searchsorted(self.cdf, draws, side='left')
        return self.grid[np.minimum(index, self.grid.size - 1)]


class CDFCache:
    """
    Built tables keyed by kind, quantum numbers and grid parameters.

    Holds at most ``max_size`` tables; the least recently used one is evicted
    when a new table would exceed it. ``max_size=None`` keeps everything.
    """
    def __init__(self, max_size=64):
        if max_size is not None and max_size < 1:
            raise ValueError(f"max_size must be >= 1 or None, got {max_size}")
        self.max_size = max_size
        self.tables = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self):
        return len(self.tables)

    def __contains__(self, key):
        return key in self.tables

    def get_or_build(self, key, builder):
        with self._lock:
            table = self.tables.get(key)
            if table is not None:
                self.tables.move_to_end(key)
                return table

        table = builder()
        with self._lock:
            self.tables[key] = table
            self.tables.move_to_end(key)
            if self.max_size is not None:
                while len(self.tables) > self.max_size:
                    evicted, _ = self.tables.popitem(last=False)
                    logger.debug("Evicted %s table from cache", evicted[0])
        return table

    def clear(self):
        """Clear cache to free memory"""
        with self._lock:
            self.tables = OrderedDict()


class ParticleSample(NamedTuple):
    x: float
    y: float
    z: float
    weight: float

    @property
    def position(self):
        return (self.x, self.y, self.z)


@dataclass
class ParticleCloud:
    """
    Particles of one orbital, stored column-wise.

    positions has shape (count, 3) and is already multiplied by the scale
    factor; weights has shape (count,) and holds |psi|² relative to the pilot
    estimate of the maximum density, clipped to [0, 1].
    """
    state: QuantumState
    positions: np.ndarray
    weights: np.ndarray
    max_density: float

    def __len__(self):
        return len(self.weights)

    def __iter__(self):
        for (x, y, z), weight in zip(self.positions.tolist(), self.weights.tolist()):
            yield ParticleSample(x, y, z, weight)

    def to_list(self):
        return [
            {'position': {'x': p.x, 'y': p.y, 'z': p.z}, 'weight': p.weight}
            for p in self
        ]


@dataclass(frozen=True)
class Orbital:
    """One (n, l, m) state with its occupancy, as produced by the Aufbau filling"""
    n: int
    l: int
    m: int
    electrons: int = 0
    visible: bool = True

    @property
    def designation(self):
        return f"{self.n}{ORBITAL_LABELS.get(self.l, '?')}"

    @property
    def key(self):
        return f"{self.n}_{self.l}_{self.m}"


@dataclass
class AtomCloud:
    """Clouds of every generated orbital plus the orbitals that failed"""
    clouds: Dict[str, ParticleCloud] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def total_particles(self):
        return sum(len(cloud) for cloud in self.clouds.values())


def spherical_to_cartesian(r, theta, phi):
    """Stack (x, y, z) columns for spherical coordinates"""
    sin_theta = np.sin(theta)
    return np.column_stack((
        r * sin_theta * np.cos(phi),
        r * sin_theta * np.sin(phi),
        r * np.cos(theta),
    ))


def distribute_particle_budget(orbitals, total_count, settings):
    """
    Split a particle budget evenly between the visible orbitals.

    The budget is capped at settings.max_total_particles. Empty orbitals get
    settings.empty_orbital_fraction of a share so they render fainter, and
    every share is clamped to the per-orbital bounds.
    """
    visible = [orbital for orbital in orbitals if orbital.visible]
    if not visible:
        return {}

    total = min(int(total_count), settings.max_total_particles)
    share = total // len(visible)

    counts = {}
    for orbital in visible:
        count = share if orbital.electrons > 0 else int(share * settings.empty_orbital_fraction)
        counts[orbital.key] = settings.clamp_count(count)
    return counts


class ParticleSampler:
    """
    Generates particle positions for orbitals using CDF sampling.

    Parameters:
    -----------
    evaluator : WaveFunctionEvaluator, optional
        Defaults to a hydrogen (Z = 1) evaluator using settings.bohr_radius.
    settings : SamplerSettings, optional
    rng : numpy.random.Generator or int, optional
        Source of randomness; an int seeds a new generator. Unseeded by default.
    cache : CDFCache, optional
        When given, tables are reused across calls with the same quantum numbers.
    """

    def __init__(self, evaluator=None, settings=None, rng=None, cache=None):
        self.settings = settings if settings is not None else SamplerSettings()
        self.evaluator = (evaluator if evaluator is not None
                          else WaveFunctionEvaluator(bohr_radius=self.settings.bohr_radius))
        # radius grids are laid out in settings.bohr_radius units
        if not math.isclose(self.evaluator.bohr_radius, self.settings.bohr_radius):
            raise ValueError(
                f"Evaluator bohr_radius {self.evaluator.bohr_radius} does not match "
                f"settings.bohr_radius {self.settings.bohr_radius}"
            )
        self.rng = self._generator(rng)
        self.cache = cache

    def require_state(self, n, l, m):
        """QuantumState for (n, l, m) within settings.max_n, or InvalidQuantumState"""
        return require_valid_state(n, l, m, max_n=self.settings.max_n)

    @staticmethod
    def _generator(rng):
        if isinstance(rng, np.random.Generator):
            return rng
        return np.random.default_rng(rng)

    def _cached(self, key, builder):
        if self.cache is None:
            return builder()
        return self.cache.get_or_build(key, builder)

    def radius_range(self, n):
        s = self.settings
        return s.min_radius_factor * s.bohr_radius, s.max_radius_factor * n * n * s.bohr_radius

    def radius_table(self, n, l):
        """Cumulative table of r²R_nl(r)² on [0.01 a0, 3 n² a0]"""
        self.require_state(n, l, 0)
        resolution = self.settings.radius_resolution
        r_min, r_max = self.radius_range(n)
        evaluator = self.evaluator

        def build():
            grid = r_min + np.arange(resolution) / resolution * (r_max - r_min)
            R = evaluator.radial_wave_function(n, l, grid).value
            return CDFTable('radius', grid, grid**2 * R**2,
                            fallback=0.5 * (r_min + r_max), bounds=(r_min, r_max))

        key = ('radius', n, l, resolution, r_min, r_max, evaluator.atomic_number, evaluator.bohr_radius)
        return self._cached(key, build)

    def theta_table(self, l, m):
        """Cumulative table of P_l^|m|(cos theta)² sin(theta) on [eps, pi - eps]"""
        problem = validate_angular_numbers(l, m)
        if problem is not None:
            raise InvalidQuantumState(problem)
        resolution = self.settings.theta_resolution
        eps = self.settings.theta_epsilon
        m_abs = abs(m)

        def build():
            grid = eps + np.arange(resolution) / resolution * (math.pi - 2 * eps)
            legendre = self.evaluator.special.associated_legendre(l, m_abs, np.cos(grid)).value
            # sin(theta) is the Jacobian of the solid-angle element
            return CDFTable('theta', grid, legendre**2 * np.sin(grid),
                            fallback=math.pi / 2, bounds=(eps, math.pi - eps))

        return self._cached(('theta', l, m_abs, resolution, eps), build)

    def phi_table(self, m):
        """Cumulative table of cos²(m phi) (m > 0) or sin²(|m| phi) (m < 0); None for m = 0"""
        if m == 0:
            return None
        resolution = self.settings.phi_resolution

        def build():
            grid = np.arange(resolution) / resolution * TWO_PI
            if m > 0:
                weights = np.cos(m * grid)**2
            else:
                weights = np.sin(abs(m) * grid)**2
            return CDFTable('phi', grid, weights, fallback=None, bounds=(0.0, TWO_PI))

        return self._cached(('phi', m, resolution), build)

    def sample_radius(self, n, l, size=None, rng=None):
        return self.radius_table(n, l).sample(self._pick(rng), size)

    def sample_theta(self, l, m, size=None, rng=None):
        return self.theta_table(l, m).sample(self._pick(rng), size)

    def sample_phi(self, m, size=None, rng=None):
        rng = self._pick(rng)
        table = self.phi_table(m)
        if table is None:
            # No azimuthal structure: phi is uniform
            return rng.uniform(0.0, TWO_PI, size)
        return table.sample(rng, size)

    def _pick(self, rng):
        return self.rng if rng is None else self._generator(rng)

    def _draw(self, tables, size, rng):
        radius, theta, phi = tables
        r = radius.sample(rng, size)
        t = theta.sample(rng, size)
        p = rng.uniform(0.0, TWO_PI, size) if phi is None else phi.sample(rng, size)
        return r, t, p

    def generate_orbital_particles(self, n, l, m, count, rng=None):
        """
        Sample particles for orbital (n, l, m).

        Raises InvalidQuantumState before drawing anything when (n, l, m) is
        invalid. Otherwise returns exactly ``count`` particles after clamping
        the count to the configured bounds.
        """
        state = self.require_state(n, l, m)
        rng = self._pick(rng)

        requested = count
        count = self.settings.clamp_count(count)
        if count != requested:
            logger.info("Particle count %s clamped to %d for orbital %s", requested, count, state.label)

        logger.info("Generating %d particles for orbital %s (%d,%d,%d)", count, state.label, n, l, m)

        tables = (self.radius_table(n, l), self.theta_table(l, m), self.phi_table(m))

        # Pilot draws estimate the maximum density used to normalize weights
        pilot_size = min(self.settings.pilot_size, count)
        max_density = 0.0
        if pilot_size > 0:
            r, theta, phi = self._draw(tables, pilot_size, rng)
            pilot = self.evaluator.probability_density(n, l, m, r, theta, phi).value
            max_density = float(np.max(pilot))

        r, theta, phi = self._draw(tables, count, rng)
        density = self.evaluator.probability_density(n, l, m, r, theta, phi).value

        if max_density > 0.0:
            weights = np.clip(density / max_density, 0.0, 1.0)
        else:
            logger.warning("Pilot maximum density is zero for orbital %s; weights set to 0", state.label)
            weights = np.zeros(count, dtype=np.float64)

        positions = spherical_to_cartesian(r * self.settings.scale_factor, theta, phi)

        logger.info("Generated %d particles for orbital %s", count, state.label)
        return ParticleCloud(state, positions, weights, max_density)

    def _generate_one(self, orbital, seed, counts, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled(f"Generation cancelled before orbital {orbital.designation} ({orbital.key})")
        try:
            cloud = self.generate_orbital_particles(
                orbital.n, orbital.l, orbital.m, counts[orbital.key],
                rng=np.random.default_rng(seed),
            )
        except InvalidQuantumState as e:
            return None, f"generation failed: {e}"
        except Exception as e:
            logger.exception("Generation failed for orbital %s", orbital.key)
            return None, f"generation failed: {e}"
        return cloud, None

    def generate_atom_particles(self, orbitals, total_count, cancel_event=None,
                                workers=1, rng=None, progress=False):
        """
        Generate every visible orbital of an atom.

        ``cancel_event`` is any object with ``is_set()`` (e.g. threading.Event).
        It is checked before each orbital starts and raises GenerationCancelled.
        A failing orbital is recorded in AtomCloud.failures and the batch goes
        on. Each orbital draws from its own generator seeded from ``rng``, so
        results do not depend on ``workers``.
        """
        rng = self._pick(rng)
        orbitals = list(orbitals)
        counts = distribute_particle_budget(orbitals, total_count, self.settings)
        visible = [orbital for orbital in orbitals if orbital.visible]
        seeds = rng.integers(0, 2**63 - 1, size=len(visible))
        jobs = list(zip(visible, seeds))

        result = AtomCloud()
        with tqdm(total=len(jobs), desc="Generating orbitals", disable=not progress) as pbar:
            if workers <= 1:
                outcomes = (self._generate_one(orbital, seed, counts, cancel_event) for orbital, seed in jobs)
                for (orbital, _), (cloud, error) in zip(jobs, outcomes):
                    self._collect(result, orbital, cloud, error)
                    pbar.update(1)
            else:
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = [pool.submit(self._generate_one, orbital, seed, counts, cancel_event)
                               for orbital, seed in jobs]
                    try:
                        for (orbital, _), future in zip(jobs, futures):
                            cloud, error = future.result()
                            self._collect(result, orbital, cloud, error)
                            pbar.update(1)
                    except GenerationCancelled:
                        for future in futures:
                            future.cancel()
                        raise

        logger.info("Generated %d particles across %d orbitals (%d failed)",
                    result.total_particles, len(result.clouds), len(result.failures))
        return result

    @staticmethod
    def _collect(result, orbital, cloud, error):
        if error is None:
            result.clouds[orbital.key] = cloud
        else:
            logger.error("Orbital %s (%s): %s", orbital.designation, orbital.key, error)
            result.failures[orbital.key] = error


def generate_orbital_particles(n, l, m, count, settings=None, rng=None):
    """Sample ``count`` (clamped) particles for (n, l, m) with a fresh sampler"""
    return ParticleSampler(settings=settings, rng=rng).generate_orbital_particles(n, l, m, count)


def generate_atom_particles(orbitals, total_count, settings=None, rng=None,
                            cancel_event=None, workers=1, progress=False):
    """Generate every visible orbital with a fresh sampler sharing one table cache"""
    sampler = ParticleSampler(settings=settings, rng=rng, cache=CDFCache())
    return sampler.generate_atom_particles(orbitals, total_count, cancel_event=cancel_event,
                                           workers=workers, progress=progress)
