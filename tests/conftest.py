import numpy as np
import pytest

from particle_sampler import ParticleSampler, SamplerSettings
from special_functions import SpecialFunctions
from wavefunction import WaveFunctionEvaluator


@pytest.fixture
def special():
    return SpecialFunctions()


@pytest.fixture
def evaluator(special):
    return WaveFunctionEvaluator(special=special)


@pytest.fixture
def small_settings():
    """Low-resolution tables and small particle bounds"""
    return SamplerSettings(
        min_particle_count=50,
        max_particle_count=20000,
        max_total_particles=40000,
        radius_resolution=400,
        theta_resolution=200,
        phi_resolution=200,
        scale_factor=1.0,
    )


@pytest.fixture
def sampler(small_settings):
    return ParticleSampler(settings=small_settings, rng=np.random.default_rng(1234))
