import math
import threading

import numpy as np
import pytest

from particle_sampler import (
    AtomCloud, CDFCache, CDFTable, GenerationCancelled, Orbital, ParticleSample,
    ParticleSampler, QUALITY_PRESETS, SamplerSettings, distribute_particle_budget,
    generate_atom_particles, generate_orbital_particles, spherical_to_cartesian,
)
from wavefunction import BOHR_RADIUS, InvalidQuantumState, WaveFunctionEvaluator


class TestSamplerSettings:
    def test_defaults(self):
        settings = SamplerSettings()
        assert settings.radius_resolution == 1000
        assert settings.theta_resolution == 500
        assert settings.phi_resolution == 500
        assert settings.bohr_radius == BOHR_RADIUS
        assert (settings.min_particle_count, settings.max_particle_count) == (5000, 1000000)

    def test_from_quality_with_override(self):
        settings = SamplerSettings.from_quality('Low', scale_factor=1.0)
        assert settings.radius_resolution == QUALITY_PRESETS['Low']['radius_resolution']
        assert settings.scale_factor == 1.0

    def test_unknown_quality(self):
        with pytest.raises(ValueError, match="Unknown quality preset"):
            SamplerSettings.from_quality('Extreme')

    @pytest.mark.parametrize("kwargs", [
        {'min_particle_count': 0},
        {'min_particle_count': 100, 'max_particle_count': 10},
        {'radius_resolution': 1},
        {'pilot_size': -1},
        {'min_radius_factor': 5.0},
        {'max_n': 0},
    ])
    def test_rejects_inconsistent_values(self, kwargs):
        with pytest.raises(ValueError):
            SamplerSettings(**kwargs)

    def test_clamp_count(self, small_settings):
        assert small_settings.clamp_count(10) == 50
        assert small_settings.clamp_count(500) == 500
        assert small_settings.clamp_count(10**9) == 20000


class TestCDFTable:
    def test_binary_search_matches_first_index_at_or_above_draw(self):
        grid = np.arange(6, dtype=float)
        table = CDFTable('test', grid, [0.0, 1.0, 0.0, 2.0, 1.0, 0.0])
        np.testing.assert_allclose(table.cdf, [0.0, 0.25, 0.25, 0.75, 1.0, 1.0])

        draws = np.random.default_rng(5).random(2000)
        expected = np.array([grid[np.argmax(table.cdf >= u)] for u in draws])
        samples = table.sample(np.random.default_rng(5), 2000)
        np.testing.assert_array_equal(samples, expected)

    def test_zero_weight_points_are_never_drawn(self):
        table = CDFTable('test', np.arange(6, dtype=float), [0.0, 1.0, 0.0, 2.0, 1.0, 0.0])
        samples = table.sample(np.random.default_rng(0), 5000)
        assert set(np.unique(samples)) <= {1.0, 3.0, 4.0}

    def test_cdf_is_monotone_and_read_only(self):
        table = CDFTable('test', np.linspace(0, 1, 50), np.random.default_rng(2).random(50))
        assert np.all(np.diff(table.cdf) >= 0.0)
        assert table.cdf[-1] == pytest.approx(1.0)
        with pytest.raises(ValueError):
            table.cdf[0] = 0.5
        with pytest.raises(ValueError):
            table.grid[0] = 0.5

    @pytest.mark.parametrize("weights", [np.zeros(10), np.full(10, np.nan), np.full(10, np.inf)])
    def test_degenerate_sum_uses_fallback(self, weights):
        table = CDFTable('radius', np.linspace(1, 2, 10), weights, fallback=1.5, bounds=(1.0, 2.0))
        assert table.degenerate
        np.testing.assert_array_equal(table.sample(np.random.default_rng(0), 4), 1.5)
        assert table.sample(np.random.default_rng(0)) == 1.5

    def test_degenerate_without_fallback_is_uniform(self):
        table = CDFTable('phi', np.linspace(0, 1, 10), np.zeros(10), bounds=(0.0, 2 * math.pi))
        samples = table.sample(np.random.default_rng(0), 1000)
        assert np.all((samples >= 0.0) & (samples < 2 * math.pi))
        assert len(np.unique(samples)) > 900

    def test_scalar_draw(self):
        table = CDFTable('test', [1.0, 2.0], [0.0, 1.0])
        assert table.sample(np.random.default_rng(0)) == 2.0


class TestTables:
    def test_radius_grid_spans_configured_range(self, sampler, small_settings):
        table = sampler.radius_table(2, 1)
        a0 = small_settings.bohr_radius
        assert len(table) == small_settings.radius_resolution
        assert table.grid[0] == pytest.approx(0.01 * a0)
        assert table.grid[-1] < 3 * 4 * a0
        assert not table.degenerate

    def test_theta_grid_avoids_poles(self, sampler, small_settings):
        table = sampler.theta_table(1, 0)
        eps = small_settings.theta_epsilon
        assert table.grid[0] == pytest.approx(eps)
        assert table.grid[-1] < math.pi - eps

    def test_phi_table_absent_for_m_zero(self, sampler):
        assert sampler.phi_table(0) is None
        assert len(sampler.phi_table(2)) == sampler.settings.phi_resolution

    def test_phi_sampling_follows_real_harmonic(self, sampler):
        # m = 1 ~ cos²(phi): mass concentrates near 0 and pi
        phi = sampler.sample_phi(1, size=20000)
        near_x_axis = np.mean(np.abs(np.cos(phi)) > math.cos(math.pi / 4))
        assert near_x_axis > 0.75
        # m = -1 ~ sin²(phi): mass concentrates near pi/2 and 3pi/2
        phi = sampler.sample_phi(-1, size=20000)
        assert np.mean(np.abs(np.sin(phi)) > math.sin(math.pi / 4)) > 0.75

    def test_uniform_phi_for_m_zero(self, sampler):
        phi = sampler.sample_phi(0, size=20000)
        assert np.all((phi >= 0.0) & (phi < 2 * math.pi))
        counts, _ = np.histogram(phi, bins=4, range=(0, 2 * math.pi))
        assert np.all(np.abs(counts / 20000 - 0.25) < 0.02)

    def test_radius_mean_close_to_expectation(self, small_settings):
        # <r> = 1.5 a0 for 1s; widen the range so the tail beyond 3 a0 is kept
        settings = SamplerSettings(**{**small_settings.__dict__, 'max_radius_factor': 10.0})
        sampler = ParticleSampler(settings=settings, rng=8)
        r = sampler.sample_radius(1, 0, size=20000)
        assert np.mean(r) == pytest.approx(1.5 * BOHR_RADIUS, rel=0.03)

    def test_cache_reuses_tables(self, small_settings):
        cache = CDFCache()
        sampler = ParticleSampler(settings=small_settings, rng=0, cache=cache)
        first = sampler.radius_table(3, 1), sampler.theta_table(1, -1), sampler.phi_table(-1)
        second = sampler.radius_table(3, 1), sampler.theta_table(1, -1), sampler.phi_table(-1)
        assert all(a is b for a, b in zip(first, second))
        assert len(cache) == 3
        cache.clear()
        assert len(cache) == 0

    def test_without_cache_tables_are_rebuilt(self, sampler):
        assert sampler.radius_table(2, 0) is not sampler.radius_table(2, 0)

    def test_cache_evicts_least_recently_used(self, small_settings):
        cache = CDFCache(max_size=2)
        sampler = ParticleSampler(settings=small_settings, rng=0, cache=cache)
        first = sampler.radius_table(1, 0)
        sampler.radius_table(2, 0)
        assert sampler.radius_table(1, 0) is first
        sampler.radius_table(3, 0)
        assert len(cache) == 2
        assert sampler.radius_table(1, 0) is first
        assert sampler.radius_table(2, 0) is not None
        assert len(cache) == 2

    def test_cache_size_must_be_positive(self):
        with pytest.raises(ValueError):
            CDFCache(max_size=0)
        assert CDFCache(max_size=None).max_size is None

    def test_cache_key_includes_nuclear_charge(self, small_settings):
        cache = CDFCache()
        hydrogen = ParticleSampler(settings=small_settings, rng=0, cache=cache)
        helium = ParticleSampler(evaluator=WaveFunctionEvaluator(atomic_number=2),
                                 settings=small_settings, rng=0, cache=cache)
        h_table, he_table = hydrogen.radius_table(1, 0), helium.radius_table(1, 0)
        assert h_table is not he_table
        assert len(cache) == 2
        # a tighter nucleus pulls the 1s density inward
        assert np.searchsorted(he_table.cdf, 0.5) < np.searchsorted(h_table.cdf, 0.5)

    def test_evaluator_bohr_radius_must_match_settings(self, small_settings):
        with pytest.raises(ValueError, match="bohr_radius"):
            ParticleSampler(evaluator=WaveFunctionEvaluator(bohr_radius=1.0), settings=small_settings)

    def test_table_entry_points_validate(self, sampler):
        with pytest.raises(InvalidQuantumState):
            sampler.radius_table(2, 2)
        with pytest.raises(InvalidQuantumState):
            sampler.theta_table(1, 3)


class TestGenerateOrbitalParticles:
    @pytest.mark.parametrize("n,l,m", [(1, 0, 0), (2, 1, -1), (3, 2, 2), (4, 3, -3)])
    def test_count_weights_and_positions(self, sampler, n, l, m):
        cloud = sampler.generate_orbital_particles(n, l, m, 3000)
        assert len(cloud) == 3000
        assert cloud.positions.shape == (3000, 3)
        assert np.all(np.isfinite(cloud.positions))
        assert np.all((cloud.weights >= 0.0) & (cloud.weights <= 1.0))
        assert cloud.max_density > 0.0
        assert cloud.state.as_tuple() == (n, l, m)

    def test_count_below_minimum_is_clamped(self, sampler):
        assert len(sampler.generate_orbital_particles(1, 0, 0, 3)) == 50

    def test_count_above_maximum_is_clamped(self, sampler):
        assert len(sampler.generate_orbital_particles(1, 0, 0, 10**7)) == 20000

    def test_invalid_state_produces_nothing(self, small_settings):
        rng = np.random.default_rng(3)
        before = rng.bit_generator.state
        sampler = ParticleSampler(settings=small_settings, rng=rng)
        with pytest.raises(InvalidQuantumState):
            sampler.generate_orbital_particles(1, 1, 0, 1000)
        assert rng.bit_generator.state == before

    def test_principal_number_above_ceiling_rejected(self, sampler):
        assert len(sampler.generate_orbital_particles(7, 6, 0, 100)) == 100
        with pytest.raises(InvalidQuantumState, match="exceeds the configured maximum 7"):
            sampler.generate_orbital_particles(8, 0, 0, 100)
        with pytest.raises(InvalidQuantumState):
            sampler.radius_table(20000, 0)

    def test_ceiling_is_configurable(self, small_settings):
        settings = SamplerSettings(**{**small_settings.__dict__, 'max_n': 2})
        sampler = ParticleSampler(settings=settings, rng=0)
        with pytest.raises(InvalidQuantumState):
            sampler.generate_orbital_particles(3, 0, 0, 100)

    def test_reproducible_with_seed(self, small_settings):
        a = generate_orbital_particles(3, 1, 1, 2000, settings=small_settings, rng=99)
        b = generate_orbital_particles(3, 1, 1, 2000, settings=small_settings, rng=99)
        np.testing.assert_array_equal(a.positions, b.positions)
        np.testing.assert_array_equal(a.weights, b.weights)

    def test_different_seeds_differ(self, small_settings):
        a = generate_orbital_particles(2, 0, 0, 500, settings=small_settings, rng=1)
        b = generate_orbital_particles(2, 0, 0, 500, settings=small_settings, rng=2)
        assert not np.array_equal(a.positions, b.positions)

    def test_scale_factor_applied(self, small_settings):
        plain = generate_orbital_particles(2, 1, 0, 500, settings=small_settings, rng=7)
        scaled_settings = SamplerSettings(**{**small_settings.__dict__, 'scale_factor': 2.0})
        scaled = generate_orbital_particles(2, 1, 0, 500, settings=scaled_settings, rng=7)
        np.testing.assert_allclose(scaled.positions, 2.0 * plain.positions)
        np.testing.assert_array_equal(scaled.weights, plain.weights)

    def test_iteration_and_list_view(self, sampler):
        cloud = sampler.generate_orbital_particles(2, 1, 1, 60)
        samples = list(cloud)
        assert len(samples) == 60
        assert isinstance(samples[0], ParticleSample)
        assert samples[0].position == tuple(cloud.positions[0])
        as_list = cloud.to_list()
        assert set(as_list[0]) == {'position', 'weight'}
        assert set(as_list[0]['position']) == {'x', 'y', 'z'}

    def test_without_pilot_all_weights_zero(self, small_settings):
        settings = SamplerSettings(**{**small_settings.__dict__, 'pilot_size': 0})
        cloud = generate_orbital_particles(1, 0, 0, 100, settings=settings, rng=0)
        assert cloud.max_density == 0.0
        np.testing.assert_array_equal(cloud.weights, 0.0)


class TestEndToEnd:
    def test_1s_radii_bounded_and_isotropic(self, small_settings):
        cloud = generate_orbital_particles(1, 0, 0, 5000, settings=small_settings, rng=2024)
        radii = np.linalg.norm(cloud.positions, axis=1)
        a0 = BOHR_RADIUS
        assert np.all(radii >= 0.01 * a0 - 1e-12)
        assert np.all(radii <= 3 * a0 + 1e-12)

        cos_theta = cloud.positions[:, 2] / radii
        assert abs(np.mean(cos_theta)) < 0.05
        counts, _ = np.histogram(cos_theta, bins=4, range=(-1.0, 1.0))
        np.testing.assert_allclose(counts / len(cloud), 0.25, atol=0.03)

    def test_2pz_has_nodal_plane(self, small_settings):
        cloud = generate_orbital_particles(2, 1, 0, 5000, settings=small_settings, rng=2024)
        z = cloud.positions[:, 2] / BOHR_RADIUS
        assert np.sum(z > 0) > 2000 and np.sum(z < 0) > 2000

        counts, edges = np.histogram(z, bins=96, range=(-12.0, 12.0))
        center = len(counts) // 2
        trough = counts[center - 1:center + 1].mean()
        assert trough <= 0.05 * counts.max()

    def test_invalid_state_reports_contract_violation(self, small_settings):
        with pytest.raises(InvalidQuantumState, match="l=1"):
            generate_orbital_particles(1, 1, 0, 5000, settings=small_settings)

    def test_requested_counts_clamped_not_rejected(self, small_settings):
        assert len(generate_orbital_particles(1, 0, 0, 1, settings=small_settings, rng=0)) == 50
        assert len(generate_orbital_particles(1, 0, 0, 10**8, settings=small_settings, rng=0)) == 20000


class TestAtomParticles:
    ORBITALS = [
        Orbital(1, 0, 0, electrons=2),
        Orbital(2, 0, 0, electrons=2),
        Orbital(2, 1, -1, electrons=1),
        Orbital(2, 1, 0, electrons=0),
        Orbital(2, 1, 1, electrons=1, visible=False),
    ]

    def test_budget_distribution(self, small_settings):
        counts = distribute_particle_budget(self.ORBITALS, 4000, small_settings)
        assert counts == {'1_0_0': 1000, '2_0_0': 1000, '2_1_-1': 1000, '2_1_0': 300}

    def test_budget_capped_by_total_and_bounds(self, small_settings):
        counts = distribute_particle_budget(self.ORBITALS, 10**9, small_settings)
        assert counts['1_0_0'] == 10000
        assert counts['2_1_0'] == 3000
        counts = distribute_particle_budget(self.ORBITALS, 4, small_settings)
        assert set(counts.values()) == {50}

    def test_no_visible_orbitals(self, small_settings):
        assert distribute_particle_budget([Orbital(1, 0, 0, visible=False)], 1000, small_settings) == {}

    def test_generates_every_visible_orbital(self, sampler):
        atom = sampler.generate_atom_particles(self.ORBITALS, 4000)
        assert isinstance(atom, AtomCloud)
        assert set(atom.clouds) == {'1_0_0', '2_0_0', '2_1_-1', '2_1_0'}
        assert atom.failures == {}
        assert atom.total_particles == 3300
        assert len(atom.clouds['2_1_0']) == 300

    def test_failing_orbital_does_not_abort_batch(self, sampler):
        orbitals = [Orbital(1, 0, 0, electrons=1), Orbital(1, 1, 0, electrons=1), Orbital(2, 1, 1, electrons=1)]
        atom = sampler.generate_atom_particles(orbitals, 3000)
        assert set(atom.clouds) == {'1_0_0', '2_1_1'}
        assert list(atom.failures) == ['1_1_0']
        assert atom.failures['1_1_0'].startswith("generation failed")

    def test_orbital_above_ceiling_recorded_as_failure(self, sampler):
        orbitals = [Orbital(1, 0, 0, electrons=1), Orbital(8, 0, 0, electrons=1)]
        atom = sampler.generate_atom_particles(orbitals, 2000)
        assert set(atom.clouds) == {'1_0_0'}
        assert "exceeds the configured maximum" in atom.failures['8_0_0']

    def test_cancel_before_start(self, sampler):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(GenerationCancelled):
            sampler.generate_atom_particles(self.ORBITALS, 4000, cancel_event=cancel)

    def test_cancel_between_orbitals(self, small_settings):
        class CancelAfter:
            def __init__(self, allowed):
                self.checks = 0
                self.allowed = allowed

            def is_set(self):
                self.checks += 1
                return self.checks > self.allowed

        cancel = CancelAfter(allowed=2)
        sampler = ParticleSampler(settings=small_settings, rng=0)
        with pytest.raises(GenerationCancelled):
            sampler.generate_atom_particles(self.ORBITALS, 4000, cancel_event=cancel)
        assert cancel.checks == 3

    def test_threaded_matches_sequential(self, small_settings):
        sequential = generate_atom_particles(self.ORBITALS, 4000, settings=small_settings, rng=11)
        threaded = generate_atom_particles(self.ORBITALS, 4000, settings=small_settings, rng=11, workers=3)
        assert set(sequential.clouds) == set(threaded.clouds)
        for key, cloud in sequential.clouds.items():
            np.testing.assert_array_equal(cloud.positions, threaded.clouds[key].positions)
            np.testing.assert_array_equal(cloud.weights, threaded.clouds[key].weights)


def test_spherical_to_cartesian_axes():
    xyz = spherical_to_cartesian(np.array([1.0, 2.0, 3.0]),
                                 np.array([0.0, math.pi / 2, math.pi / 2]),
                                 np.array([0.0, 0.0, math.pi / 2]))
    np.testing.assert_allclose(xyz, [[0, 0, 1], [2, 0, 0], [0, 3, 0]], atol=1e-12)
