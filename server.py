import traceback

import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS

from logging_config import get_logger, setup_logging
from orbital_properties import describe_orbital
from particle_sampler import (
    DEFAULT_PARTICLE_COUNT, CDFCache, Orbital, ParticleSampler, SamplerSettings,
)
from wavefunction import InvalidQuantumState, require_valid_state

logger = get_logger(__name__)

app = Flask(__name__)
CORS(app)

# Tables are immutable snapshots, safe to share between requests
TABLE_CACHE = CDFCache(max_size=128)

MAX_RADIAL_POINTS = 100000


def get_sampler(quality, seed):
    """Sampler for one request; shares the process-wide table cache"""
    settings = SamplerSettings.from_quality(quality)
    return ParticleSampler(settings=settings, rng=seed, cache=TABLE_CACHE)


def quantum_numbers(args):
    return int(args.get('n')), int(args.get('l')), int(args.get('m', 0))


def optional_int(value):
    return None if value in (None, '') else int(value)


def cloud_payload(cloud):
    return {
        "n": cloud.state.n, "l": cloud.state.l, "m": cloud.state.m,
        "label": cloud.state.label,
        "count": len(cloud),
        "positions": cloud.positions.tolist(),
        "weights": cloud.weights.tolist(),
        "max_density": cloud.max_density,
    }


def bad_request(e):
    return jsonify({"error": str(e)}), 400


def generation_failed(e):
    logger.exception("Request failed")
    return jsonify({"error": "generation failed", "detail": str(e), "trace": traceback.format_exc()}), 500


@app.route('/api/orbital-particles', methods=['GET'])
def get_orbital_particles():
    """Weighted point cloud for a single orbital"""
    try:
        n, l, m = quantum_numbers(request.args)
        count = int(request.args.get('count', DEFAULT_PARTICLE_COUNT))
        seed = optional_int(request.args.get('seed'))
        quality = request.args.get('quality', 'Medium')
        sampler = get_sampler(quality, seed)
    except (TypeError, ValueError) as e:
        return bad_request(e)

    try:
        cloud = sampler.generate_orbital_particles(n, l, m, count)
        return jsonify(cloud_payload(cloud))
    except InvalidQuantumState as e:
        return bad_request(e)
    except Exception as e:
        return generation_failed(e)


@app.route('/api/atom-particles', methods=['POST'])
def get_atom_particles():
    """Clouds for every visible orbital of an electron configuration"""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "No JSON data received"}), 400

    try:
        orbitals = [
            Orbital(int(o['n']), int(o['l']), int(o.get('m', 0)),
                    electrons=int(o.get('electrons', 0)), visible=bool(o.get('visible', True)))
            for o in data.get('orbitals', [])
        ]
        total = int(data.get('total', DEFAULT_PARTICLE_COUNT))
        sampler = get_sampler(data.get('quality', 'Medium'), optional_int(data.get('seed')))
    except (KeyError, TypeError, ValueError) as e:
        return bad_request(e)

    if not orbitals:
        return jsonify({"error": "No orbitals supplied"}), 400

    try:
        atom = sampler.generate_atom_particles(orbitals, total)
        return jsonify({
            "orbitals": {key: cloud_payload(cloud) for key, cloud in atom.clouds.items()},
            "failures": atom.failures,
            "total": atom.total_particles,
        })
    except Exception as e:
        return generation_failed(e)


@app.route('/api/radial-distribution', methods=['GET'])
def get_radial_distribution():
    """Analytic P(r) = r²|R(r)|² over the sampler's radius range"""
    try:
        n, l, _ = quantum_numbers(request.args)
        num_points = int(request.args.get('points', 1000))
        if not 2 <= num_points <= MAX_RADIAL_POINTS:
            raise ValueError(f"points must be in range [2, {MAX_RADIAL_POINTS}], got {num_points}")
        sampler = ParticleSampler(settings=SamplerSettings())
        state = sampler.require_state(n, l, 0)
    except (TypeError, ValueError) as e:
        return bad_request(e)

    try:
        r_min, r_max = sampler.radius_range(state.n)
        r = np.linspace(r_min, r_max, num_points)
        R_vals = sampler.evaluator.radial_wave_function(n, l, r).value
        P_vals = r**2 * R_vals**2

        return jsonify({
            "r": r.tolist(),
            "P": P_vals.tolist(),
            "R": R_vals.tolist(),
            "r_most_probable": float(r[np.argmax(P_vals)]),
            "label": state.label,
        })
    except Exception as e:
        return generation_failed(e)


@app.route('/api/orbital-info', methods=['GET'])
def get_orbital_info():
    """Energy, nodes and expectation values for (n, l, m) and nuclear charge Z"""
    try:
        n, l, m = quantum_numbers(request.args)
        Z = int(request.args.get('Z', 1))
        if Z < 1:
            raise ValueError(f"Atomic number Z must be >= 1, got {Z}")
        require_valid_state(n, l, m, max_n=SamplerSettings().max_n)
        return jsonify(describe_orbital(n, l, m, Z))
    except (TypeError, ValueError) as e:
        return bad_request(e)
    except Exception as e:
        return generation_failed(e)


if __name__ == '__main__':
    setup_logging()
    print("\n" + "="*60)
    print("  Electron Cloud Sampling Server")
    print("="*60)
    print("\n  Server running at http://127.0.0.1:5000")
    print("  Keep this terminal running.")
    print("="*60 + "\n")
    app.run(host='127.0.0.1', port=5000, debug=False)
