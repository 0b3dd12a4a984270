"""
ELECTRON CLOUD TOOLKIT
Interactive preview of sampled hydrogen-like orbital clouds: 3D particle
scatter, sampled vs analytic radial distribution, orbital properties and a
normalization check.
"""

import logging
import traceback

import numpy as np
import plotly.graph_objects as go

from logging_config import setup_logging
from orbital_properties import check_normalization, describe_orbital
from particle_sampler import QUALITY_PRESETS, CDFCache, ParticleSampler, SamplerSettings

ORBITAL_COLORSCALE = "Viridis"


def build_cloud_figure(cloud, max_points=200000):
    """3D scatter of a particle cloud, coloured by normalized density"""
    positions, weights = cloud.positions, cloud.weights
    if len(cloud) > max_points:
        step = int(np.ceil(len(cloud) / max_points))
        positions, weights = positions[::step], weights[::step]

    fig = go.Figure(data=go.Scatter3d(
        x=positions[:, 0], y=positions[:, 1], z=positions[:, 2],
        mode='markers',
        marker=dict(size=1.5, color=weights, colorscale=ORBITAL_COLORSCALE,
                    cmin=0.0, cmax=1.0, opacity=0.6,
                    colorbar=dict(title="|ψ|² / max")),
    ))

    state = cloud.state
    fig.update_layout(
        title=f"{state.label} Orbital Cloud (n={state.n}, l={state.l}, m={state.m}, {len(cloud)} particles)",
        scene=dict(
            xaxis_title="x (Å)",
            yaxis_title="y (Å)",
            zaxis_title="z (Å)",
            aspectmode='cube'
        )
    )
    return fig


def build_radial_figure(cloud, sampler, bins=100):
    """Histogram of sampled radii against the analytic P(r) = r²|R(r)|²"""
    state = cloud.state
    radii = np.linalg.norm(cloud.positions, axis=1) / sampler.settings.scale_factor

    r_min, r_max = sampler.radius_range(state.n)
    r = np.linspace(r_min, r_max, 1000)
    R_vals = sampler.evaluator.radial_wave_function(state.n, state.l, r).value
    P_vals = r**2 * R_vals**2
    area = np.sum(P_vals) * (r[1] - r[0])
    if area > 0:
        P_vals = P_vals / area

    fig = go.Figure()
    fig.add_trace(go.Histogram(x=radii, nbinsx=bins, histnorm='probability density',
                               name='Sampled radii', opacity=0.6))
    fig.add_trace(go.Scatter(x=r, y=P_vals, mode='lines', name='P(r) = r²|R(r)|²',
                             line=dict(width=3, color='blue')))

    most_probable = r[np.argmax(P_vals)]
    fig.add_vline(x=most_probable, line_dash="dot", line_color="green",
                  annotation_text=f"r_max = {most_probable:.3f} Å")

    fig.update_layout(
        title=f"Sampled Radial Distribution for {state.label} Orbital",
        xaxis_title="Radius r (Å)",
        yaxis_title="Probability density",
        barmode='overlay',
        showlegend=True
    )
    return fig


def print_orbital_info(n, l, m, Z=1):
    """Display orbital properties"""
    info = describe_orbital(n, l, m, Z)
    exp_vals = info['expectation_values']

    print(f"\n{'='*70}")
    print(f"  HYDROGEN-LIKE ORBITAL: {info['label']}")
    print(f"{'='*70}")
    print(f"  Quantum Numbers: n = {n}, l = {l}, m = {m}  (Z = {Z})")
    print(f"  Energy: {info['energy_hartree']:.8f} Hartree = {info['energy_ev']:.6f} eV")
    print(f"{'-'*70}")
    print(f"  Radial nodes: {info['nodes_radial']}   Angular nodes: {info['nodes_angular']}")
    if info['node_positions']:
        print(f"    Radial node positions (a₀): {', '.join(f'{r:.4f}' for r in info['node_positions'])}")
    print(f"{'-'*70}")
    print(f"  <r> = {exp_vals['<r>']:.6f} a₀")
    print(f"  <r²> = {exp_vals['<r²>']:.6f} a₀²")
    print(f"  <1/r> = {exp_vals['<1/r>']:.6f} a₀⁻¹")
    print(f"{'='*70}\n")


def read_quantum_numbers(max_n=SamplerSettings.max_n):
    n_val = int(input(f"Enter principal quantum number n (1 to {max_n}): ") or 2)
    if not 1 <= n_val <= max_n:
        raise ValueError(f"n must be in [1, {max_n}]")

    l_val = int(input(f"Enter angular quantum number l (0 to {n_val-1}): ") or 0)
    if not (0 <= l_val < n_val):
        print(f"l must be in [0, {n_val-1}]. Defaulting to 0.")
        l_val = 0

    m_val = int(input(f"Enter magnetic quantum number m (-{l_val} to {l_val}): ") or 0)
    if not (-l_val <= m_val <= l_val):
        print(f"m must be in [{-l_val}, {l_val}]. Defaulting to 0.")
        m_val = 0

    return n_val, l_val, m_val


def main_menu():
    """Main interactive menu"""
    print("\n" + "="*70)
    print(" ELECTRON CLOUD SAMPLING TOOLKIT")
    print("="*70)

    cache = CDFCache()
    presets = list(QUALITY_PRESETS)

    while True:
        try:
            print("\n" + "="*70)
            n_val, l_val, m_val = read_quantum_numbers()

            print("\nSelect a table resolution level:")
            for i, name in enumerate(presets, start=1):
                print(f"[{i}] {name}")
            quality_choice = input("Enter choice [2]: ") or '2'
            quality = presets[int(quality_choice) - 1] if quality_choice.isdigit() and 1 <= int(quality_choice) <= len(presets) else 'Medium'

            settings = SamplerSettings.from_quality(quality)
            count = int(input(f"Particle count ({settings.min_particle_count}-{settings.max_particle_count}) [100000]: ") or 100000)
            seed_text = input("Random seed (Enter for none): ").strip()
            seed = int(seed_text) if seed_text else None
            print(f"Using '{quality}' resolution.")

        except ValueError as e:
            print(f"Invalid input: {e}. Please try again.")
            continue
        except KeyboardInterrupt:
            print("\n\nExiting toolkit. Goodbye!")
            return

        sampler = ParticleSampler(settings=settings, rng=seed, cache=cache)
        cloud = sampler.generate_orbital_particles(n_val, l_val, m_val, count)

        while True:
            print("\n" + "="*70)
            print(f"Current: {cloud.state.label} | n={n_val}, l={l_val}, m={m_val} | {len(cloud)} particles | {quality}")
            print("="*70)
            print("  [1] 3D Particle Cloud")
            print("  [2] Sampled vs Analytic Radial Distribution")
            print("  [3] Orbital Properties")
            print("  [4] Verify Wavefunction Normalization")
            print("  [5] Resample")
            print("\n  [q] Change quantum numbers or exit")

            choice = input("\nEnter your choice: ").lower()

            try:
                if choice == '1':
                    build_cloud_figure(cloud).show()

                elif choice == '2':
                    build_radial_figure(cloud, sampler).show()

                elif choice == '3':
                    Z_val = int(input("Enter atomic number Z for energies (e.g., 1 for H) [1]: ") or 1)
                    print_orbital_info(n_val, l_val, m_val, max(Z_val, 1))

                elif choice == '4':
                    norm_integral = check_normalization(n_val, l_val, m_val, rng=seed)
                    print(f"Normalization integral: {norm_integral:.6f} (should be ≈ 1.0)")
                    if abs(norm_integral - 1.0) > 0.1:
                        print("WARNING: Large deviation from unity. Increase the sample count.")
                    else:
                        print("✓ Normalization check passed!")

                elif choice == '5':
                    cloud = sampler.generate_orbital_particles(n_val, l_val, m_val, count)

                elif choice == 'q':
                    print("\nReturning to main selection...")
                    cache.clear()
                    break

                else:
                    print(f"Invalid choice '{choice}'. Please try again.")

            except KeyboardInterrupt:
                print("\n\nReturning to main menu...")
                break
            except Exception as e:
                print(f"\n" + "!"*70)
                print(f"  An error occurred: {e}")
                print("!"*70 + "\n")
                traceback.print_exc()

        if choice == 'q':
            if 'n' in input("Do you want to select new quantum numbers? (y/n): ").lower():
                print("\nExiting toolkit. Goodbye!")
                break


if __name__ == "__main__":
    setup_logging(logging.WARNING)
    try:
        main_menu()
    except KeyboardInterrupt:
        print("\n\nProgram interrupted. Goodbye!")
