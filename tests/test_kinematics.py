"""Tests for hicoffea.kinematics: angle wrapping, two-body kinematics and frames."""

import numpy as np
import pytest

from hicoffea.analysis_config import MASS_D0, MASS_K0S, MASS_KAON, MASS_PION
from hicoffea.kinematics import (
    chunk_rng,
    cos_theta_star,
    cos_theta_star_two_body,
    delta_phi,
    helicity_phi,
    invariant_mass_two_body,
    momentum4d,
    momentum4d_e,
    phi_0_2pi,
    phi_mpi_pi,
    polarization_angles,
    rotate_z,
)


def _back_to_back(p, mass, direction=(1.0, 0.0, 0.0)):
    """Two daughters of equal mass emitted back to back along ``direction``."""
    d = np.asarray(direction, dtype=np.float64)
    d = d / np.linalg.norm(d)
    d1 = momentum4d([p * d[0]], [p * d[1]], [p * d[2]], mass)
    d2 = momentum4d([-p * d[0]], [-p * d[1]], [-p * d[2]], mass)
    return d1, d2


class TestAngleWrapping:
    def test_phi_mpi_pi_range(self):
        phi = np.array([-7.0, -np.pi, 0.0, 3.5, 10.0])
        wrapped = phi_mpi_pi(phi)
        assert np.all(wrapped >= -np.pi)
        assert np.all(wrapped < np.pi)

    def test_phi_0_2pi_range(self):
        wrapped = phi_0_2pi(np.array([-0.5, 7.0]))
        assert wrapped[0] == pytest.approx(2 * np.pi - 0.5)
        assert wrapped[1] == pytest.approx(7.0 - 2 * np.pi)

    def test_delta_phi_symmetric_and_bounded(self):
        a = np.array([0.1, 6.2, 3.0])
        b = np.array([6.2, 0.1, 0.0])
        assert np.allclose(delta_phi(a, b), delta_phi(b, a))
        assert np.all(delta_phi(a, b) <= np.pi)
        assert delta_phi(np.array([0.1]), np.array([6.2]))[0] == pytest.approx(2 * np.pi - 6.1)


class TestTwoBody:
    def test_invariant_mass_at_rest(self):
        # pi and K back to back with equal momentum p*: m = E_pi + E_K
        p = 0.861
        mass = invariant_mass_two_body(
            ([p], [0.0], [0.0]), ([-p], [0.0], [0.0]), MASS_PION, MASS_KAON,
        )
        expected = np.sqrt(p**2 + MASS_PION**2) + np.sqrt(p**2 + MASS_KAON**2)
        assert mass[0] == pytest.approx(expected)

    @staticmethod
    def _boosted_decay(direction, beta=0.6):
        """D0 -> pi K with the pion along ``direction`` ("x" or "y") in the rest frame, boosted along x."""
        m, m0, m1 = MASS_D0, MASS_PION, MASS_KAON
        p_star = np.sqrt((m**2 - m0**2 - m1**2) ** 2 - (2 * m0 * m1) ** 2) / (2 * m)
        gamma = 1.0 / np.sqrt(1.0 - beta**2)
        e0, e1 = np.sqrt(p_star**2 + m0**2), np.sqrt(p_star**2 + m1**2)
        if direction == "x":
            p0 = ([gamma * (p_star + beta * e0)], [0.0], [0.0])
            p1 = ([gamma * (-p_star + beta * e1)], [0.0], [0.0])
        else:
            p0 = ([gamma * beta * e0], [p_star], [0.0])
            p1 = ([gamma * beta * e1], [-p_star], [0.0])
        return p0, p1

    def test_cos_theta_star_forward_prong(self):
        p0, p1 = self._boosted_decay("x")
        assert cos_theta_star_two_body(p0, p1, MASS_PION, MASS_KAON, MASS_D0, 0)[0] == pytest.approx(1.0)
        assert cos_theta_star_two_body(p0, p1, MASS_PION, MASS_KAON, MASS_D0, 1)[0] == pytest.approx(-1.0)

    def test_cos_theta_star_perpendicular_prong(self):
        p0, p1 = self._boosted_decay("y")
        assert cos_theta_star_two_body(p0, p1, MASS_PION, MASS_KAON, MASS_D0, 0)[0] == pytest.approx(0.0, abs=1e-9)


class TestCosThetaStar:
    def test_beam_frame_daughter_along_z(self):
        d1, d2 = _back_to_back(0.5, MASS_K0S, direction=(0.0, 0.0, 1.0))
        cos = cos_theta_star(d1 + d2, d1, "beam")
        assert cos[0] == pytest.approx(1.0)

    def test_beam_frame_transverse_daughter(self):
        d1, d2 = _back_to_back(0.5, MASS_K0S, direction=(1.0, 0.0, 0.0))
        cos = cos_theta_star(d1 + d2, d1, "beam")
        assert cos[0] == pytest.approx(0.0, abs=1e-9)

    def test_helicity_frame_forward_daughter(self):
        # mother moving along +x, daughter emitted forward in the mother frame
        mother = momentum4d_e([3.0], [0.0], [0.0], [np.sqrt(9.0 + 1.5**2)])
        boosted_daughter = momentum4d([2.9], [0.0], [0.0], MASS_K0S)
        cos = cos_theta_star(mother, boosted_daughter, "helicity")
        assert cos[0] == pytest.approx(1.0)

    def test_random_frame_needs_rng(self):
        d1, d2 = _back_to_back(0.5, MASS_K0S)
        with pytest.raises(ValueError, match="random frame"):
            cos_theta_star(d1 + d2, d1, "random")

    def test_random_frame_bounded(self):
        d1, d2 = _back_to_back(0.5, MASS_K0S)
        cos = cos_theta_star(d1 + d2, d1, "random", rng=np.random.default_rng(1))
        assert -1.0 <= cos[0] <= 1.0

    def test_invalid_frame(self):
        d1, d2 = _back_to_back(0.5, MASS_K0S)
        with pytest.raises(ValueError, match="Invalid frame"):
            cos_theta_star(d1 + d2, d1, "lab")


class TestHelicityPhi:
    def test_range(self):
        rng = np.random.default_rng(3)
        px1, py1, pz1 = rng.normal(size=(3, 20))
        px2, py2, pz2 = rng.normal(size=(3, 20))
        d1 = momentum4d(px1, py1, pz1, MASS_K0S)
        d2 = momentum4d(px2, py2, pz2, MASS_K0S)
        phi = helicity_phi(d1 + d2, d1, 13600.0)
        assert phi.shape == (20,)
        assert np.all((phi >= 0) & (phi < 2 * np.pi))

    def test_polarization_angles_pairs_cos_and_phi(self):
        d1 = momentum4d([1.0, 0.3], [0.2, -0.4], [0.1, 0.5], MASS_K0S)
        d2 = momentum4d([-0.4, 0.8], [0.6, 0.1], [0.3, -0.2], MASS_K0S)
        cos, phi = polarization_angles(d1 + d2, d1, "beam")
        assert np.allclose(cos, cos_theta_star(d1 + d2, d1, "beam"))
        assert np.allclose(phi, helicity_phi(d1 + d2, d1, 13600.0))


class TestRotateZ:
    def test_preserves_pt_and_mass(self):
        v = momentum4d([1.0], [0.5], [2.0], MASS_K0S)
        rotated = rotate_z(v, np.array([np.pi]))
        assert rotated.pt[0] == pytest.approx(v.pt[0])
        assert rotated.mass[0] == pytest.approx(MASS_K0S)
        assert rotated.px[0] == pytest.approx(-1.0)


class TestChunkRng:
    def test_reproducible_for_same_chunk(self):
        md = {"filename": "a.root", "entrystart": 100}
        assert chunk_rng(7, md).uniform() == chunk_rng(7, md).uniform()

    def test_differs_between_chunks(self):
        a = chunk_rng(7, {"filename": "a.root", "entrystart": 0}).uniform(size=4)
        b = chunk_rng(7, {"filename": "a.root", "entrystart": 1000}).uniform(size=4)
        assert not np.allclose(a, b)

    def test_no_seed_gives_generator(self):
        assert isinstance(chunk_rng(None, {}), np.random.Generator)
