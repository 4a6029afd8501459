"""Vectorised kinematics shared by the analysis processors.

All helpers take flat numpy arrays (one entry per object or per pair) and
return numpy arrays. Four-vector algebra goes through the numpy backend of
scikit-hep ``vector``; three-vector products are plain numpy.
"""

import zlib

import numpy as np
import vector

from hicoffea.analysis_config import MASS_PROTON, TWO_PI

COS_THETA_FRAMES = ("helicity", "production", "beam", "random")


def phi_mpi_pi(phi):
    """Wrap an angle to [-pi, pi)."""
    return np.mod(phi + np.pi, TWO_PI) - np.pi


def phi_0_2pi(phi):
    """Wrap an angle to [0, 2pi)."""
    return np.mod(phi, TWO_PI)


def delta_phi(phi_a, phi_b):
    """Absolute azimuthal separation in [0, pi]."""
    return np.abs(phi_mpi_pi(phi_a - phi_b))


def _as_float(x):
    return np.asarray(x, dtype=np.float64)


def momentum4d(px, py, pz, mass):
    """Build a ``vector`` MomentumNumpy4D from momentum components and a mass."""
    px = _as_float(px)
    mass = np.broadcast_to(_as_float(mass), px.shape).copy()
    return vector.array({"px": px, "py": _as_float(py), "pz": _as_float(pz), "M": mass})


def momentum4d_e(px, py, pz, e):
    """Build a ``vector`` MomentumNumpy4D from momentum components and an energy."""
    px = _as_float(px)
    e = np.broadcast_to(_as_float(e), px.shape).copy()
    return vector.array({"px": px, "py": _as_float(py), "pz": _as_float(pz), "E": e})


def _three(v):
    return np.stack([v.px, v.py, v.pz], axis=-1)


def _norm(a):
    return np.sqrt(np.sum(a * a, axis=-1))


def _unit(a):
    return a / _norm(a)[..., None]


def _dot(a, b):
    return np.sum(a * b, axis=-1)


def boost_to_rest_frame(v, mother):
    """Boost ``v`` into the rest frame of ``mother``."""
    return v.boostCM_of_p4(mother)


def invariant_mass_two_body(prong0, prong1, mass0, mass1):
    """Invariant mass of two prongs given as (px, py, pz) tuples and mass hypotheses."""
    return (momentum4d(*prong0, mass0) + momentum4d(*prong1, mass1)).mass


def cos_theta_star_two_body(prong0, prong1, mass0, mass1, mass_mother, i_prong):
    """cos(theta*) of prong ``i_prong`` in the rest frame of a mother of nominal mass.

    The mother momentum is the sum of the prong momenta and its energy is
    evaluated with ``mass_mother`` rather than the reconstructed mass.
    """
    p0 = np.stack([_as_float(c) for c in prong0], axis=-1)
    p1 = np.stack([_as_float(c) for c in prong1], axis=-1)
    p_mother = p0 + p1
    p_tot = _norm(p_mother)
    e_tot = np.sqrt(p_tot * p_tot + mass_mother * mass_mother)
    gamma = e_tot / mass_mother
    beta = p_tot / e_tot
    p_star = np.sqrt(
        (mass_mother**2 - mass0**2 - mass1**2) ** 2 - (2.0 * mass0 * mass1) ** 2
    ) / (2.0 * mass_mother)

    p_dau, m_dau = (p0, mass0) if i_prong == 0 else (p1, mass1)
    e_dau = np.sqrt(_dot(p_dau, p_dau) + m_dau * m_dau)
    p_parallel = _dot(p_dau, p_mother) / p_tot
    return gamma * (p_parallel - beta * e_dau) / p_star


def cos_theta_star(mother, daughter, frame, rng=None):
    """cos(theta*) of ``daughter`` in the rest frame of ``mother`` w.r.t. a reference axis.

    Frames:
      - ``helicity``: mother flight direction in the lab
      - ``production``: normal to the production plane, (py, -px, 0)
      - ``beam``: the beam (z) axis
      - ``random``: a random direction per pair, drawn from ``rng``
    """
    dau_cm = _three(boost_to_rest_frame(daughter, mother))
    n = len(dau_cm)

    if frame == "helicity":
        axis = _three(mother)
    elif frame == "production":
        axis = np.stack([mother.py, -mother.px, np.zeros(n)], axis=-1)
    elif frame == "beam":
        axis = np.tile([0.0, 0.0, 1.0], (n, 1))
    elif frame == "random":
        if rng is None:
            raise ValueError("The random frame needs a numpy random Generator.")
        phi_r = rng.uniform(0.0, TWO_PI, n)
        theta_r = rng.uniform(0.0, np.pi, n)
        axis = np.stack(
            [np.sin(theta_r) * np.cos(phi_r), np.sin(theta_r) * np.sin(phi_r), np.cos(theta_r)],
            axis=-1,
        )
    else:
        raise ValueError(f"Invalid frame '{frame}'. Must be one of {COS_THETA_FRAMES}.")

    return _dot(axis, dau_cm) / (_norm(axis) * _norm(dau_cm))


def helicity_phi(mother, daughter, sqrt_s):
    """Azimuth of ``daughter`` in the helicity frame of ``mother``, in [0, 2pi).

    The y axis is the normal to the plane of the two beams seen from the
    mother rest frame; z is the mother lab direction.
    """
    n = len(mother)
    e_beam = 0.5 * sqrt_s
    p_beam = np.sqrt(e_beam * e_beam - MASS_PROTON * MASS_PROTON)
    zeros = np.zeros(n)
    beam1 = momentum4d_e(zeros, zeros, np.full(n, -p_beam), e_beam)
    beam2 = momentum4d_e(zeros, zeros, np.full(n, p_beam), e_beam)

    b1 = _unit(_three(boost_to_rest_frame(beam1, mother)))
    b2 = _unit(_three(boost_to_rest_frame(beam2, mother)))

    z_axis = _unit(_three(mother))
    y_axis = _unit(np.cross(b1, b2))
    x_axis = _unit(np.cross(y_axis, z_axis))
    v = _unit(_three(boost_to_rest_frame(daughter, mother)))

    return phi_0_2pi(np.arctan2(_dot(y_axis, v), _dot(x_axis, v)))


def rotate_z(v, theta):
    """Rotate the transverse momentum of ``v`` by ``theta``."""
    return v.rotateZ(theta)


def polarization_angles(mother, daughter, frame, rng=None, sqrt_s=13600.0):
    """Return ``(cos theta*, phi)`` of ``daughter`` for the requested frame.

    phi is always the helicity-frame azimuth.
    """
    return (
        cos_theta_star(mother, daughter, frame, rng=rng),
        helicity_phi(mother, daughter, sqrt_s),
    )


def chunk_rng(seed, metadata):
    """Random generator for one chunk, reproducible from (seed, file, entrystart).

    ``seed=None`` draws fresh OS entropy.
    """
    if seed is None:
        return np.random.default_rng()
    filename = str(metadata.get("filename", ""))
    entrystart = int(metadata.get("entrystart", 0))
    return np.random.default_rng([int(seed), zlib.crc32(filename.encode()), entrystart])
