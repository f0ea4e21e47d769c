"""Small hand-built datasets for unit-testing suite."""

import numpy as np


def toy_data():
    """Three markers, two individuals in a single family with known-phase codes."""
    ref = np.array([[3, 0, 2], [1, 2, 0]])
    alt = np.array([[0, 2, 1], [2, 0, 3]])
    codes = np.array([[4, 1, 2]])
    n_ind = np.array([2])
    rf = np.array([0.2, 0.3, 0.2, 0.3])
    return {"ref": ref, "alt": alt, "codes": codes, "n_ind": n_ind, "rf": rf, "ep": 0.05}


def splice_zero_depth(data, rf_left, rf_right, pos=1):
    """Insert an uninformative (zero-depth) marker before marker `pos`.

    The interval around the new marker is split into the pooled fractions
    rf_left and rf_right (applied to both parents).
    """
    ref = np.insert(data["ref"], pos, 0, axis=1)
    alt = np.insert(data["alt"], pos, 0, axis=1)
    codes = np.insert(data["codes"], pos, 1, axis=1)
    m = data["ref"].shape[1]
    rf = data["rf"]
    r_pat = np.insert(rf[: m - 1], pos - 1, rf_left)
    r_mat = np.insert(rf[m - 1 :], pos - 1, rf_left)
    r_pat[pos] = rf_right
    r_mat[pos] = rf_right
    return {
        "ref": ref,
        "alt": alt,
        "codes": codes,
        "n_ind": data["n_ind"],
        "rf": np.concatenate([r_pat, r_mat]),
        "ep": data["ep"],
    }


def compose_rf(r1, r2):
    """Recombination fraction across two adjacent intervals (no interference)."""
    return r1 + r2 - 2.0 * r1 * r2
