"""Simulation of low-coverage sequencing data for full-sib families."""

import numpy as np
from linkhmm_utils import KNOWN_PHASE_CLASSES, UNKNOWN_PHASE_CLASSES
from scipy.stats import binom, poisson, randint


class LinkageSim:
    """Simulator of read counts in full-sib families with known linkage parameters."""

    def __init__(self, known_phase=True):
        """Initialize the simulator.

        Args:
            known_phase (`bool`): draw 16-level known-phase codes (else 5-level unknown-phase).

        """
        self.known_phase = known_phase
        self.classes = KNOWN_PHASE_CLASSES if known_phase else UNKNOWN_PHASE_CLASSES

    def draw_codes(self, m=10, nfam=1, codes=None, seed=42):
        """Draw origin-pattern codes for each family and marker.

        Args:
            m (`int`): number of markers.
            nfam (`int`): number of families.
            codes (`list`): candidate codes to draw from (default: all codes of the model).
            seed (`int`): random number seed.
        Output:
            codes (`np.array`): nfam x m array of origin-pattern codes.

        """
        assert m > 1
        assert nfam > 0
        np.random.seed(seed)
        if codes is None:
            codes = np.arange(1, self.classes.shape[0] + 1)
        codes = np.asarray(codes)
        assert np.all((codes >= 1) & (codes <= self.classes.shape[0]))
        idx = randint.rvs(0, codes.size, size=(nfam, m))
        return codes[idx]

    def sim_origin_paths(self, rf_pat, rf_mat, nind=10, seed=42):
        """Simulate hidden state paths from the paternal and maternal recombination chains.

        Args:
            rf_pat (`np.array`): (m - 1) paternal recombination fractions.
            rf_mat (`np.array`): (m - 1) maternal recombination fractions.
            nind (`int`): number of individuals.
            seed (`int`): random number seed.
        Output:
            states (`np.array`): nind x m array of hidden states (2 * paternal + maternal).

        """
        assert rf_pat.size == rf_mat.size
        np.random.seed(seed)
        m = rf_pat.size + 1
        pat = np.zeros(shape=(nind, m), dtype=int)
        mat = np.zeros(shape=(nind, m), dtype=int)
        pat[:, 0] = binom.rvs(1, 0.5, size=nind)
        mat[:, 0] = binom.rvs(1, 0.5, size=nind)
        for j in range(1, m):
            pat[:, j] = pat[:, j - 1] ^ binom.rvs(1, rf_pat[j - 1], size=nind)
            mat[:, j] = mat[:, j - 1] ^ binom.rvs(1, rf_mat[j - 1], size=nind)
        return 2 * pat + mat

    def sim_reads(self, geno, ep=0.01, depth=5.0, seed=42):
        """Simulate reference / alternative read counts given the true genotype classes.

        Args:
            geno (`np.array`): nind x m genotype classes (0 = AA, 1 = AB, 2 = BB).
            ep (`float`): sequencing error rate.
            depth (`float`): mean read depth (Poisson).
            seed (`int`): random number seed.
        Output:
            ref (`np.array`): reference allele read counts.
            alt (`np.array`): alternative allele read counts.

        """
        assert (ep >= 0) and (ep <= 1)
        assert depth > 0
        np.random.seed(seed)
        p_alt = np.array([ep, 0.5, 1.0 - ep])[geno]
        tot = poisson.rvs(depth, size=geno.shape)
        alt = binom.rvs(tot, p_alt, size=geno.shape)
        return tot - alt, alt

    def full_sib_sim(
        self,
        m=10,
        nind=50,
        nfam=1,
        rf=0.1,
        rf_mat=None,
        ep=0.01,
        depth=5.0,
        codes=None,
        seed=42,
    ):
        """Simulate full-sib families of low-coverage sequencing data.

        Args:
            m (`int`): number of markers.
            nind (`int`): number of individuals per family.
            nfam (`int`): number of families.
            rf (`float`): paternal recombination fraction (scalar or (m - 1) array).
            rf_mat (`float`): maternal recombination fraction (defaults to rf).
            ep (`float`): sequencing error rate.
            depth (`float`): mean read depth.
            codes (`list`): candidate origin-pattern codes.
            seed (`int`): random number seed.
        Output:
            data (`dict`): ref, alt, codes, n_ind, rf, ep, states and geno.

        """
        assert m > 1
        assert nind > 0
        assert seed > 0
        rf_pat = np.broadcast_to(np.asarray(rf, dtype=np.float64), m - 1).copy()
        rf_mat = rf_pat.copy() if rf_mat is None else np.broadcast_to(
            np.asarray(rf_mat, dtype=np.float64), m - 1
        ).copy()
        assert np.all((rf_pat >= 0) & (rf_pat <= 0.5))
        assert np.all((rf_mat >= 0) & (rf_mat <= 0.5))
        fam_codes = self.draw_codes(m=m, nfam=nfam, codes=codes, seed=seed)
        n_ind = np.repeat(nind, nfam)
        states = self.sim_origin_paths(rf_pat, rf_mat, nind=nind * nfam, seed=seed + 1)
        fam_idx = np.repeat(np.arange(nfam), n_ind)
        # Genotype class of each individual's state under its family's code
        geno = self.classes[fam_codes[fam_idx] - 1, states]
        ref, alt = self.sim_reads(geno, ep=ep, depth=depth, seed=seed + 2)
        return {
            "ref": ref,
            "alt": alt,
            "codes": fam_codes,
            "n_ind": n_ind,
            "rf": np.concatenate([rf_pat, rf_mat]),
            "ep": ep,
            "states": states,
            "geno": geno,
            "m": m,
            "nind": nind,
            "nfam": nfam,
        }
