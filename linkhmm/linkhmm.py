"""
Linkhmm is an HMM-based model for linkage analysis with low-coverage sequencing.

Linkhmm estimates recombination fractions between adjacent markers and
a sequencing error rate from read counts observed on full-sib families,
given the parental origin-pattern code of each marker.

Modules available are:

- KnownPhaseHMM: EM estimation (pooled or sex-specific) when the parental phase is known,
  plus the analytic score function and a gradient-based optimizer.
- UnknownPhaseHMM: sex-specific EM estimation when the parental phase is unknown.

"""

import logging

import numpy as np
from linkhmm_utils import (
    AA,
    BB,
    BINOM_OVERFLOW,
    KNOWN_PHASE_CLASSES,
    UNKNOWN_PHASE_CLASSES,
    backward_algo,
    binomial,
    emission_der_probs,
    emission_probs,
    forward_algo,
    forward_backward_algo,
    recomb_class,
    score_algo,
    transition_der_matrices,
    transition_matrices,
)
from scipy.optimize import minimize
from scipy.special import expit, logit

logger = logging.getLogger(__name__)

# Indicators over (s1, s2) of a recombination in each parent
PAT_RECOMB = np.array([[((s1 ^ s2) >> 1) & 1 for s2 in range(4)] for s1 in range(4)])
MAT_RECOMB = np.array([[(s1 ^ s2) & 1 for s2 in range(4)] for s1 in range(4)])
N_RECOMB = np.array([[recomb_class(s1, s2) for s2 in range(4)] for s1 in range(4)])


def rf_to_link(rf):
    """Map recombination fractions in (0, 0.5) onto the real line."""
    return logit(2.0 * np.asarray(rf, dtype=np.float64))


def link_to_rf(x):
    """Inverse of `rf_to_link`: r = 1 / (2 (1 + exp(-x)))."""
    return 0.5 * expit(x)


def ep_to_link(ep):
    """Map an error rate in (0, 1) onto the real line."""
    return logit(ep)


def link_to_ep(x):
    """Inverse of `ep_to_link`."""
    return expit(x)


class DegenerateLikelihoodError(FloatingPointError):
    """A marker has zero (or underflowed) probability under every hidden state."""

    def __init__(self, ind, snp):
        """Record the individual and marker where the forward weight vanished."""
        self.ind = ind
        self.snp = snp
        super().__init__(
            f"Forward weight is zero or underflowed for individual {ind} at marker {snp}; "
            "the reads are impossible or too deep for the current error rate."
        )


class LinkageHMM:
    """Base class for the full-sib linkage HMMs."""

    def __init__(self):
        """Initialize the base linkage HMM class."""
        self.classes = KNOWN_PHASE_CLASSES

    def check_data(self, ref, alt, codes, n_ind):
        """Validate read counts, origin-pattern codes and family sizes.

        Arguments:
            - ref (`np.array`): n x m array of reference allele read counts
            - alt (`np.array`): n x m array of alternative allele read counts
            - codes (`np.array`): f x m array of origin-pattern codes (1-based)
            - n_ind (`np.array`): f-length array of individuals per family

        Returns:
            - ref, alt (`np.array`): int32 read counts
            - codes (`np.array`): f x m int32 codes
            - n_ind (`np.array`): family sizes

        """
        ref = np.asarray(ref)
        alt = np.asarray(alt)
        if (ref.ndim != 2) or (ref.shape != alt.shape):
            raise ValueError("Read counts must be two n x m arrays of equal shape!")
        if ref.shape[1] < 2:
            raise ValueError("At least two markers are required!")
        for x in [ref, alt]:
            if np.any(np.mod(x, 1) != 0):
                raise ValueError("Read counts must be integers!")
            if np.any(x < 0):
                raise ValueError("Read counts must be non-negative!")
        n, m = ref.shape
        if n == 0:
            raise ValueError("At least one individual is required!")
        n_ind = np.atleast_1d(np.asarray(n_ind)).astype(np.int64)
        if (n_ind.ndim != 1) or np.any(n_ind < 0) or (n_ind.sum() != n):
            raise ValueError(
                f"Family sizes {n_ind.tolist()} do not add up to {n} individuals!"
            )
        codes = np.atleast_2d(np.asarray(codes))
        if codes.shape != (n_ind.size, m):
            raise ValueError(
                f"Expected origin-pattern codes of shape {(n_ind.size, m)}, got {codes.shape}!"
            )
        ncodes = self.classes.shape[0]
        if np.any(np.mod(codes, 1) != 0) or np.any(codes < 1) or np.any(codes > ncodes):
            raise ValueError(f"Origin-pattern codes must be integers in 1..{ncodes}!")
        return (
            ref.astype(np.int32),
            alt.astype(np.int32),
            codes.astype(np.int32),
            n_ind,
        )

    def check_params(self, rf, ep, m):
        """Validate the recombination fraction vector (2 * (m - 1)) and error rate."""
        rf = np.array(rf, dtype=np.float64)
        if (rf.ndim != 1) or (rf.size != 2 * (m - 1)):
            raise ValueError(
                f"Expected {2 * (m - 1)} recombination fractions for {m} markers, got {rf.size}!"
            )
        if np.any(np.isnan(rf)) or np.any(rf < 0) or np.any(rf > 1):
            raise ValueError("Recombination fractions must lie in [0, 1]!")
        if not (0.0 <= ep <= 1.0):
            raise ValueError(f"Sequencing error rate {ep} must lie in [0, 1]!")
        return rf, float(ep)

    def check_mask(self, mask, m):
        """Validate the mask of estimable recombination fractions (default: all)."""
        if mask is None:
            return np.ones(2 * (m - 1), dtype=bool)
        mask = np.asarray(mask, dtype=bool)
        if (mask.ndim != 1) or (mask.size != 2 * (m - 1)):
            raise ValueError(f"Expected a mask of length {2 * (m - 1)}, got {mask.size}!")
        return mask

    def binomial_coefs(self, ref, alt):
        """Exact binomial coefficients of every read-count pair."""
        coefs = np.vectorize(binomial, otypes=[object])(ref, alt)
        if np.any(coefs == BINOM_OVERFLOW):
            raise ValueError("Read depth too large for an exact binomial coefficient!")
        return coefs.astype(np.float64)

    def genotype_table(self, codes, n_ind):
        """Genotype class of each state for every individual and marker (n x m x 4)."""
        fam_idx = np.repeat(np.arange(n_ind.size), n_ind)
        return self.classes[codes - 1][fam_idx]

    def emission_table(self, ref, alt, ep, geno, bin_coef):
        """Emission probability of each state for every individual and marker (n x m x 4)."""
        probs = emission_probs(ref, alt, ep, bin_coef)
        return np.take_along_axis(probs, geno, axis=2)

    def transition_table(self, rf, m):
        """Transition matrices for each of the m - 1 intervals."""
        return transition_matrices(rf[: m - 1], rf[m - 1 :])

    def setup(self, ref, alt, codes, n_ind, rf, ep, binom=False):
        """Validate inputs and build the emission and transition tables."""
        ref, alt, codes, n_ind = self.check_data(ref, alt, codes, n_ind)
        m = ref.shape[1]
        rf, ep = self.check_params(rf, ep, m)
        bin_coef = self.binomial_coefs(ref, alt) if binom else np.ones(ref.shape)
        geno = self.genotype_table(codes, n_ind)
        emissions = self.emission_table(ref, alt, ep, geno, bin_coef)
        trans = self.transition_table(rf, m)
        return emissions, trans

    def forward_algorithm(self, ref, alt, codes, n_ind, rf, ep, binom=False):
        """Scaled forward algorithm across all individuals.

        Arguments:
            - ref (`np.array`): n x m array of reference allele read counts
            - alt (`np.array`): n x m array of alternative allele read counts
            - codes (`np.array`): f x m array of origin-pattern codes
            - n_ind (`np.array`): f-length array of individuals per family
            - rf (`np.array`): 2 * (m - 1) paternal then maternal recombination fractions
            - ep (`float`): sequencing error rate
            - binom (`bool`): include the binomial coefficient in the emissions

        Returns:
            - alphas (`np.array`): n x m x 4 scaled forward variables
            - logw (`np.array`): n x m log scaling weights
            - loglik (`float`): total log-likelihood

        """
        emissions, trans = self.setup(ref, alt, codes, n_ind, rf, ep, binom=binom)
        n, m, _ = emissions.shape
        alphas = np.zeros(shape=(n, m, 4))
        logw = np.zeros(shape=(n, m))
        for i in range(n):
            status = forward_algo(emissions[i], trans, alphas[i], logw[i])
            if status >= 0:
                raise DegenerateLikelihoodError(i, status)
        return alphas, logw, np.sum(logw)

    def backward_algorithm(self, ref, alt, codes, n_ind, rf, ep, binom=False):
        """Scaled backward algorithm across all individuals.

        Returns:
            - betas (`np.array`): n x m x 4 scaled backward variables
            - logw (`np.array`): n x m log scaling weights from the forward pass
            - loglik (`float`): total log-likelihood

        """
        emissions, trans = self.setup(ref, alt, codes, n_ind, rf, ep, binom=binom)
        n, m, _ = emissions.shape
        alphas = np.zeros(shape=(n, m, 4))
        betas = np.zeros(shape=(n, m, 4))
        logw = np.zeros(shape=(n, m))
        for i in range(n):
            status = forward_algo(emissions[i], trans, alphas[i], logw[i])
            if status >= 0:
                raise DegenerateLikelihoodError(i, status)
            backward_algo(emissions[i], trans, logw[i], betas[i])
        return betas, logw, np.sum(logw)

    def e_step(self, emissions, trans):
        """Run the forward-backward algorithm for every individual.

        Returns:
            - gammas (`np.array`): n x m x 4 posterior state probabilities
            - xis (`np.array`): n x (m - 1) x 4 x 4 posterior joint transitions
            - loglik (`float`): total log-likelihood

        """
        n, m, _ = emissions.shape
        alphas = np.zeros(shape=(n, m, 4))
        betas = np.zeros(shape=(n, m, 4))
        logw = np.zeros(shape=(n, m))
        gammas = np.zeros(shape=(n, m, 4))
        xis = np.zeros(shape=(n, m - 1, 4, 4))
        for i in range(n):
            status = forward_backward_algo(
                emissions[i], trans, alphas[i], betas[i], logw[i], gammas[i], xis[i]
            )
            if status >= 0:
                raise DegenerateLikelihoodError(i, status)
        return gammas, xis, np.sum(logw)

    def forward_backward(self, ref, alt, codes, n_ind, rf, ep, binom=False):
        """Posterior state probabilities for every individual and marker.

        Returns:
            - gammas (`np.array`): n x m x 4 posterior state probabilities
            - xis (`np.array`): n x (m - 1) x 4 x 4 posterior joint transitions
            - loglik (`float`): total log-likelihood

        """
        emissions, trans = self.setup(ref, alt, codes, n_ind, rf, ep, binom=binom)
        return self.e_step(emissions, trans)

    def loglik(self, ref, alt, codes, n_ind, rf, ep, binom=False):
        """Log-likelihood of the read counts at fixed parameters."""
        return self.forward_algorithm(ref, alt, codes, n_ind, rf, ep, binom=binom)[2]

    def m_step_rf(self, xis, rf, mask, sex_spec=True):
        """Update the recombination fractions from the joint transition posteriors.

        Arguments:
            - xis (`np.array`): n x (m - 1) x 4 x 4 posterior joint transitions
            - rf (`np.array`): current 2 * (m - 1) recombination fractions
            - mask (`np.array`): which fractions are estimated
            - sex_spec (`bool`): separate paternal / maternal fractions

        Returns:
            - rf (`np.array`): updated recombination fractions

        """
        n = xis.shape[0]
        k = xis.shape[1]
        rf_new = rf.copy()
        if sex_spec:
            r_pat = np.sum(xis * PAT_RECOMB, axis=(0, 2, 3)) / n
            r_mat = np.sum(xis * MAT_RECOMB, axis=(0, 2, 3)) / n
            rf_new[:k] = np.where(mask[:k], r_pat, rf[:k])
            rf_new[k:] = np.where(mask[k:], r_mat, rf[k:])
        else:
            # Each individual carries two meioses per interval
            r = np.sum(xis * N_RECOMB, axis=(0, 2, 3)) / (2.0 * n)
            est = mask[:k] | mask[k:]
            rf_new[:k] = np.where(est, r, rf[:k])
            rf_new[k:] = np.where(est, r, rf[k:])
        return rf_new

    def m_step_ep(self, gammas, ref, alt, geno, ep):
        """Update the sequencing error rate from the posterior state probabilities.

        Only states that are homozygous under the origin-pattern code contribute.
        """
        is_aa = geno == AA
        is_bb = geno == BB
        a = ref[:, :, None]
        b = alt[:, :, None]
        sum_a = np.sum(gammas * (b * is_aa + a * is_bb))
        sum_b = np.sum(gammas * (a * is_aa + b * is_bb))
        if not (sum_a + sum_b > 0):
            logger.warning(
                f"No reads at homozygous states carry posterior weight; keeping ep={ep}."
            )
            return ep
        return sum_a / (sum_a + sum_b)

    def run_em(
        self,
        ref,
        alt,
        codes,
        n_ind,
        rf,
        ep,
        sex_spec=True,
        seq_error=True,
        mask=None,
        max_iter=1000,
        tol=1e-6,
        binom=False,
    ):
        """EM algorithm shared by the known and unknown phase models."""
        ref, alt, codes, n_ind = self.check_data(ref, alt, codes, n_ind)
        m = ref.shape[1]
        rf, ep = self.check_params(rf, ep, m)
        mask = self.check_mask(mask, m)
        # NOTE: the termination test needs two log-likelihoods
        max_iter = max(int(max_iter), 2)
        k = m - 1
        if sex_spec:
            rf[~mask] = 0.0
        else:
            fixed = ~(mask[:k] | mask[k:])
            rf[:k][fixed] = 0.0
            rf[k:][fixed] = 0.0
        bin_coef = self.binomial_coefs(ref, alt) if binom else np.ones(ref.shape)
        geno = self.genotype_table(codes, n_ind)
        logliks = []
        niter, loglik, prev_loglik = 0, 0.0, 0.0
        while (niter < 2) or ((niter < max_iter) and ((loglik - prev_loglik) > tol)):
            niter += 1
            prev_loglik = loglik
            emissions = self.emission_table(ref, alt, ep, geno, bin_coef)
            trans = self.transition_table(rf, m)
            gammas, xis, loglik = self.e_step(emissions, trans)
            rf = self.m_step_rf(xis, rf, mask, sex_spec=sex_spec)
            if seq_error:
                ep = self.m_step_ep(gammas, ref, alt, geno, ep)
            logliks.append(loglik)
            logger.debug(f"Iteration {niter}: loglik={loglik:.6f}, ep={ep:.6g}")
        delta = loglik - prev_loglik
        logger.info(
            f"EM finished after {niter} iterations: loglik={loglik:.4f}, delta={delta:.3g}."
        )
        return {
            "rf": rf,
            "ep": ep,
            "loglik": loglik,
            "n_iter": niter,
            "delta": delta,
            "logliks": np.array(logliks),
        }


class KnownPhaseHMM(LinkageHMM):
    """Linkage HMM for origin-pattern codes with known parental phase (16 codes)."""

    def __init__(self):
        """Initialize the known-phase linkage HMM."""
        super().__init__()
        self.classes = KNOWN_PHASE_CLASSES

    def em_algorithm(
        self,
        ref,
        alt,
        codes,
        n_ind,
        rf,
        ep,
        sex_spec=False,
        seq_error=True,
        mask=None,
        max_iter=1000,
        tol=1e-6,
        binom=False,
    ):
        """Estimate recombination fractions and the error rate via EM.

        Arguments:
            - ref (`np.array`): n x m array of reference allele read counts
            - alt (`np.array`): n x m array of alternative allele read counts
            - codes (`np.array`): f x m array of origin-pattern codes in 1..16
            - n_ind (`np.array`): f-length array of individuals per family
            - rf (`np.array`): initial 2 * (m - 1) paternal then maternal fractions
            - ep (`float`): initial sequencing error rate
            - sex_spec (`bool`): estimate separate paternal and maternal fractions
            - seq_error (`bool`): estimate the error rate (otherwise it stays fixed)
            - mask (`np.array`): 2 * (m - 1) booleans, False holds a fraction at zero
            - max_iter (`int`): maximum number of iterations (at least 2 are run)
            - tol (`float`): minimum log-likelihood improvement to keep iterating
            - binom (`bool`): include the binomial coefficient in the emissions

        Returns:
            - res (`dict`): rf, ep, loglik, n_iter, delta and the per-iteration logliks

        """
        return self.run_em(
            ref,
            alt,
            codes,
            n_ind,
            rf,
            ep,
            sex_spec=sex_spec,
            seq_error=seq_error,
            mask=mask,
            max_iter=max_iter,
            tol=tol,
            binom=binom,
        )

    def pooled_rf(self, rf, m):
        """Reduce rf to one fraction per interval for the pooled score model."""
        rf = np.asarray(rf, dtype=np.float64)
        if rf.size == m - 1:
            return rf
        if rf.size == 2 * (m - 1):
            if not np.allclose(rf[: m - 1], rf[m - 1 :]):
                raise ValueError("The score function requires equal paternal and maternal fractions!")
            return rf[: m - 1]
        raise ValueError(f"Expected {m - 1} or {2 * (m - 1)} recombination fractions, got {rf.size}!")

    def score_loglik(self, ref, alt, codes, n_ind, rf, ep, binom=False):
        """Score vector and log-likelihood under the pooled model.

        Returns:
            - grad (`np.array`): m-length gradient on the link scale
            - loglik (`float`): total log-likelihood

        """
        ref, alt, codes, n_ind = self.check_data(ref, alt, codes, n_ind)
        n, m = ref.shape
        r = self.pooled_rf(rf, m)
        r, ep = self.check_params(np.concatenate([r, r]), ep, m)
        r = r[: m - 1]
        bin_coef = self.binomial_coefs(ref, alt) if binom else np.ones(ref.shape)
        geno = self.genotype_table(codes, n_ind)
        emissions = self.emission_table(ref, alt, ep, geno, bin_coef)
        emissions_der = np.take_along_axis(
            emission_der_probs(ref, alt, ep, bin_coef), geno, axis=2
        )
        trans = transition_matrices(r, r)
        trans_der = transition_der_matrices(r)
        grad = np.zeros(m)
        loglik = 0.0
        for i in range(n):
            status, ll = score_algo(
                emissions[i], emissions_der[i], trans, trans_der, grad
            )
            if status >= 0:
                raise DegenerateLikelihoodError(i, status)
            loglik += ll
        return grad, loglik

    def score(self, ref, alt, codes, n_ind, rf, ep, binom=False):
        """Analytic score of the pooled log-likelihood.

        The gradient is taken w.r.t. the link-scale parameters
        x_j (r_j = 1 / (2 (1 + exp(-x_j)))) and theta (ep = 1 / (1 + exp(-theta))).

        Arguments:
            - ref (`np.array`): n x m array of reference allele read counts
            - alt (`np.array`): n x m array of alternative allele read counts
            - codes (`np.array`): f x m array of origin-pattern codes in 1..16
            - n_ind (`np.array`): f-length array of individuals per family
            - rf (`np.array`): m - 1 pooled fractions (or 2 * (m - 1) with equal halves)
            - ep (`float`): sequencing error rate
            - binom (`bool`): include the binomial coefficient in the emissions

        Returns:
            - grad (`np.array`): m - 1 interval entries followed by the error rate entry

        """
        return self.score_loglik(ref, alt, codes, n_ind, rf, ep, binom=binom)[0]

    def est_rf_ep(
        self, ref, alt, codes, n_ind, rf, ep, algo="L-BFGS-B", binom=False, **kwargs
    ):
        """Estimate pooled fractions and the error rate by direct likelihood optimization.

        The optimization runs on the link scale, using the analytic score as Jacobian.

        Arguments:
            - rf (`np.array`): initial pooled fractions in (0, 0.5)
            - ep (`float`): initial error rate in (0, 1)
            - algo (`str`): one of L-BFGS-B, BFGS or CG

        Returns:
            - res (`dict`): rf (2 * (m - 1) layout), ep, loglik, n_iter and success

        """
        assert algo in ["L-BFGS-B", "BFGS", "CG"]
        m = np.asarray(ref).shape[1]
        r0 = self.pooled_rf(rf, m)
        assert np.all(r0 > 0) and np.all(r0 < 0.5)
        assert (ep > 0) and (ep < 1)
        x0 = np.concatenate([rf_to_link(r0), [ep_to_link(ep)]])

        def f(x):
            grad, ll = self.score_loglik(
                ref, alt, codes, n_ind, link_to_rf(x[:-1]), link_to_ep(x[-1]), binom=binom
            )
            return -ll, -grad

        opt_res = minimize(f, x0=x0, jac=True, method=algo, **kwargs)
        r_est = link_to_rf(opt_res.x[:-1])
        ep_est = float(link_to_ep(opt_res.x[-1]))
        logger.info(
            f"Optimization ({algo}) finished after {opt_res.nit} iterations: "
            f"loglik={-opt_res.fun:.4f}, success={opt_res.success}."
        )
        return {
            "rf": np.concatenate([r_est, r_est]),
            "ep": ep_est,
            "loglik": -opt_res.fun,
            "n_iter": opt_res.nit,
            "success": opt_res.success,
        }


class UnknownPhaseHMM(LinkageHMM):
    """Linkage HMM for origin-pattern codes with unknown parental phase (5 codes).

    Recombination fractions are always sex-specific under this model.
    """

    def __init__(self):
        """Initialize the unknown-phase linkage HMM."""
        super().__init__()
        self.classes = UNKNOWN_PHASE_CLASSES

    def em_algorithm(
        self,
        ref,
        alt,
        codes,
        n_ind,
        rf,
        ep,
        seq_error=True,
        mask=None,
        max_iter=1000,
        tol=1e-6,
        binom=False,
    ):
        """Estimate sex-specific recombination fractions and the error rate via EM.

        Arguments are those of `KnownPhaseHMM.em_algorithm` with codes in 1..5.
        """
        return self.run_em(
            ref,
            alt,
            codes,
            n_ind,
            rf,
            ep,
            sex_spec=True,
            seq_error=seq_error,
            mask=mask,
            max_iter=max_iter,
            tol=tol,
            binom=binom,
        )
