"""Testing module for the scaled forward-backward algorithm."""

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from linkhmm_utils import forward_algo, transition_matrices
from utils import compose_rf, splice_zero_depth, toy_data

from linkhmm import DegenerateLikelihoodError, KnownPhaseHMM, LinkageSim, UnknownPhaseHMM

hmm = KnownPhaseHMM()
up_hmm = UnknownPhaseHMM()
sim = LinkageSim()
data_sim = sim.full_sib_sim(m=8, nind=20, nfam=2, rf=0.1, ep=0.02, depth=4.0, seed=7)
data_toy = toy_data()


@pytest.mark.parametrize("data", [data_toy, data_sim])
def test_forward_algorithm(data):
    """The scaled forward variables sum to one at every marker."""
    alphas, logw, loglik = hmm.forward_algorithm(
        data["ref"], data["alt"], data["codes"], data["n_ind"], data["rf"], data["ep"]
    )
    assert np.allclose(alphas.sum(axis=2), 1.0, atol=1e-9)
    assert np.all(alphas >= 0)
    assert np.isclose(loglik, logw.sum())
    assert loglik < 0


@pytest.mark.parametrize("data", [data_toy, data_sim])
def test_backward_algorithm(data):
    """The backward pass reproduces the likelihood of the forward pass."""
    alphas, _, loglik_fwd = hmm.forward_algorithm(
        data["ref"], data["alt"], data["codes"], data["n_ind"], data["rf"], data["ep"]
    )
    betas, logw, loglik = hmm.backward_algorithm(
        data["ref"], data["alt"], data["codes"], data["n_ind"], data["rf"], data["ep"]
    )
    assert np.isclose(loglik, loglik_fwd)
    # At the first marker sum_s alpha * beta * w equals one
    check = np.sum(alphas[:, 0, :] * betas[:, 0, :], axis=1) * np.exp(logw[:, 0])
    assert np.allclose(check, 1.0)


@pytest.mark.parametrize("data", [data_toy, data_sim])
def test_fwd_bwd_algorithm(data):
    """Posterior state and joint transition probabilities are consistent."""
    gammas, xis, loglik = hmm.forward_backward(
        data["ref"], data["alt"], data["codes"], data["n_ind"], data["rf"], data["ep"]
    )
    m = data["ref"].shape[1]
    assert gammas.shape == (data["ref"].shape[0], m, 4)
    assert xis.shape == (data["ref"].shape[0], m - 1, 4, 4)
    assert np.all(gammas >= 0) and np.all(xis >= 0)
    assert np.allclose(gammas.sum(axis=2), 1.0)
    assert np.allclose(xis.sum(axis=(2, 3)), 1.0)
    # Marginals of the joint transitions are the state posteriors
    assert np.allclose(xis.sum(axis=3), gammas[:, :-1, :])
    assert np.allclose(xis.sum(axis=2), gammas[:, 1:, :])
    assert np.isclose(loglik, hmm.loglik(
        data["ref"], data["alt"], data["codes"], data["n_ind"], data["rf"], data["ep"]
    ))


@settings(max_examples=25, deadline=None)
@given(
    r=st.floats(min_value=0.0, max_value=0.5, allow_nan=False),
    ep=st.floats(min_value=1e-3, max_value=0.2, allow_nan=False),
)
def test_forward_scaling_property(r, ep):
    """Scaled forward variables sum to one for any valid parameters."""
    rf = np.repeat(r, 2 * (data_sim["m"] - 1))
    alphas, _, loglik = hmm.forward_algorithm(
        data_sim["ref"], data_sim["alt"], data_sim["codes"], data_sim["n_ind"], rf, ep
    )
    assert np.allclose(alphas.sum(axis=2), 1.0, atol=1e-9)
    assert np.isfinite(loglik)


def test_uninformative_data():
    """Without reads the likelihood is one and posteriors are uniform."""
    ref = np.zeros(shape=(3, 4), dtype=int)
    alt = np.zeros(shape=(3, 4), dtype=int)
    codes = np.array([[1, 5, 9, 13]])
    gammas, _, loglik = hmm.forward_backward(ref, alt, codes, [3], np.repeat(0.1, 6), 0.01)
    assert np.isclose(loglik, 0.0)
    assert np.allclose(gammas, 0.25)


@pytest.mark.parametrize("rf_left", [0.0, 0.05, 0.12])
def test_zero_depth_marker(rf_left):
    """An added zero-depth marker leaves the posteriors of the other markers unchanged."""
    pos = 1
    r0 = data_toy["rf"][pos - 1]
    rf_right = (r0 - rf_left) / (1.0 - 2.0 * rf_left)
    assert np.isclose(compose_rf(rf_left, rf_right), r0)
    spliced = splice_zero_depth(data_toy, rf_left, rf_right, pos=pos)
    gammas, _, loglik = hmm.forward_backward(
        data_toy["ref"], data_toy["alt"], data_toy["codes"], data_toy["n_ind"],
        data_toy["rf"], data_toy["ep"],
    )
    gammas_z, _, loglik_z = hmm.forward_backward(
        spliced["ref"], spliced["alt"], spliced["codes"], spliced["n_ind"],
        spliced["rf"], spliced["ep"],
    )
    keep = [i for i in range(gammas_z.shape[1]) if i != pos]
    assert np.allclose(gammas_z[:, keep, :], gammas)
    assert np.isclose(loglik_z, loglik)
    if rf_left == 0.0:
        # Without recombination the spliced marker copies its left neighbour
        assert np.allclose(gammas_z[:, pos, :], gammas[:, pos - 1, :])


def test_zero_depth_kernel():
    """A zero-depth marker has weight one and keeps the propagated state vector."""
    emissions = np.array(
        [[0.1, 0.5, 0.5, 0.9], [1.0, 1.0, 1.0, 1.0], [0.2, 0.2, 0.7, 0.7]]
    )
    trans = transition_matrices(np.array([0.0, 0.2]), np.array([0.0, 0.2]))
    alphas = np.zeros(shape=(3, 4))
    logw = np.zeros(3)
    assert forward_algo(emissions, trans, alphas, logw) == -1
    assert np.isclose(logw[1], 0.0)
    assert np.allclose(alphas[1], alphas[0])


def test_degenerate_likelihood():
    """Reads impossible under every state raise a distinguishable error."""
    ref = np.array([[0, 2], [3, 1]])
    alt = np.array([[4, 0], [0, 1]])
    codes = np.array([[13, 1]])
    with pytest.raises(DegenerateLikelihoodError) as excinfo:
        hmm.loglik(ref, alt, codes, [2], [0.1, 0.1], 0.0)
    assert excinfo.value.ind == 0
    assert excinfo.value.snp == 0
    with pytest.raises(DegenerateLikelihoodError):
        hmm.forward_backward(ref, alt, codes, [2], [0.1, 0.1], 0.0)
    with pytest.raises(DegenerateLikelihoodError):
        hmm.em_algorithm(ref, alt, codes, [2], [0.1, 0.1], 0.0)
    # A positive error rate makes the same reads possible
    assert np.isfinite(hmm.loglik(ref, alt, codes, [2], [0.1, 0.1], 0.01))


def test_unknown_phase_fwd_bwd():
    """Test the forward-backward algorithm under the unknown-phase codes."""
    up_sim = LinkageSim(known_phase=False)
    data = up_sim.full_sib_sim(m=6, nind=15, rf=0.1, ep=0.02, seed=3)
    gammas, xis, loglik = up_hmm.forward_backward(
        data["ref"], data["alt"], data["codes"], data["n_ind"], data["rf"], data["ep"]
    )
    assert np.allclose(gammas.sum(axis=2), 1.0)
    assert np.allclose(xis.sum(axis=(2, 3)), 1.0)
    assert loglik < 0


def test_underflowed_likelihood():
    """Very deep reads at an all-heterozygous marker underflow the forward weight."""
    ref = np.array([[600, 2]])
    alt = np.array([[600, 1]])
    with pytest.raises(DegenerateLikelihoodError, match="underflowed") as excinfo:
        hmm.loglik(ref, alt, [[14, 1]], [1], [0.1, 0.1], 0.01)
    assert excinfo.value.snp == 0
