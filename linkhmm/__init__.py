"""Linkhmm is an HMM-based model for linkage analysis in full-sib families.

Linkhmm estimates recombination fractions between adjacent markers
and a sequencing error rate from low-coverage read counts, given the
origin-pattern code of each marker in each family.

Modules exported are:

* KnownPhaseHMM: EM (pooled or sex-specific), score function and optimizer for known-phase codes.
* UnknownPhaseHMM: sex-specific EM for unknown-phase codes.
* LinkageSim: module to generate synthetic full-sib read-count data.
"""

__version__ = "0.1.0a"

from .linkhmm import (
    DegenerateLikelihoodError,
    KnownPhaseHMM,
    UnknownPhaseHMM,
    ep_to_link,
    link_to_ep,
    link_to_rf,
    rf_to_link,
)
from .simulator import LinkageSim
