"""pyPRSCS package: PRS-CS Gibbs sampler and GIG random variate generation."""
from .gigrnd import gigrnd, gig_moments, psi, dpsi, GIGRejectionError
from .model_prscs import (PRS_CS, prs_cs_mcmc, SummaryStatistics, PosteriorEstimates,
                          MCMCConfigError, MCMCSamplingError, CholeskyError)

__all__ = ["PRS_CS", "prs_cs_mcmc", "SummaryStatistics", "PosteriorEstimates",
           "MCMCConfigError", "MCMCSamplingError", "CholeskyError",
           "gigrnd", "gig_moments", "psi", "dpsi", "GIGRejectionError"]
__version__ = "1.0"
