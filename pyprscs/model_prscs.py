"""
PRS-CS: polygenic prediction with continuous shrinkage (CS) priors.

This module implements the Gibbs sampler that estimates per-variant effect sizes
from GWAS summary statistics (marginal effects beta_mrg, minor-allele frequencies)
and blockwise LD reference matrices. Each iteration draws blockwise effect sizes,
the residual variance, the local shrinkage parameters (through GIG draws) and,
optionally, the global shrinkage parameter. Posterior means are accumulated over
the post burn-in, thinned iterations.
"""
from __future__ import annotations
import math
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import numpy as np
from joblib import Parallel, delayed
from scipy.linalg import cholesky, solve_triangular

from .gigrnd import gigrnd


class MCMCConfigError(ValueError):
    """Invalid sampler configuration or inconsistent inputs, detected before sampling."""


class MCMCSamplingError(RuntimeError):
    """Fatal numerical failure during sampling.

    Attributes itr (1-based iteration), block (LD block index) and variant (global
    variant index) locate the fault; block and variant may be None.
    """
    def __init__(self, message: str, itr: int, block: Optional[int] = None, variant: Optional[int] = None):
        super().__init__(message)
        self.itr = itr
        self.block = block
        self.variant = variant

    def __reduce__(self):
        # keeps itr/block/variant when raised in a joblib worker process
        return type(self), (self.args[0], self.itr, self.block, self.variant)


class CholeskyError(MCMCSamplingError):
    """LD block matrix plus diag(1/psi) is not numerically positive definite."""


@dataclass(frozen=True, eq=False)
class SummaryStatistics:
    """Per-variant marginal effects and minor-allele frequencies, ordered as the LD blocks."""
    beta_mrg: np.ndarray
    maf: np.ndarray
    snp: Optional[Sequence[str]] = None

    def __post_init__(self):
        beta_mrg = np.asarray(self.beta_mrg, dtype=np.float64)
        maf = np.asarray(self.maf, dtype=np.float64)
        if beta_mrg.ndim != 1 or maf.ndim != 1:
            raise MCMCConfigError("beta_mrg and maf must be one-dimensional.")
        if beta_mrg.size != maf.size:
            raise MCMCConfigError(f"beta_mrg has {beta_mrg.size} variants but maf has {maf.size}.")
        if not np.all(np.isfinite(beta_mrg)):
            raise MCMCConfigError("beta_mrg contains non-finite values (NaN/Inf).")
        if not np.all((maf > 0) & (maf < 1)):
            raise MCMCConfigError("maf values must lie in (0, 1).")
        if self.snp is not None and len(self.snp) != beta_mrg.size:
            raise MCMCConfigError(f"snp has {len(self.snp)} identifiers but there are {beta_mrg.size} variants.")
        object.__setattr__(self, "beta_mrg", beta_mrg)
        object.__setattr__(self, "maf", maf)

    @property
    def p(self) -> int:
        return int(self.beta_mrg.size)

    @classmethod
    def from_dict(cls, sst: Mapping[str, Any]) -> "SummaryStatistics":
        """Build from a PRS-CS style mapping with keys 'BETA', 'MAF' and optionally 'SNP'."""
        try:
            return cls(beta_mrg=sst["BETA"], maf=sst["MAF"], snp=sst.get("SNP"))
        except KeyError as exc:
            raise MCMCConfigError(f"summary statistics mapping is missing key {exc}.") from exc

    def variant_name(self, j: int) -> str:
        return str(self.snp[j]) if self.snp is not None else f"variant {j}"


@dataclass(frozen=True, eq=False)
class PosteriorEstimates:
    """Posterior means returned by the sampler."""
    beta_est: np.ndarray
    psi_est: np.ndarray
    sigma_est: float
    phi_est: float

    def to_dict(self) -> Dict[str, Union[np.ndarray, float]]:
        return dict(beta_est=self.beta_est, psi_est=self.psi_est, sigma_est=self.sigma_est, phi_est=self.phi_est)


def _symmetrize_ld(R: Any) -> np.ndarray:
    """Convert an LD block to a float64 symmetric matrix (diagonal left as given)."""
    R = np.asarray(R, dtype=np.float64)
    if R.size == 0:
        return np.zeros((0, 0), dtype=np.float64)
    if R.ndim != 2 or R.shape[0] != R.shape[1]:
        raise MCMCConfigError(f"LD block must be a square matrix, got shape {R.shape}.")
    return 0.5 * (R + R.T)


def check_ld_blocks(ld_blk: Sequence[Any], p: int) -> List[np.ndarray]:
    """Validate LD blocks against the variant count; empty blocks are kept in place."""
    blocks = []
    for kk, blk in enumerate(ld_blk):
        try:
            R = _symmetrize_ld(blk)
        except MCMCConfigError as exc:
            raise MCMCConfigError(f"LD block {kk}: {exc}") from exc
        if not np.all(np.isfinite(R)):
            raise MCMCConfigError(f"LD block {kk} contains non-finite values (NaN/Inf).")
        blocks.append(R)
    n_ld = sum(R.shape[0] for R in blocks)
    if n_ld != p:
        raise MCMCConfigError(f"LD blocks cover {n_ld} variants but summary statistics have {p}.")
    return blocks


def check_chain(n_iter: int, n_burnin: int, thin: int) -> int:
    """Validate iteration settings and return the number of retained samples."""
    for name, value in (("n_iter", n_iter), ("n_burnin", n_burnin), ("thin", thin)):
        try:
            integral = int(value) == value
        except (TypeError, ValueError, OverflowError):
            integral = False
        if not integral:
            raise MCMCConfigError(f"{name} must be an integer, got {value!r}.")
    n_iter = int(n_iter); n_burnin = int(n_burnin); thin = int(thin)
    if n_burnin < 0:
        raise MCMCConfigError("n_burnin must be a non-negative integer.")
    if n_iter <= n_burnin:
        raise MCMCConfigError(f"n_iter ({n_iter}) must exceed n_burnin ({n_burnin}).")
    if thin < 1:
        raise MCMCConfigError("thin must be a positive integer.")
    if (n_iter - n_burnin) % thin != 0:
        raise MCMCConfigError(f"n_iter - n_burnin ({n_iter - n_burnin}) must be a multiple of thin ({thin}).")
    return (n_iter - n_burnin) // thin


def _check_positive(name: str, value: float) -> float:
    value = float(value)
    if not (math.isfinite(value) and value > 0):
        raise MCMCConfigError(f"{name} must be finite and positive, got {value!r}.")
    return value


def sample_beta_block(ld: np.ndarray, beta_mrg: np.ndarray, psi: np.ndarray, sigma: float, n: int,
                      rng: np.random.Generator) -> Tuple[np.ndarray, float]:
    """Draw the effect sizes of one LD block from their conditional posterior.

    With D = R + diag(1/psi) = U'U, the draw is beta = U^-1 (U'^-1 beta_mrg + sqrt(sigma/n) z),
    i.e. N(D^-1 beta_mrg, sigma/n D^-1). Returns the draw and the quadratic form beta' D beta.
    Raises numpy.linalg.LinAlgError if D is not positive definite.
    """
    m = ld.shape[0]
    dinvt = ld + np.diag(1.0 / psi)
    dinvt_chol = cholesky(dinvt, lower=False, check_finite=False)
    beta_tmp = solve_triangular(dinvt_chol, beta_mrg, trans="T", lower=False, check_finite=False) \
        + rng.standard_normal(m) * math.sqrt(sigma / n)
    beta = solve_triangular(dinvt_chol, beta_tmp, lower=False, check_finite=False)
    quad = float(beta @ dinvt @ beta)
    return beta, quad


def _block_slices(blocks: Sequence[np.ndarray]) -> List[Tuple[int, slice]]:
    """(block index, variant slice) for every non-empty block; empty blocks do not advance the offset."""
    out = []
    mm = 0
    for kk, R in enumerate(blocks):
        m = R.shape[0]
        if m == 0:
            continue
        out.append((kk, slice(mm, mm + m)))
        mm += m
    return out


def _draw_block(kk: int, ld: np.ndarray, beta_mrg: np.ndarray, psi: np.ndarray, sigma: float, n: int,
                rng: np.random.Generator, itr: int) -> Tuple[np.ndarray, float]:
    try:
        return sample_beta_block(ld, beta_mrg, psi, sigma, n, rng)
    except np.linalg.LinAlgError as exc:
        raise CholeskyError(f"iteration {itr}: Cholesky factorization failed for LD block {kk}.",
                            itr=itr, block=kk) from exc


def _sample_psi_chunk(idx: np.ndarray, a: float, delta: np.ndarray, beta: np.ndarray, sigma: float, n: int,
                      rng: np.random.Generator, itr: int, sst: SummaryStatistics) -> np.ndarray:
    out = np.empty(idx.size, dtype=np.float64)
    for ii, jj in enumerate(idx):
        try:
            out[ii] = gigrnd(a - 0.5, 2.0 * delta[jj], n * beta[jj]**2 / sigma, rng)
        except ValueError as exc:
            raise MCMCSamplingError(f"iteration {itr}: local shrinkage draw failed for {sst.variant_name(jj)}: {exc}",
                                    itr=itr, variant=int(jj)) from exc
    return out


def prs_cs_mcmc(a: float, b: float, phi: Optional[float], sst: SummaryStatistics, n: int,
                ld_blk: Sequence[Any], n_iter: int, n_burnin: int, thin: int, beta_std: bool,
                verbose: bool, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None,
                n_jobs: int = 1,
                callback: Optional[Callable[[int, np.ndarray, np.ndarray, float, float], None]] = None
                ) -> PosteriorEstimates:
    """Gibbs sampler for the PRS-CS model.

    Parameters
    ----------
    a, b : float
        Prior hyperparameters of the local shrinkage (strictly positive).
    phi : float or None
        Global shrinkage parameter. None means it is estimated under a standard
        half-Cauchy prior on sqrt(phi); a value keeps it fixed and is returned as phi_est.
    sst : SummaryStatistics
        Marginal effects and MAFs, ordered as the concatenated LD blocks.
    n : int
        GWAS sample size.
    ld_blk : sequence of 2-D arrays
        LD correlation matrices; sizes must sum to the number of variants. Empty
        blocks are skipped.
    n_iter, n_burnin, thin : int
        Chain length, burn-in and thinning interval; (n_iter - n_burnin) must be a
        positive multiple of thin.
    beta_std : bool
        If False, posterior effect sizes are returned per allele, i.e. divided by
        sqrt(2 maf (1 - maf)).
    verbose : bool
        Print progress every 100 iterations.
    seed : int, optional
        Seed for numpy.random.default_rng. Without seed (and without rng) the
        stream is seeded from OS entropy.
    rng : numpy.random.Generator, optional
        Ready generator, used instead of seed. Every draw of the run, including the
        GIG rejection sampler, consumes this single stream.
    n_jobs : int
        1 runs the sequential reference sampler. Larger values draw LD blocks and
        local shrinkage chunks in joblib worker processes, with per-task generators
        spawned from the main stream each iteration; the result is reproducible for
        a fixed seed and n_jobs but differs from the sequential run.
    callback : callable, optional
        Called as callback(itr, beta, psi, sigma, phi) with copies of the state on
        every retained iteration.

    Returns
    -------
    PosteriorEstimates
    """
    a = _check_positive("a", a)
    b = _check_positive("b", b)
    phi_updt = phi is None
    phi = 1.0 if phi_updt else _check_positive("phi", phi)
    if not isinstance(sst, SummaryStatistics):
        raise MCMCConfigError("sst must be a SummaryStatistics instance.")
    if int(n) != n or n <= 0:
        raise MCMCConfigError(f"sample size n must be a positive integer, got {n!r}.")
    n = int(n)
    n_pst = check_chain(n_iter, n_burnin, thin)
    n_iter = int(n_iter); n_burnin = int(n_burnin); thin = int(thin)
    n_jobs = int(n_jobs)
    if n_jobs < 1:
        raise MCMCConfigError("n_jobs must be >= 1.")
    if seed is not None and rng is not None:
        raise MCMCConfigError("Pass either seed or rng, not both.")
    p = sst.p
    blocks = check_ld_blocks(ld_blk, p)
    tasks = _block_slices(blocks)
    if rng is None:
        rng = np.random.default_rng(seed)

    if verbose:
        print("[PRS-CS] Running Markov Chain Monte Carlo (MCMC) sampler...")

    beta_mrg = sst.beta_mrg
    maf = sst.maf

    beta = np.zeros(p, dtype=np.float64)
    psi = np.ones(p, dtype=np.float64)
    sigma = 1.0

    beta_est = np.zeros(p, dtype=np.float64)
    psi_est = np.zeros(p, dtype=np.float64)
    sigma_est = 0.0
    phi_est = 0.0

    chunks = np.array_split(np.arange(p), n_jobs)
    # worker processes are kept alive across iterations
    with (Parallel(n_jobs=n_jobs) if n_jobs > 1 else nullcontext()) as parallel:
        for itr in range(1, n_iter + 1):
            if verbose and itr % 100 == 0:
                print(f"[PRS-CS] Iteration {itr:4d} of {n_iter}")

            quad = 0.0
            if parallel is None:
                for kk, idx in tasks:
                    beta[idx], q_blk = _draw_block(kk, blocks[kk], beta_mrg[idx], psi[idx], sigma, n, rng, itr)
                    quad += q_blk
            else:
                draws = parallel(delayed(_draw_block)(kk, blocks[kk], beta_mrg[idx], psi[idx], sigma, n, child, itr)
                                 for (kk, idx), child in zip(tasks, rng.spawn(len(tasks))))
                for (kk, idx), (beta_blk, q_blk) in zip(tasks, draws):
                    beta[idx] = beta_blk
                    quad += q_blk

            err = max(n / 2.0 * (1.0 - 2.0 * float(beta @ beta_mrg) + quad),
                      n / 2.0 * float(np.sum(beta**2 / psi)))
            if not (math.isfinite(err) and err > 0):
                raise MCMCSamplingError(f"iteration {itr}: residual variance rate is not positive ({err!r}).", itr=itr)
            sigma = 1.0 / rng.gamma((n + p) / 2.0, 1.0 / err)

            delta = rng.gamma(a + b, 1.0 / (psi + phi))

            if parallel is None:
                psi = _sample_psi_chunk(np.arange(p), a, delta, beta, sigma, n, rng, itr, sst)
            else:
                psi = np.concatenate(parallel(
                    delayed(_sample_psi_chunk)(idx, a, delta, beta, sigma, n, child, itr, sst)
                    for idx, child in zip(chunks, rng.spawn(len(chunks)))))
            psi[psi > 1] = 1.0

            if phi_updt:
                w = rng.gamma(1.0, 1.0 / (phi + 1.0))
                phi = rng.gamma(p * b + 0.5, 1.0 / (float(np.sum(delta)) + w))

            if itr > n_burnin and itr % thin == 0:
                beta_est += beta / n_pst
                psi_est += psi / n_pst
                sigma_est += sigma / n_pst
                if phi_updt:
                    phi_est += phi / n_pst
                if callback is not None:
                    callback(itr, beta.copy(), psi.copy(), float(sigma), float(phi))

    if not phi_updt:
        phi_est = phi

    if not beta_std:
        beta_est /= np.sqrt(2.0 * maf * (1.0 - maf))

    if verbose and phi_updt:
        print(f"[PRS-CS] Estimated global shrinkage parameter: {phi_est:1.2e}")
    if verbose:
        print("[PRS-CS] MCMC sampling completed.")

    return PosteriorEstimates(beta_est=beta_est, psi_est=psi_est, sigma_est=float(sigma_est), phi_est=float(phi_est))


class PRS_CS:
    """
    PRS-CS estimator: posterior mean SNP effect sizes under a continuous shrinkage prior.

    Hyperparameters and chain settings are fixed at construction; fit runs one chain
    and stores beta_est, psi_est, sigma_est, phi_est and n_retained as attributes.
    The generator is created once from seed, so repeated fits continue the stream.
    """
    def __init__(self,
                 a: float = 1.0,
                 b: float = 0.5,
                 phi: Optional[float] = None,
                 n_iter: int = 1000,
                 n_burnin: int = 500,
                 thin: int = 5,
                 beta_std: bool = False,
                 verbose: bool = False,
                 seed: Optional[int] = None,
                 n_jobs: int = 1):
        self.a = float(a)
        self.b = float(b)
        self.phi = None if phi is None else float(phi)
        self.n_iter = int(n_iter)
        self.n_burnin = int(n_burnin)
        self.thin = int(thin)
        self.beta_std = bool(beta_std)
        self.verbose = bool(verbose)
        self.n_jobs = int(n_jobs)
        self.rng = np.random.default_rng(seed)
        self.beta_est: Optional[np.ndarray] = None
        self.psi_est: Optional[np.ndarray] = None
        self.sigma_est: Optional[float] = None
        self.phi_est: Optional[float] = None
        self.n_retained: int = 0

    def fit(self,
            sst: Union[SummaryStatistics, Mapping[str, Any]],
            n: int,
            ld_blk: Sequence[Any],
            callback: Optional[Callable[[int, np.ndarray, np.ndarray, float, float], None]] = None) -> "PRS_CS":
        """Run the Gibbs sampler on summary statistics and LD blocks. Returns self."""
        if not isinstance(sst, SummaryStatistics):
            sst = SummaryStatistics.from_dict(sst)
        res = prs_cs_mcmc(a=self.a, b=self.b, phi=self.phi, sst=sst, n=n, ld_blk=ld_blk,
                          n_iter=self.n_iter, n_burnin=self.n_burnin, thin=self.thin,
                          beta_std=self.beta_std, verbose=self.verbose, rng=self.rng,
                          n_jobs=self.n_jobs, callback=callback)
        self.beta_est = res.beta_est
        self.psi_est = res.psi_est
        self.sigma_est = res.sigma_est
        self.phi_est = res.phi_est
        self.n_retained = (self.n_iter - self.n_burnin) // self.thin
        return self

    def estimates(self) -> PosteriorEstimates:
        if self.beta_est is None:
            raise RuntimeError("PRS_CS has not been fitted yet.")
        return PosteriorEstimates(beta_est=self.beta_est, psi_est=self.psi_est,
                                  sigma_est=self.sigma_est, phi_est=self.phi_est)
