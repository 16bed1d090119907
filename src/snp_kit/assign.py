import logging
from typing import Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy.stats import chi2

from .genotypes import GenotypeMatrix, check_datatype
from .ordination import pcoa, pcoa_plot
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

# Maximum number of ordination axes used for the confidence envelope
HARD_LIMIT = 8
DEFAULT_PLEVEL = 0.999
UNKNOWN_LABEL = "unknown"


def assign_mahalanobis(x: GenotypeMatrix,
                       unknown: str,
                       plevel: float = DEFAULT_PLEVEL,
                       plot_path: Optional[str] = None,
                       verbose: Optional[int] = None) -> pd.DataFrame:
    """
    Assign an individual of unknown provenance to putative source populations.

    The unknown is placed in its own group and the data are ordinated. Only the
    axes whose share of variation exceeds the mean share are kept, up to eight.
    For each population the squared Mahalanobis distance of the unknown from
    the population centroid is compared against a chi-square distribution with
    as many degrees of freedom as retained axes.

    Args:
        x: Genotype matrix holding the unknown and the putative sources
        unknown: Name of the individual to assign
        plevel: Probability level of the confidence envelope (0-1)
        plot_path: Optional path for a PCA plot with population ellipses
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        DataFrame with columns unknown, pop, MahalD, pval, critval, assign,
        sorted by decreasing pval

    Raises:
        RuntimeError: If there is only one population, the unknown is not among
            the individuals, or there are fewer loci than populations
    """
    verbose = check_verbosity(verbose)
    flag_start("assign_mahalanobis", verbose)
    check_datatype(x)

    if x.n_pop < 2:
        raise RuntimeError("Fatal Error: Only one population, including the unknown, no putative source")
    if unknown not in x.ind_names:
        raise RuntimeError("Fatal Error: Unknown must be listed among the individuals in the genotype matrix!")
    if plevel > 1 or plevel < 0:
        logger.warning(f"  Value of plevel must be between 0 and 1, set to {DEFAULT_PLEVEL}")
        plevel = DEFAULT_PLEVEL
    if x.n_loc < x.n_pop:
        raise RuntimeError("Fatal Error: Number of loci less than number of populations")

    x = x.copy()
    pops = np.where(np.asarray(x.ind_names) == unknown, UNKNOWN_LABEL, x.pop.astype(object))
    x.pop = pops

    ordination = pcoa(x, nfactors=HARD_LIMIT, verbose=0)
    if plot_path:
        fig = pcoa_plot(ordination, x, ellipse=True, plevel=plevel, verbose=0, output_path=plot_path)
        plt.close(fig)

    e = ordination.percent_explained()
    first_est = int((e > e.mean()).sum())
    dim = max(1, min(first_est, HARD_LIMIT, ordination.nfactors))
    if verbose >= 2:
        logger.info(f"  Number of dimensions with substantial eigenvalues: {first_est}. Hardwired limit {HARD_LIMIT}")
        logger.info("    Selecting the smallest of the two")
        logger.info(f"    Dimension of confidence envelope set at {dim}")

    scores = ordination.scores.to_numpy()[:, :dim]
    u = scores[pops == UNKNOWN_LABEL][0]
    critval = 1 - plevel

    rows = []
    for p in sorted(set(pops.tolist()) - {UNKNOWN_LABEL}):
        cloud = scores[pops == p]
        if cloud.shape[0] < 2:
            logger.warning(f"  Population {p} has fewer than two individuals, skipped")
            continue
        means = cloud.mean(axis=0)
        cov = np.atleast_2d(np.cov(cloud, rowvar=False))
        diff = u - means
        d = float(diff @ np.linalg.pinv(cov) @ diff)
        pval = float(chi2.sf(d, df=dim))
        rows.append({
            'unknown': unknown,
            'pop': p,
            'MahalD': d,
            'pval': pval,
            'critval': critval,
            'assign': 'yes' if pval >= critval else 'no',
        })

    df = pd.DataFrame(rows, columns=['unknown', 'pop', 'MahalD', 'pval', 'critval', 'assign'])
    df = df.sort_values('pval', ascending=False, kind='stable').reset_index(drop=True)
    if verbose >= 3:
        logger.info(f"\n{df.to_string(index=False)}")
        yes = df[df['assign'] == 'yes']
        best = yes['pop'].iloc[0] if len(yes) else None
        logger.info(f"  Best assignment is the population with the largest probability of assignment, in this case {best}")

    flag_end("assign_mahalanobis", verbose)
    return df
