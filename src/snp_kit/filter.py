import logging
from typing import Optional

import numpy as np

from .genotypes import GenotypeMatrix, SNP, SILICODART, DEFAULT_POP, check_datatype
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

# Constants for locus filtering
DEFAULT_TAG_LOWER = 20
DEFAULT_TAG_UPPER = 69
TAG_COLUMN = "TrimmedSequence"


def _monomorphic_mask(x: GenotypeMatrix):
    """
    Flag loci that are monomorphic or scored all NA.

    Returns:
        (monomorphic_or_all_na, all_na) boolean arrays over loci
    """
    g = x.genotypes
    scored = ~np.isnan(g)
    all_na = ~scored.any(axis=0)
    # homozygous states: SNP 0/2, SilicoDArT absence/presence 0/1
    hi = 2.0 if x.datatype == SNP else 1.0
    all_lo = np.all(np.where(scored, g == 0.0, True), axis=0)
    all_hi = np.all(np.where(scored, g == hi, True), axis=0)
    return all_lo | all_hi | all_na, all_na


def filter_monomorphs(x: GenotypeMatrix, verbose: Optional[int] = None) -> GenotypeMatrix:
    """
    Remove monomorphic loci, including those with all NAs.

    A DArT dataset will not have monomorphic loci, but they can arise, along with
    loci scored all NA, when populations or individuals are deleted. For SNP data
    NAs likely represent null alleles; for tag presence/absence data they are
    missing values.

    Args:
        x: Input genotype matrix (SNP or SilicoDArT)
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        GenotypeMatrix with monomorphic and all-NA loci removed
    """
    verbose = check_verbosity(verbose)
    flag_start("filter_monomorphs", verbose)
    check_datatype(x)

    if verbose >= 2:
        logger.info("  Identifying monomorphic loci")
    drop, all_na = _monomorphic_mask(x)
    na_counter = int(all_na.sum())

    if drop.any():
        if verbose >= 2:
            logger.info("  Removing monomorphic loci")
        out = x.subset(loci=~drop)
    else:
        if verbose >= 2:
            logger.info("  No monomorphic loci to remove")
        out = x.copy()

    if verbose >= 3:
        logger.info(f"    Original No. of loci: {x.n_loc}")
        logger.info(f"    Monomorphic loci: {x.n_loc - out.n_loc - na_counter}")
        logger.info(f"    Loci scored all NA: {na_counter}")
        logger.info(f"    No. of loci deleted: {x.n_loc - out.n_loc}")
        logger.info(f"    No. of loci retained: {out.n_loc}")
        logger.info(f"    No. of individuals: {out.n_ind}")
        logger.info(f"    No. of populations: {out.n_pop}")

    out.flags['monomorphs'] = True
    out.add_history("filter_monomorphs()")
    flag_end("filter_monomorphs", verbose)
    return out


def filter_taglength(x: GenotypeMatrix, lower: int = DEFAULT_TAG_LOWER, upper: int = DEFAULT_TAG_UPPER,
                     verbose: Optional[int] = None) -> GenotypeMatrix:
    """
    Filter loci on the length of their sequence tag.

    SNP datasets generated by DArT typically have sequence tag lengths ranging
    from 20 to 69 base pairs.

    Args:
        x: Input genotype matrix
        lower: Loci with a tag shorter than this are removed
        upper: Loci with a tag longer than this are removed
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        GenotypeMatrix retaining loci with lower <= tag length <= upper

    Raises:
        RuntimeError: If locus metrics lack trimmed sequences or do not match the loci
    """
    verbose = check_verbosity(verbose)
    flag_start("filter_taglength", verbose)
    check_datatype(x, accept=(SNP, SILICODART))

    if x.loc_metrics is None or TAG_COLUMN not in x.loc_metrics.columns:
        raise RuntimeError("Fatal Error: locus metrics do not include trimmed sequences!")
    if len(x.loc_metrics) != x.n_loc:
        raise RuntimeError("The number of rows in the locus metrics table does not match the number of loci!")

    if x.pop is None or len(x.pop) == 0:
        if verbose >= 2:
            logger.info(f"  Population assignments not detected, individuals assigned to a single population labelled '{DEFAULT_POP}'")
        x = x.copy()
        x.pop = np.array([DEFAULT_POP] * x.n_ind, dtype=object)

    drop, _ = _monomorphic_mask(x)
    if drop.any() and verbose >= 2:
        logger.warning("  Genotype matrix contains monomorphic loci")

    n0 = x.n_loc
    if verbose > 2:
        logger.info(f"  Initial no. of loci = {n0}")

    tags = x.loc_metrics[TAG_COLUMN].fillna('').astype(str)
    nchar = tags.str.len().to_numpy()
    if verbose > 1:
        logger.info(f"  Removing loci with taglength < {lower} and > {upper}")
    index = (nchar >= lower) & (nchar <= upper)
    out = x.subset(loci=index)
    if verbose > 2:
        logger.info(f"  No. of loci deleted = {n0 - out.n_loc}")
        logger.info("Summary of filtered dataset")
        logger.info(f"  Sequence Tag Length >= {lower} and Sequence Tag Length <= {upper}")
        logger.info(f"  No. of loci: {out.n_loc}")
        logger.info(f"  No. of individuals: {out.n_ind}")
        logger.info(f"  No. of populations: {out.n_pop}")

    out.add_history(f"filter_taglength(lower={lower}, upper={upper})")
    flag_end("filter_taglength", verbose)
    return out
