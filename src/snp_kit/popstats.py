import itertools
import logging
from typing import Optional

import numpy as np
import pandas as pd

from .genotypes import GenotypeMatrix, SNP, check_datatype, allele_frequencies
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

# Heterozygosity is reported to this many decimals
HET_DECIMALS = 6


def _col_fraction(mask: np.ndarray, scored: np.ndarray) -> np.ndarray:
    """Per-locus fraction of scored individuals where `mask` holds (NaN when unscored)."""
    n = scored.sum(axis=0)
    with np.errstate(invalid='ignore', divide='ignore'):
        return (mask & scored).sum(axis=0) / n


def _expected_het(g: np.ndarray) -> np.ndarray:
    scored = ~np.isnan(g)
    hom_ref = _col_fraction(g == 0, scored)
    hom_alt = _col_fraction(g == 2, scored)
    hets = _col_fraction(g == 1, scored)
    p = (2 * hom_ref + hets) / 2
    q = (2 * hom_alt + hets) / 2
    return 1 - (p * p + q * q)


def _nanmean(a: np.ndarray) -> float:
    a = a[~np.isnan(a)]
    return float(a.mean()) if a.size else np.nan


def het_pop(x: GenotypeMatrix) -> pd.Series:
    """
    Mean expected heterozygosity per population.

    Args:
        x: SNP genotype matrix

    Returns:
        Series indexed by population label (sorted) with He rounded to six decimals
    """
    check_datatype(x, accept=(SNP,))
    out = {}
    for p, sub in x.seppop().items():
        out[p] = round(_nanmean(_expected_het(sub.genotypes)), HET_DECIMALS)
    return pd.Series(out, name='He', dtype=float)


def report_heterozygosity(x: GenotypeMatrix, verbose: Optional[int] = None) -> pd.DataFrame:
    """
    Observed and expected heterozygosity per population.

    Args:
        x: SNP genotype matrix
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        DataFrame with columns pop, n_ind, n_loc, Ho, He, FIS
    """
    verbose = check_verbosity(verbose)
    flag_start("report_heterozygosity", verbose)
    check_datatype(x, accept=(SNP,))
    rows = []
    for p, sub in x.seppop().items():
        g = sub.genotypes
        scored = ~np.isnan(g)
        ho = _nanmean(_col_fraction(g == 1, scored))
        he = _nanmean(_expected_het(g))
        fis = 1 - ho / he if he and np.isfinite(he) and he > 0 else np.nan
        rows.append({
            'pop': p,
            'n_ind': sub.n_ind,
            'n_loc': int(scored.any(axis=0).sum()),
            'Ho': round(ho, HET_DECIMALS) if np.isfinite(ho) else np.nan,
            'He': round(he, HET_DECIMALS) if np.isfinite(he) else np.nan,
            'FIS': round(fis, HET_DECIMALS) if np.isfinite(fis) else np.nan,
        })
    df = pd.DataFrame(rows, columns=['pop', 'n_ind', 'n_loc', 'Ho', 'He', 'FIS'])
    if verbose >= 3:
        logger.info(f"\n{df.to_string(index=False)}")
    flag_end("report_heterozygosity", verbose)
    return df


def percent_freq(x: GenotypeMatrix) -> pd.DataFrame:
    """
    Percentage frequency of the alternate allele per population and locus.

    Returns:
        Long DataFrame with columns pop, locus, sum, nobs, nmissing, frequency
        (ordered by locus then population)
    """
    check_datatype(x)
    ploidy = 2 if x.datatype == SNP else 1
    frames = []
    for p, sub in x.seppop().items():
        g = sub.genotypes
        nobs = (~np.isnan(g)).sum(axis=0)
        s = np.nansum(g, axis=0)
        with np.errstate(invalid='ignore', divide='ignore'):
            freq = s * 100.0 / (ploidy * nobs)
        frames.append(pd.DataFrame({
            'pop': p,
            'locus': sub.loc_names,
            'sum': s,
            'nobs': nobs,
            'nmissing': sub.n_ind - nobs,
            'frequency': freq,
        }))
    df = pd.concat(frames, ignore_index=True)
    order = {l: i for i, l in enumerate(x.loc_names)}
    df['_o'] = df['locus'].map(order)
    return df.sort_values(['_o', 'pop'], kind='stable').drop(columns='_o').reset_index(drop=True)


def is_fixed(s1: float, s2: float, tloc: float = 0.0) -> Optional[bool]:
    """
    Test whether two percentage allele frequencies represent a fixed difference.

    Args:
        s1: Percentage frequency in the first population
        s2: Percentage frequency in the second population
        tloc: Tolerance (0-0.5); 0.05 treats >95% vs <5% as fixed

    Returns:
        True/False, or None when either frequency is missing

    Raises:
        ValueError: If tloc lies outside [0, 0.5]
    """
    if tloc > 0.5 or tloc < 0:
        raise ValueError("Parameter tloc should be positive and less than 0.5")
    if s1 is None or s2 is None or pd.isna(s1) or pd.isna(s2):
        return None
    t = tloc * 100
    return bool((s1 <= t and s2 >= 100 - t) or (s1 >= 100 - t and s2 <= t))


def _pop_freqs(x: GenotypeMatrix) -> pd.DataFrame:
    return pd.DataFrame({p: allele_frequencies(sub) for p, sub in x.seppop().items()},
                        index=x.loc_names)


def fixed_differences(x: GenotypeMatrix, tloc: float = 0.0) -> pd.DataFrame:
    """
    Count loci with fixed differences between each pair of populations.

    Returns:
        Square DataFrame (populations x populations) of fixed-difference counts
    """
    check_datatype(x)
    freqs = _pop_freqs(x) * 100.0
    pops = list(freqs.columns)
    mat = pd.DataFrame(0, index=pops, columns=pops, dtype=int)
    for a, b in itertools.combinations(pops, 2):
        n = sum(1 for s1, s2 in zip(freqs[a], freqs[b]) if is_fixed(s1, s2, tloc=tloc))
        mat.loc[a, b] = mat.loc[b, a] = n
    return mat


def fst_pairwise(x: GenotypeMatrix) -> pd.DataFrame:
    """
    Pairwise Nei's GST between populations (ratio of averages over loci).

    Loci unscored in either population of a pair are skipped for that pair.
    """
    check_datatype(x, accept=(SNP,))
    freqs = _pop_freqs(x)
    pops = list(freqs.columns)
    mat = pd.DataFrame(0.0, index=pops, columns=pops)
    for a, b in itertools.combinations(pops, 2):
        p1 = freqs[a].to_numpy()
        p2 = freqs[b].to_numpy()
        ok = ~(np.isnan(p1) | np.isnan(p2))
        p1, p2 = p1[ok], p2[ok]
        hs = (2 * p1 * (1 - p1) + 2 * p2 * (1 - p2)) / 2
        pbar = (p1 + p2) / 2
        ht = 2 * pbar * (1 - pbar)
        fst = (ht.sum() - hs.sum()) / ht.sum() if ht.sum() > 0 else np.nan
        mat.loc[a, b] = mat.loc[b, a] = fst
    return mat
