from __future__ import annotations
import copy as _copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# ----------------- constants -----------------
SNP = "SNP"
SILICODART = "SilicoDArT"
DATATYPES = (SNP, SILICODART)

DEFAULT_POP = "pop1"

# valid non-missing scores per datatype
_VALID_SCORES = {SNP: (0.0, 1.0, 2.0), SILICODART: (0.0, 1.0)}

Index = Union[Sequence[int], Sequence[bool], np.ndarray, slice, None]


@dataclass
class GenotypeMatrix:
    """
    Individuals x loci marker matrix with its metadata.

    SNP scores count copies of the alternate allele (0 homozygous reference,
    1 heterozygote, 2 homozygous alternate); SilicoDArT scores are tag
    absence/presence (0/1). Missing scores are NaN.
    """
    genotypes: np.ndarray
    ind_names: List[str]
    loc_names: List[str]
    pop: Optional[np.ndarray] = None
    datatype: str = SNP
    loc_metrics: Optional[pd.DataFrame] = None
    ind_metrics: Optional[pd.DataFrame] = None
    latlon: Optional[pd.DataFrame] = None
    history: List[str] = field(default_factory=list)
    flags: Dict[str, bool] = field(default_factory=dict)

    def __post_init__(self):
        self.genotypes = np.asarray(self.genotypes, dtype=float)
        if self.genotypes.ndim != 2:
            raise ValueError("genotypes must be a 2-dimensional individuals x loci matrix")
        self.ind_names = [str(i) for i in self.ind_names]
        self.loc_names = [str(l) for l in self.loc_names]
        n_ind, n_loc = self.genotypes.shape
        if len(self.ind_names) != n_ind:
            raise ValueError(f"{len(self.ind_names)} individual names for {n_ind} rows")
        if len(self.loc_names) != n_loc:
            raise ValueError(f"{len(self.loc_names)} locus names for {n_loc} columns")
        if self.datatype not in DATATYPES:
            raise ValueError(f"datatype must be one of {DATATYPES}, got {self.datatype!r}")
        obs = self.genotypes[~np.isnan(self.genotypes)]
        if obs.size and not np.isin(obs, _VALID_SCORES[self.datatype]).all():
            raise ValueError(f"{self.datatype} scores must be in {_VALID_SCORES[self.datatype]} or NaN")
        if self.pop is not None:
            self.pop = np.asarray(self.pop, dtype=object).astype(str)
            if len(self.pop) != n_ind:
                raise ValueError(f"{len(self.pop)} population labels for {n_ind} individuals")
        if self.loc_metrics is not None:
            self.loc_metrics = self.loc_metrics.reset_index(drop=True)
        if self.ind_metrics is not None:
            self.ind_metrics = self.ind_metrics.reset_index(drop=True)
        if self.latlon is not None:
            self.latlon = self.latlon.reset_index(drop=True)

    # ----------------- shape -----------------
    @property
    def n_ind(self) -> int:
        return self.genotypes.shape[0]

    @property
    def n_loc(self) -> int:
        return self.genotypes.shape[1]

    @property
    def pop_names(self) -> List[str]:
        """Population labels in sorted order (factor levels)."""
        if self.pop is None:
            return []
        return sorted(set(self.pop.tolist()))

    @property
    def n_pop(self) -> int:
        return len(self.pop_names)

    def __repr__(self) -> str:
        return (f"GenotypeMatrix({self.datatype}, n_ind={self.n_ind}, n_loc={self.n_loc}, "
                f"n_pop={self.n_pop})")

    # ----------------- subsetting -----------------
    def copy(self) -> "GenotypeMatrix":
        return _copy.deepcopy(self)

    def subset(self, inds: Index = None, loci: Index = None) -> "GenotypeMatrix":
        """
        Subset individuals and/or loci, carrying the metadata along.

        Args:
            inds: Integer positions or boolean mask of individuals to keep (None keeps all)
            loci: Integer positions or boolean mask of loci to keep (None keeps all)

        Returns:
            New GenotypeMatrix
        """
        ii = _as_positions(inds, self.n_ind)
        ll = _as_positions(loci, self.n_loc)
        return GenotypeMatrix(
            genotypes=self.genotypes[np.ix_(ii, ll)],
            ind_names=[self.ind_names[i] for i in ii],
            loc_names=[self.loc_names[j] for j in ll],
            pop=None if self.pop is None else self.pop[ii],
            datatype=self.datatype,
            loc_metrics=None if self.loc_metrics is None else self.loc_metrics.iloc[ll],
            ind_metrics=None if self.ind_metrics is None else self.ind_metrics.iloc[ii],
            latlon=None if self.latlon is None else self.latlon.iloc[ii],
            history=list(self.history),
            flags=dict(self.flags),
        )

    def keep_loc(self, loc_list: Sequence[str]) -> "GenotypeMatrix":
        keep = set(map(str, loc_list))
        return self.subset(loci=np.array([l in keep for l in self.loc_names], dtype=bool))

    def drop_loc(self, loc_list: Sequence[str]) -> "GenotypeMatrix":
        drop = set(map(str, loc_list))
        return self.subset(loci=np.array([l not in drop for l in self.loc_names], dtype=bool))

    def keep_ind(self, ind_list: Sequence[str]) -> "GenotypeMatrix":
        keep = set(map(str, ind_list))
        return self.subset(inds=np.array([i in keep for i in self.ind_names], dtype=bool))

    def drop_ind(self, ind_list: Sequence[str]) -> "GenotypeMatrix":
        drop = set(map(str, ind_list))
        return self.subset(inds=np.array([i not in drop for i in self.ind_names], dtype=bool))

    def seppop(self) -> Dict[str, "GenotypeMatrix"]:
        """Split into one GenotypeMatrix per population (sorted by label)."""
        if self.pop is None:
            return {DEFAULT_POP: self.copy()}
        return {p: self.subset(inds=self.pop == p) for p in self.pop_names}

    def cbind(self, other: "GenotypeMatrix") -> "GenotypeMatrix":
        """Concatenate the loci of `other` (same individuals, same order) onto this matrix."""
        if other.ind_names != self.ind_names:
            raise RuntimeError("Cannot combine genotype matrices with different individuals")
        if other.datatype != self.datatype:
            raise RuntimeError("Cannot combine genotype matrices of different datatypes")
        dup = set(self.loc_names) & set(other.loc_names)
        if dup:
            raise RuntimeError(f"Loci present in both matrices: {sorted(dup)[:5]}")
        lm = None
        if self.loc_metrics is not None and other.loc_metrics is not None:
            lm = pd.concat([self.loc_metrics, other.loc_metrics], ignore_index=True)
        return GenotypeMatrix(
            genotypes=np.hstack([self.genotypes, other.genotypes]),
            ind_names=list(self.ind_names),
            loc_names=self.loc_names + other.loc_names,
            pop=None if self.pop is None else self.pop.copy(),
            datatype=self.datatype,
            loc_metrics=lm,
            ind_metrics=None if self.ind_metrics is None else self.ind_metrics.copy(),
            latlon=None if self.latlon is None else self.latlon.copy(),
            history=list(self.history),
            flags=dict(self.flags),
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.genotypes, index=self.ind_names, columns=self.loc_names)

    def add_history(self, entry: str) -> None:
        self.history.append(entry)


def _as_positions(idx: Index, n: int) -> np.ndarray:
    if idx is None:
        return np.arange(n)
    if isinstance(idx, slice):
        return np.arange(n)[idx]
    arr = np.asarray(idx)
    if arr.dtype == bool:
        if arr.size != n:
            raise ValueError(f"Boolean mask of length {arr.size} for {n} entries")
        return np.flatnonzero(arr)
    return arr.astype(int)


def check_datatype(x: object, accept: Sequence[str] = DATATYPES) -> str:
    """
    Return the datatype of `x`, raising if it is not an accepted genotype matrix.

    Raises:
        RuntimeError: If `x` is not a GenotypeMatrix or its datatype is not accepted
    """
    if not isinstance(x, GenotypeMatrix):
        raise RuntimeError("Fatal Error: GenotypeMatrix object required!")
    if x.datatype not in accept:
        raise RuntimeError(f"Fatal Error: {x.datatype} data not accepted, expected one of {list(accept)}")
    return x.datatype


def allele_frequencies(x: GenotypeMatrix) -> np.ndarray:
    """Alternate-allele (SNP) or presence (SilicoDArT) frequency per locus, NaN where unscored."""
    g = x.genotypes
    nobs = (~np.isnan(g)).sum(axis=0)
    ploidy = 2.0 if x.datatype == SNP else 1.0
    with np.errstate(invalid='ignore', divide='ignore'):
        return np.nansum(g, axis=0) / (ploidy * nobs)


def pic(x: GenotypeMatrix) -> np.ndarray:
    """Polymorphism information content per locus for a bi-allelic marker."""
    p = allele_frequencies(x)
    q = 1.0 - p
    return 1.0 - (p ** 2 + q ** 2) - 2.0 * (p ** 2) * (q ** 2)


def subsample_loci(x: GenotypeMatrix, n: int, method: str = "random",
                   rng: Optional[np.random.Generator] = None) -> GenotypeMatrix:
    """
    Select `n` loci at random or by decreasing information content.

    Args:
        x: Input genotype matrix
        n: Number of loci to retain (all loci are kept if n >= n_loc)
        method: 'random' or 'AvgPIC' (case-insensitive)
        rng: Random generator for the random method

    Returns:
        GenotypeMatrix with the selected loci in their original order
    """
    n = int(max(0, n))
    if n >= x.n_loc:
        return x.copy()
    if method.lower() == "avgpic":
        if x.loc_metrics is not None and "AvgPIC" in x.loc_metrics.columns:
            score = pd.to_numeric(x.loc_metrics["AvgPIC"], errors="coerce").to_numpy(dtype=float)
        else:
            logger.debug("No AvgPIC locus metric; using PIC computed from allele frequencies")
            score = pic(x)
        score = np.where(np.isnan(score), -np.inf, score)
        chosen = np.argsort(-score, kind="stable")[:n]
    elif method.lower() == "random":
        rng = rng or np.random.default_rng()
        chosen = rng.choice(x.n_loc, size=n, replace=False)
    else:
        raise ValueError(f"method must be 'random' or 'AvgPIC', got {method!r}")
    return x.subset(loci=np.sort(chosen))
