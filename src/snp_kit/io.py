import logging
import pathlib
from typing import Optional

import numpy as np
import pandas as pd

from .genotypes import GenotypeMatrix, SNP, DEFAULT_POP
from .files import ensure_dir

logger = logging.getLogger(__name__)

# Column names recognised in metadata tables (case-insensitive)
IND_ID_CANDIDATES = ("id", "ind", "individual", "sample")
LOC_ID_CANDIDATES = ("allelename", "alleleid", "locus", "loc", "cloneid")
POP_COL = "pop"
LAT_COL = "lat"
LON_COL = "lon"


def _pick_col(df: pd.DataFrame, candidates) -> str:
    """
    Find the first column whose lowercased name equals one of the candidates.

    Falls back to the first column when none matches.
    """
    cols_lower = {str(c).lower(): c for c in df.columns}
    for cand in candidates:
        if cand in cols_lower:
            return cols_lower[cand]
    return df.columns[0]


def read_genotypes_csv(
        genotypes_fp: str,
        ind_metadata_fp: Optional[str] = None,
        loc_metadata_fp: Optional[str] = None,
        datatype: str = SNP,
        sep: str = ",",
    ) -> GenotypeMatrix:
    """
    Read a genotype table into a GenotypeMatrix.

    The genotype table has the individual identifier in the first column and one
    column per locus; empty cells or '-' are missing scores.

    Args:
        genotypes_fp: Path to the genotype table
        ind_metadata_fp: Optional table of individual metadata (id, pop, lat, lon, ...)
        loc_metadata_fp: Optional table of locus metrics (AlleleID, TrimmedSequence, AvgPIC, ...)
        datatype: 'SNP' or 'SilicoDArT'
        sep: Field separator of all three tables

    Returns:
        GenotypeMatrix with individual metadata and locus metrics aligned to the genotypes

    Raises:
        RuntimeError: If metadata refer to individuals or loci absent from the genotype table
    """
    g = pd.read_csv(genotypes_fp, sep=sep, index_col=0, na_values=['-', 'NA', ''])
    g.index = g.index.astype(str)
    g.columns = g.columns.astype(str)
    if g.index.duplicated().any():
        dup = g.index[g.index.duplicated()].tolist()
        raise RuntimeError(f"Duplicate individual identifiers in {genotypes_fp}: {dup[:5]}")

    pop = np.array([DEFAULT_POP] * len(g), dtype=object)
    ind_metrics = None
    latlon = None
    if ind_metadata_fp:
        meta = pd.read_csv(ind_metadata_fp, sep=sep)
        id_col = _pick_col(meta, IND_ID_CANDIDATES)
        meta[id_col] = meta[id_col].astype(str)
        meta = meta.drop_duplicates(subset=[id_col]).set_index(id_col)
        missing = [i for i in g.index if i not in meta.index]
        if missing:
            raise RuntimeError(f"Individuals missing from {ind_metadata_fp}: {missing[:5]}")
        meta = meta.loc[g.index]
        cols_lower = {str(c).lower(): c for c in meta.columns}
        if POP_COL in cols_lower:
            pop = meta[cols_lower[POP_COL]].astype(str).to_numpy(dtype=object)
        if LAT_COL in cols_lower and LON_COL in cols_lower:
            latlon = pd.DataFrame({
                'lat': pd.to_numeric(meta[cols_lower[LAT_COL]], errors='coerce').to_numpy(),
                'lon': pd.to_numeric(meta[cols_lower[LON_COL]], errors='coerce').to_numpy(),
            })
        ind_metrics = meta.reset_index().rename(columns={id_col: 'id'})
    else:
        logger.info(f"No individual metadata; all individuals assigned to population '{DEFAULT_POP}'")

    loc_metrics = None
    if loc_metadata_fp:
        lm = pd.read_csv(loc_metadata_fp, sep=sep)
        id_col = _pick_col(lm, LOC_ID_CANDIDATES)
        lm[id_col] = lm[id_col].astype(str)
        lm = lm.drop_duplicates(subset=[id_col]).set_index(id_col)
        missing = [l for l in g.columns if l not in lm.index]
        if missing:
            raise RuntimeError(f"Loci missing from {loc_metadata_fp}: {missing[:5]}")
        loc_metrics = lm.loc[list(g.columns)].reset_index()

    x = GenotypeMatrix(
        genotypes=g.to_numpy(dtype=float),
        ind_names=list(g.index),
        loc_names=list(g.columns),
        pop=pop,
        datatype=datatype,
        loc_metrics=loc_metrics,
        ind_metrics=ind_metrics,
        latlon=latlon,
    )
    x.add_history(f"read_genotypes_csv({genotypes_fp!r})")
    logger.info(f"Read {x.n_ind} individuals x {x.n_loc} loci ({x.datatype}) from {genotypes_fp}")
    return x


def write_genotypes_csv(x: GenotypeMatrix, out_prefix: str, sep: str = ",") -> dict:
    """
    Write genotypes, individual metadata and locus metrics next to each other.

    Returns:
        Dictionary with the paths written ('genotypes', 'ind_metadata', optionally 'loc_metadata')
    """
    base = pathlib.Path(out_prefix)
    ensure_dir(str(base.parent))
    out = {}
    gfp = base.with_name(base.name + '.genotypes.csv')
    frame = x.to_frame()
    frame.index.name = 'id'
    frame.to_csv(gfp, sep=sep, na_rep='-', float_format='%.0f')
    out['genotypes'] = str(gfp)

    meta = pd.DataFrame({'id': x.ind_names,
                         'pop': x.pop if x.pop is not None else [DEFAULT_POP] * x.n_ind})
    if x.latlon is not None:
        meta['lat'] = x.latlon['lat'].to_numpy()
        meta['lon'] = x.latlon['lon'].to_numpy()
    if x.ind_metrics is not None:
        extra = [c for c in x.ind_metrics.columns if c not in meta.columns]
        for c in extra:
            meta[c] = x.ind_metrics[c].to_numpy()
    mfp = base.with_name(base.name + '.ind_metadata.csv')
    meta.to_csv(mfp, sep=sep, index=False)
    out['ind_metadata'] = str(mfp)

    if x.loc_metrics is not None:
        lfp = base.with_name(base.name + '.loc_metadata.csv')
        lm = x.loc_metrics.copy()
        if 'AlleleID' not in lm.columns:
            lm.insert(0, 'AlleleID', x.loc_names)
        lm.to_csv(lfp, sep=sep, index=False)
        out['loc_metadata'] = str(lfp)
    return out
