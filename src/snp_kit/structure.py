from __future__ import annotations
import logging
import os
import re
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from matplotlib.patches import Rectangle

from .genotypes import GenotypeMatrix, SNP, DEFAULT_POP, check_datatype
from .colors import select_colors
from .external import require_exec
from .files import ensure_dir, run, safe_label
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

# ----------------- constants -----------------
DEFAULT_BURNIN = 1000
DEFAULT_NUMREPS = 1000
MISSING = -9
DATA_FILE = "structure_data.txt"
MAINPARAMS = "mainparams"
EXTRAPARAMS = "extraparams"

_LNPROB_RE = re.compile(r"Estimated Ln Prob of Data\s*=\s*(\S+)")
_MEANLLH_RE = re.compile(r"Mean value of ln likelihood\s*=\s*(\S+)")
_VARLLH_RE = re.compile(r"Variance of ln likelihood\s*=\s*(\S+)")
_QROW_RE = re.compile(r"^\s*\d+\s+(\S+)\s+\(\s*(\d+)\s*\)\s+(\S+)\s*:\s+(.+)$")


@dataclass
class StructureRun:
    """One STRUCTURE replicate for one value of K."""
    k: int
    rep: int
    ln_prob: float
    mean_llh: float
    var_llh: float
    q: pd.DataFrame = field(repr=False)  # id, orig_pop, Group_1..k
    output_file: Optional[str] = None


def _allele_rows(g: np.ndarray) -> np.ndarray:
    """Two allele rows (1/2 coding, -9 missing) per individual for 0/1/2 genotype scores."""
    n_ind, n_loc = g.shape
    a1 = np.where(np.isnan(g), MISSING, np.where(g == 2, 2, 1))
    a2 = np.where(np.isnan(g), MISSING, np.where(g == 0, 1, 2))
    out = np.empty((2 * n_ind, n_loc), dtype=int)
    out[0::2] = a1
    out[1::2] = a2
    return out


def write_structure_input(x: GenotypeMatrix, out_dir: str) -> str:
    """
    Write the STRUCTURE data file: a marker-name line, then two rows per individual.

    Each row is label, population number (1-based, sorted population order) and
    one allele per locus.

    Returns:
        Path of the data file
    """
    ensure_dir(out_dir)
    pops = x.pop if x.pop is not None else np.array([DEFAULT_POP] * x.n_ind)
    pop_index = {p: i + 1 for i, p in enumerate(sorted(set(pops.tolist())))}
    alleles = _allele_rows(x.genotypes)
    fp = os.path.join(out_dir, DATA_FILE)
    with open(fp, 'w') as fh:
        fh.write(' '.join(x.loc_names) + '\n')
        for i, name in enumerate(x.ind_names):
            label = safe_label(name)
            for row in (alleles[2 * i], alleles[2 * i + 1]):
                fh.write(f"{label} {pop_index[pops[i]]} " + ' '.join(map(str, row)) + '\n')
    return fp


def write_structure_params(out_dir: str, n_ind: int, n_loc: int, burnin: int = DEFAULT_BURNIN,
                           numreps: int = DEFAULT_NUMREPS, noadmix: bool = False,
                           freqscorr: bool = True, locprior: bool = False) -> Dict[str, str]:
    """Write `mainparams` and `extraparams`; the command line overrides K, input and output."""
    main = {
        'MAXPOPS': 2, 'BURNIN': burnin, 'NUMREPS': numreps,
        'INFILE': DATA_FILE, 'OUTFILE': 'structure_out',
        'NUMINDS': n_ind, 'NUMLOCI': n_loc, 'PLOIDY': 2, 'MISSING': MISSING,
        'ONEROWPERIND': 0, 'LABEL': 1, 'POPDATA': 1, 'POPFLAG': 0, 'LOCDATA': 0,
        'PHENOTYPE': 0, 'EXTRACOLS': 0, 'MARKERNAMES': 1, 'RECESSIVEALLELES': 0,
        'MAPDISTANCES': 0, 'PHASED': 0, 'PHASEINFO': 0, 'MARKOVPHASE': 0,
    }
    extra = {
        'NOADMIX': int(noadmix), 'LINKAGE': 0, 'USEPOPINFO': 0, 'LOCPRIOR': int(locprior),
        'FREQSCORR': int(freqscorr), 'ONEFST': 0, 'INFERALPHA': 1, 'POPALPHAS': 0,
        'ALPHA': 1.0, 'INFERLAMBDA': 0, 'LAMBDA': 1.0, 'COMPUTEPROB': 1, 'ANCESTDIST': 0,
        'STARTATPOPINFO': 0, 'METROFREQ': 10, 'UPDATEFREQ': 1, 'RANDOMIZE': 0,
    }
    paths = {}
    for name, params in ((MAINPARAMS, main), (EXTRAPARAMS, extra)):
        fp = os.path.join(out_dir, name)
        with open(fp, 'w') as fh:
            for key, val in params.items():
                fh.write(f"#define {key} {val}\n")
        paths[name] = fp
    return paths


def parse_structure_output(path: str, k: int, rep: int, pop_lookup: Optional[Dict[str, str]] = None) -> StructureRun:
    """
    Parse a STRUCTURE `_f` output file.

    Args:
        path: Output file written by STRUCTURE
        k: Number of clusters of the run
        rep: Replicate number
        pop_lookup: Optional mapping of population number (as text) to population label

    Returns:
        StructureRun with likelihood summaries and the ancestry Q-matrix

    Raises:
        RuntimeError: If the likelihood summary or ancestry table is missing
    """
    with open(path) as fh:
        text = fh.read()
    m = _LNPROB_RE.search(text)
    if not m:
        raise RuntimeError(f"No 'Estimated Ln Prob of Data' in STRUCTURE output {path}")
    ln_prob = float(m.group(1))
    mean_llh = float(_MEANLLH_RE.search(text).group(1)) if _MEANLLH_RE.search(text) else np.nan
    var_llh = float(_VARLLH_RE.search(text).group(1)) if _VARLLH_RE.search(text) else np.nan

    rows = []
    in_table = False
    for line in text.splitlines():
        if line.strip().startswith("Inferred ancestry of individuals"):
            in_table = True
            continue
        if not in_table:
            continue
        qm = _QROW_RE.match(line)
        if qm:
            label, _miss, pop, qs = qm.groups()
            vals = [float(v) for v in qs.split()[:k]]
            rows.append([label, pop_lookup.get(pop, pop) if pop_lookup else pop] + vals)
        elif rows and not line.strip():
            break
    if not rows:
        raise RuntimeError(f"No ancestry table in STRUCTURE output {path}")
    cols = ['id', 'orig_pop'] + [f'Group_{i + 1}' for i in range(k)]
    return StructureRun(k=k, rep=rep, ln_prob=ln_prob, mean_llh=mean_llh, var_llh=var_llh,
                        q=pd.DataFrame(rows, columns=cols), output_file=path)


def _run_one(exec_path: str, out_dir: str, k: int, rep: int, n_ind: int, n_loc: int,
             seed: int, pop_lookup: Dict[str, str]) -> StructureRun:
    out_base = os.path.join(out_dir, f"structure_k{k}_r{rep}")
    cmd = [exec_path,
           '-m', os.path.join(out_dir, MAINPARAMS),
           '-e', os.path.join(out_dir, EXTRAPARAMS),
           '-i', os.path.join(out_dir, DATA_FILE),
           '-o', out_base,
           '-K', str(k), '-L', str(n_loc), '-N', str(n_ind),
           '-D', str(seed)]
    run(cmd, log=out_base + '.log', cwd=out_dir)
    return parse_structure_output(out_base + '_f', k, rep, pop_lookup)


def run_structure(x: GenotypeMatrix,
                  exec_path: str,
                  k_range: Iterable[int],
                  num_k_rep: int = 1,
                  burnin: int = DEFAULT_BURNIN,
                  numreps: int = DEFAULT_NUMREPS,
                  noadmix: bool = False,
                  freqscorr: bool = True,
                  locprior: bool = False,
                  out_dir: Optional[str] = None,
                  n_workers: int = 1,
                  seed: Optional[int] = None,
                  verbose: Optional[int] = None) -> List[StructureRun]:
    """
    Run STRUCTURE for every K in `k_range`, `num_k_rep` times each.

    Args:
        x: SNP genotype matrix
        exec_path: Path to the STRUCTURE executable
        k_range: Values of K (number of clusters) to run
        num_k_rep: Replicates per K
        burnin: Burn-in sweeps
        numreps: MCMC sweeps after burn-in
        noadmix: Use the no-admixture model
        freqscorr: Correlated allele frequencies
        locprior: Use sampling locations as prior
        out_dir: Working directory (a temporary directory when None)
        n_workers: Number of runs executed concurrently
        seed: Seed for the per-run random seeds
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        List of StructureRun ordered by K then replicate

    Raises:
        RuntimeError: If the executable is missing or the data are not SNP
    """
    exec_path = require_exec(exec_path, "STRUCTURE")
    verbose = check_verbosity(verbose)
    flag_start("run_structure", verbose)
    if check_datatype(x) != SNP:
        raise RuntimeError("You need to provide a SNP genotype matrix (ploidy=2)!")
    k_values = sorted(set(int(k) for k in k_range))
    if not k_values or k_values[0] < 1:
        raise ValueError("k_range must contain positive integers")

    out_dir = out_dir or tempfile.mkdtemp(prefix="structure_")
    write_structure_input(x, out_dir)
    write_structure_params(out_dir, x.n_ind, x.n_loc, burnin=burnin, numreps=numreps,
                           noadmix=noadmix, freqscorr=freqscorr, locprior=locprior)
    pops = x.pop if x.pop is not None else np.array([DEFAULT_POP] * x.n_ind)
    pop_lookup = {str(i + 1): p for i, p in enumerate(sorted(set(pops.tolist())))}

    rng = np.random.default_rng(seed)
    jobs = [(k, r, int(rng.integers(1, 2 ** 31 - 1))) for k in k_values for r in range(1, num_k_rep + 1)]
    if verbose >= 2:
        logger.info(f"  Running {len(jobs)} STRUCTURE jobs (K = {k_values}, {num_k_rep} replicates) in {out_dir}")

    runs: List[StructureRun] = []
    with ThreadPoolExecutor(max_workers=max(1, n_workers)) as ex:
        fut2job = {ex.submit(_run_one, exec_path, out_dir, k, r, x.n_ind, x.n_loc, s, pop_lookup): (k, r)
                   for k, r, s in jobs}
        for fut in as_completed(fut2job):
            k, r = fut2job[fut]
            res = fut.result()
            if verbose >= 3:
                logger.info(f"    K={k} rep={r}: Ln Prob of Data = {res.ln_prob}")
            runs.append(res)
    runs.sort(key=lambda s: (s.k, s.rep))
    flag_end("run_structure", verbose)
    return runs


def evanno(runs: Sequence[StructureRun]) -> pd.DataFrame:
    """
    Evanno et al. (2005) summary over K.

    Returns:
        DataFrame with columns k, reps, mean_ln_k, sd_ln_k, ln_pk, ln_ppk, delta_k

    Raises:
        RuntimeError: If fewer than three values of K were run
    """
    df = pd.DataFrame({'k': [r.k for r in runs], 'ln_prob': [r.ln_prob for r in runs]})
    if df['k'].nunique() < 3:
        raise RuntimeError("Evanno method requires at least three values of K")
    g = df.groupby('k')['ln_prob']
    out = pd.DataFrame({
        'reps': g.size(),
        'mean_ln_k': g.mean(),
        'sd_ln_k': g.std(ddof=1),
    }).reset_index()
    out['ln_pk'] = out['mean_ln_k'].diff()
    out['ln_ppk'] = (out['ln_pk'].shift(-1) - out['ln_pk']).abs()
    with np.errstate(divide='ignore', invalid='ignore'):
        out['delta_k'] = out['ln_ppk'] / out['sd_ln_k']
    return out


def plot_evanno(ev: pd.DataFrame, output_path: Optional[str] = None):
    """Four panels: mean LnP(K) with sd, L'(K), |L''(K)| and delta K."""
    fig, axes = plt.subplots(2, 2, figsize=(8, 6))
    panels = [('mean_ln_k', 'Mean L(K)'), ('ln_pk', "L'(K)"), ('ln_ppk', "|L''(K)|"), ('delta_k', 'Delta K')]
    for ax, (col, lab) in zip(axes.flat, panels):
        if col == 'mean_ln_k':
            ax.errorbar(ev['k'], ev[col], yerr=ev['sd_ln_k'].fillna(0), fmt='o-', color='black', capsize=3)
        else:
            ax.plot(ev['k'], ev[col], 'o-', color='black')
        ax.set_xlabel('K')
        ax.set_ylabel(lab)
        ax.set_xticks(list(ev['k']))
        ax.spines["top"].set_visible(False)
        ax.spines["right"].set_visible(False)
    fig.tight_layout()
    if output_path:
        fig.savefig(output_path, dpi=300)
    return fig


def structure_qmat(runs: Sequence[StructureRun], k: int) -> pd.DataFrame:
    """Q-matrix of the replicate with the highest Ln Prob of Data for K = k."""
    cand = [r for r in runs if r.k == k]
    if not cand:
        raise RuntimeError(f"No STRUCTURE run for K={k}")
    best = max(cand, key=lambda r: r.ln_prob)
    logger.info(f"Using replicate {best.rep} of K={k} (Ln Prob of Data = {best.ln_prob})")
    return best.q.copy()


def map_structure(qmat: pd.DataFrame, x: GenotypeMatrix, scalex: float = 1, scaley: float = 1,
                  output_path: Optional[str] = None):
    """
    Draw per-population stacked ancestry bars at the population centres.

    Centres are mean lat/lon per population. Bars are `lon range / 100 * scalex`
    wide and a Q value of one is `20 * width * scaley` high.

    Raises:
        RuntimeError: If `x` has no lat/lon table
    """
    if x.latlon is None:
        raise RuntimeError("Fatal Error: genotype matrix has no lat/lon coordinates")
    pops = x.pop if x.pop is not None else np.array([DEFAULT_POP] * x.n_ind)
    centers = x.latlon.assign(pop=pops).groupby('pop')[['lat', 'lon']].mean()
    lon_range = float(centers['lon'].max() - centers['lon'].min())
    # a single population has no longitude range
    sx = (lon_range / 100 if lon_range > 0 else 0.01) * scalex
    sy = 20 * sx * scaley

    groups = [c for c in qmat.columns if c.startswith('Group_')]
    colors = select_colors(library='baseR', palette='rainbow', ncolors=len(groups), verbose=0)
    q = qmat.copy()
    q['orig_pop'] = q['orig_pop'].astype(str)
    q = q.sort_values(['orig_pop'] + groups, kind='stable')

    fig, ax = plt.subplots(figsize=(8, 6))
    for p, block in q.groupby('orig_pop', sort=True):
        if p not in centers.index:
            logger.warning(f"Population {p} has no coordinates, skipped")
            continue
        cx, cy = centers.loc[p, 'lon'], centers.loc[p, 'lat']
        cum = np.hstack([np.zeros((len(block), 1)), np.cumsum(block[groups].to_numpy(dtype=float), axis=1)])
        for ii in range(len(block)):
            oo = (ii + 1 - len(block) / 2) * sx
            for i in range(len(groups)):
                ax.add_patch(Rectangle((cx + oo, cy + cum[ii, i] * sy), sx, (cum[ii, i + 1] - cum[ii, i]) * sy,
                                       facecolor=colors[i], edgecolor='none', alpha=0.8))
        ax.annotate(p, (cx, cy), xytext=(0, -10), textcoords='offset points', ha='center', fontsize=8)
    ax.autoscale_view()
    ax.set_xlabel('Longitude')
    ax.set_ylabel('Latitude')
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    if output_path:
        fig.savefig(output_path, dpi=300)
    return fig
