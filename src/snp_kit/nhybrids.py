from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from .genotypes import GenotypeMatrix, check_datatype, subsample_loci
from .external import find_in_directory
from .files import ensure_dir, run
from .popstats import percent_freq, is_fixed
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

# ----------------- constants -----------------
LOC_LIMIT = 200  # NewHybrids handles at most this many loci well
DEFAULT_PPROB = 0.95
FALLBACK_PPROB = 0.99
DEFAULT_BURN_IN = 10000
DEFAULT_SWEEPS = 10000
DEFAULT_GTYP_FILE = "TwoGensGtypFreq.txt"
DEFAULT_PRIOR = "Jeffreys"
EXEC_NAMES = ("newhybs", "newhybrids", "newhybrids.exe")
POFZ_TXT = "aa-PofZ.txt"
POFZ_CSV = "aa-PofZ.csv"
POFZ_COLUMNS = ["P0", "P1", "F1", "F2", "F1xP0", "F1xP1"]
METHODS = ("random", "avgpic")

# genotype code -> NewHybrids lumped code, missing -> 0
_CODES = {0.0: 11, 1.0: 12, 2.0: 22}


@dataclass
class NHybridsResult:
    """Loci handed to NewHybrids and, when it was run, its posterior table."""
    loci: GenotypeMatrix
    input_file: str
    parental_flag: str  # bothpar, bothparnonefixed, onepar or nopar
    fixed_loci: List[str] = field(default_factory=list)
    pofz: Optional[pd.DataFrame] = None
    f1_summary: Optional[pd.DataFrame] = None


def _fixed_loci(x: GenotypeMatrix, p0: List[str], p1: List[str], threshold: float) -> List[str]:
    """Loci with a fixed difference between the pooled p0 and pooled p1 parentals."""
    sel = np.isin(x.pop, p0) | np.isin(x.pop, p1)
    par = x.subset(inds=sel)
    par.pop = np.where(np.isin(par.pop, p0), 'z0', 'z1')
    pf = percent_freq(par)
    wide = pf.pivot(index='locus', columns='pop', values='frequency').reindex(x.loc_names)
    return [loc for loc, s0, s1 in zip(wide.index, wide['z0'], wide['z1'])
            if is_fixed(s0, s1, tloc=threshold)]


def write_nhybrids_input(x: GenotypeMatrix, path: str, flags: Optional[List[str]] = None) -> str:
    """
    Write a NewHybrids "Lumped" data file.

    Args:
        x: SNP genotype matrix of the loci to use
        path: Output file path
        flags: Optional per-individual parental flag ('z0', 'z1' or '' for none)

    Returns:
        The path written
    """
    codes = np.zeros(x.genotypes.shape, dtype=int)
    for score, code in _CODES.items():
        codes[x.genotypes == score] = code
    with open(path, 'w') as fh:
        fh.write(f"NumIndivs {x.n_ind}\n")
        fh.write(f"NumLoci {x.n_loc}\n")
        fh.write("Digits 1\nFormat Lumped\n")
        for i in range(x.n_ind):
            head = [str(i + 1)]
            if flags is not None and flags[i]:
                head.append(flags[i])
            fh.write(' '.join(head + [str(c) for c in codes[i]]) + '\n')
    return path


def read_pofz(path: str, ids: List[str], pops) -> pd.DataFrame:
    """Read aa-PofZ.txt; the last six fields of each row are the class posteriors."""
    rows = []
    with open(path) as fh:
        next(fh, None)  # header
        for line in fh:
            parts = line.split()
            if len(parts) < len(POFZ_COLUMNS):
                continue
            rows.append([float(v) for v in parts[-len(POFZ_COLUMNS):]])
    if len(rows) != len(ids):
        raise RuntimeError(f"{path} has {len(rows)} rows for {len(ids)} individuals")
    df = pd.DataFrame(rows, columns=POFZ_COLUMNS)
    df.insert(0, 'pop', list(pops))
    df.insert(0, 'id', list(ids))
    return df


def f1_genotype_summary(fixed: GenotypeMatrix, pofz: pd.DataFrame, pprob: float) -> pd.DataFrame:
    """Tally genotype scores at fixed loci for individuals classed as F1 with posterior >= pprob."""
    f1_ids = pofz.loc[pofz['F1'] >= pprob, 'id'].astype(str).tolist()
    sub = fixed.keep_ind(f1_ids)
    vals = sub.genotypes[~np.isnan(sub.genotypes)]
    total = vals.size
    rows = []
    for score, lab in ((1.0, 'heterozygous'), (0.0, 'homozygous reference'), (2.0, 'homozygous alternate')):
        n = int((vals == score).sum())
        rows.append({'genotype': int(score), 'class': lab, 'count': n,
                     'percent': round(n * 100 / total, 2) if total else np.nan})
    return pd.DataFrame(rows)


def plot_f1_genotypes(summary: pd.DataFrame, output_path: Optional[str] = None):
    fig, ax = plt.subplots(figsize=(5, 4))
    s = summary.sort_values('genotype')
    ax.bar(s['genotype'].astype(str), s['count'], color='red')
    ax.set_title('F1 Genotypes')
    ax.set_xlabel('Genotype')
    ax.set_ylabel('Count')
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    fig.tight_layout()
    if output_path:
        fig.savefig(output_path, dpi=300)
    return fig


def nhybrids(x: GenotypeMatrix,
             outfile: str = "nhyb.txt",
             outpath: str = ".",
             p0: Optional[List[str]] = None,
             p1: Optional[List[str]] = None,
             threshold: float = 0,
             method: str = "random",
             plot: bool = True,
             pprob: float = DEFAULT_PPROB,
             nhyb_directory: Optional[str] = None,
             burn_in: int = DEFAULT_BURN_IN,
             sweeps: int = DEFAULT_SWEEPS,
             gtyp_file: str = DEFAULT_GTYP_FILE,
             af_prior_file: Optional[str] = None,
             pi_prior: str = DEFAULT_PRIOR,
             theta_prior: str = DEFAULT_PRIOR,
             seed: Optional[int] = None,
             verbose: Optional[int] = None) -> NHybridsResult:
    """
    Prepare NewHybrids input and optionally run NewHybrids.

    Loci are chosen to stay within the NewHybrids locus limit: with both
    parental groups, loci fixed between them come first, topped up with other
    loci chosen at random or by information content. With one or no parental
    group, loci are chosen by `method` alone.

    Args:
        x: SNP genotype matrix
        outfile: Name of the NewHybrids input file
        outpath: Directory for the input file and NewHybrids outputs
        p0: Population labels forming parental group 0
        p1: Population labels forming parental group 1
        threshold: Tolerance for fixed differences (0-0.5)
        method: 'random' or 'AvgPIC' locus selection
        plot: Plot genotypes of F1 individuals at fixed loci (both parentals only)
        pprob: Posterior probability for calling an F1
        nhyb_directory: Directory holding the NewHybrids executable (input only when None)
        burn_in: Burn-in sweeps
        sweeps: Sweeps after burn-in
        gtyp_file: Genotype category file (the two-generation default when unchanged)
        af_prior_file: Allele frequency prior file
        pi_prior: Prior on mixing proportions
        theta_prior: Prior on allele frequencies
        seed: Seed for locus subsampling and NewHybrids seeds
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        NHybridsResult

    Raises:
        RuntimeError: If a specified parental group has no individuals, or the
            executable cannot be found
    """
    verbose = check_verbosity(verbose)
    flag_start("nhybrids", verbose)
    check_datatype(x)
    rng = np.random.default_rng(seed)

    if method.lower() not in METHODS:
        logger.warning("  method must be either 'random' or 'AvgPIC', set to 'random'")
        method = "random"
    if pprob < 0 or pprob > 1:
        logger.warning("  Threshold posterior probability for assignment, pprob, must be between 0 and 1, "
                       f"typically close to 1, set to {FALLBACK_PPROB}")
        pprob = FALLBACK_PPROB

    ensure_dir(outpath)
    pops = x.pop if x.pop is not None else np.array([''] * x.n_ind)
    in0 = np.isin(pops, p0) if p0 else np.zeros(x.n_ind, dtype=bool)
    in1 = np.isin(pops, p1) if p1 else np.zeros(x.n_ind, dtype=bool)
    flags = None
    fixed: List[str] = []
    fixed_used: Optional[GenotypeMatrix] = None

    if p0 and p1:
        if verbose >= 3:
            logger.info("  Both parental populations have been specified")
        if not in0.any() or not in1.any():
            raise RuntimeError("Fatal Error: One or both of two specified parental populations contains no individuals")
        flags = ['z0' if a else 'z1' if b else '' for a, b in zip(in0, in1)]
        if verbose >= 3:
            logger.info("  Identifying loci with fixed difference between parental stocks")
        fixed = _fixed_loci(x, list(p0), list(p1), threshold)
        parental_flag = "bothpar" if fixed else "bothparnonefixed"
        if verbose >= 3:
            logger.info(f"  No. of fixed loci identified: {len(fixed)}")
        fixed_all = x.keep_loc(fixed)
        if len(fixed) > LOC_LIMIT:
            if verbose >= 3:
                logger.info(f"  Selecting {LOC_LIMIT} loci showing fixed differences between parentals at random")
            used = subsample_loci(fixed_all, LOC_LIMIT, method="random", rng=rng)
            fixed_used = used
        else:
            if verbose >= 3:
                logger.info(f"  Selecting {len(fixed)} loci showing fixed differences between parentals, "
                            f"supplementing with {LOC_LIMIT - len(fixed)} other loci selected by {method}")
            others = subsample_loci(x.drop_loc(fixed), LOC_LIMIT - len(fixed), method=method, rng=rng)
            used = fixed_all.cbind(others) if fixed else others
            fixed_used = fixed_all
    elif p0 or p1:
        if verbose >= 3:
            logger.info("  Only one parental population specified")
        if not in0.any() and not in1.any():
            raise RuntimeError("Fatal Error: Specified parental population contains no individuals")
        flags = ['z0' if a else 'z1' if b else '' for a, b in zip(in0, in1)]
        if verbose >= 3:
            logger.info(f"  Selecting {LOC_LIMIT} loci by {method}")
        used = subsample_loci(x, LOC_LIMIT, method=method, rng=rng)
        parental_flag = "onepar"
    else:
        if verbose >= 3:
            logger.info("  No parental population specified")
            logger.info(f"  Selecting {LOC_LIMIT} loci by {method}")
        used = subsample_loci(x, LOC_LIMIT, method=method, rng=rng)
        parental_flag = "nopar"

    input_fp = os.path.join(outpath, outfile)
    if verbose >= 3:
        logger.info(f"  Writing the NewHybrids input file {input_fp} ({used.n_ind} individuals, {used.n_loc} loci)")
    write_nhybrids_input(used, input_fp, flags)
    result = NHybridsResult(loci=used, input_file=input_fp, parental_flag=parental_flag, fixed_loci=fixed)

    if nhyb_directory is not None:
        exe = find_in_directory(nhyb_directory, EXEC_NAMES)
        if exe is None:
            raise RuntimeError("Executable for newhybrids not found! Please make sure that the software "
                               "is correctly installed.")
        if ' ' in exe:
            raise RuntimeError("The path to the executable for newhybrids has spaces. "
                               "Please move it to a path without spaces.")
        rand1 = int(rng.integers(1, 11))
        rand2 = int(rng.integers(11, 21))
        cmd = [exe, '--no-gui',
               '--data-file', os.path.abspath(input_fp),
               '--seeds', str(rand1), str(rand2),
               '--pi-prior', pi_prior,
               '--theta-prior', theta_prior,
               '--burn-in', str(burn_in),
               '--num-sweeps', str(sweeps)]
        if gtyp_file != DEFAULT_GTYP_FILE:
            cmd += ['--gtyp-ppn-file', os.path.abspath(gtyp_file)]
        if af_prior_file is not None:
            cmd += ['--AF-prior-file', os.path.abspath(af_prior_file)]
        if verbose >= 3:
            logger.info("  Passing control to NewHybrids executable")
        run(cmd, log=os.path.join(outpath, 'newhybrids.log'), cwd=outpath)
        pofz = read_pofz(os.path.join(outpath, POFZ_TXT), x.ind_names, pops)
        pofz.to_csv(os.path.join(outpath, POFZ_CSV), index=False)
        result.pofz = pofz
        if verbose >= 3:
            logger.info(f"  Results are stored in file {os.path.join(outpath, POFZ_CSV)}")

    if parental_flag == "bothpar" and plot and result.pofz is not None:
        summary = f1_genotype_summary(fixed_used, result.pofz, pprob)
        result.f1_summary = summary
        fig = plot_f1_genotypes(summary, os.path.join(outpath, 'F1_genotypes.png'))
        plt.close(fig)
        if verbose >= 3:
            n_f1 = int((result.pofz['F1'] >= pprob).sum())
            logger.info(f"  No. of F1 individuals: {n_f1}")
            logger.info(f"  No. of loci with fixed differences used in the analysis: {fixed_used.n_loc}")
            for _, r in summary.iterrows():
                logger.info(f"  No. of {r['class']} loci for the F1s: {r['count']} ({r['percent']}%)")

    flag_end("nhybrids", verbose)
    return result
