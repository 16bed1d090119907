import argparse
import json
import logging
import pathlib
from typing import List, Optional

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd

from .files import ensure_dir
from .io import read_genotypes_csv, write_genotypes_csv
from .genotypes import SNP, SILICODART
from .filter import filter_monomorphs, filter_taglength, DEFAULT_TAG_LOWER, DEFAULT_TAG_UPPER
from .popstats import report_heterozygosity
from .ordination import pcoa, pcoa_plot, DEFAULT_NFACTORS
from .assign import assign_mahalanobis, DEFAULT_PLEVEL
from .structure import run_structure, evanno, plot_evanno, structure_qmat, map_structure
from .nhybrids import nhybrids, DEFAULT_BURN_IN, DEFAULT_SWEEPS, DEFAULT_PPROB
from .sims import SimulationConfig, run_simulation, write_ped
from .colors import select_colors, show_colors
from .verbosity import set_verbosity, DEFAULT_VERBOSITY

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# ----- helper functions -----

def _load(args: argparse.Namespace):
    """Read the genotype table named by the common input options."""
    return read_genotypes_csv(args.genotypes, ind_metadata_fp=args.ind_metadata,
                              loc_metadata_fp=args.loc_metadata, datatype=args.datatype)


def _add_input_args(p: argparse.ArgumentParser) -> None:
    p.add_argument('--genotypes', required=True, help='CSV of individuals x loci (first column individual id)')
    p.add_argument('--ind-metadata', default=None, help='CSV of individual metadata (id, pop, lat, lon, ...)')
    p.add_argument('--loc-metadata', default=None, help='CSV of locus metrics (AlleleID, TrimmedSequence, AvgPIC, ...)')
    p.add_argument('--datatype', choices=[SNP, SILICODART], default=SNP, help='marker type (default SNP)')


def _cmd_filter_monomorphs(args: argparse.Namespace) -> None:
    x = filter_monomorphs(_load(args))
    paths = write_genotypes_csv(x, args.out)
    logger.info(f"Wrote {paths['genotypes']}")


def _cmd_filter_taglength(args: argparse.Namespace) -> None:
    x = filter_taglength(_load(args), lower=args.lower, upper=args.upper)
    paths = write_genotypes_csv(x, args.out)
    logger.info(f"Wrote {paths['genotypes']}")


def _cmd_het(args: argparse.Namespace) -> None:
    x = _load(args)
    df = report_heterozygosity(x)
    if args.out:
        ensure_dir(str(pathlib.Path(args.out).parent))
        df.to_csv(args.out, sep='\t', index=False)
        logger.info(f"Wrote heterozygosity report to {args.out}")
    else:
        print(df.to_string(index=False))


def _cmd_pcoa(args: argparse.Namespace) -> None:
    if args.distance:
        dist = pd.read_csv(args.distance, sep='\t', index_col=0)
        ordination = pcoa(dist, nfactors=args.nfactors)
        x = dist
    else:
        x = _load(args)
        ordination = pcoa(x, nfactors=args.nfactors)
    out = pathlib.Path(args.out)
    ensure_dir(str(out))
    ordination.scores.to_csv(out / 'scores.tsv', sep='\t')
    pd.DataFrame({'eig': ordination.eig, 'percent': ordination.percent_explained()}).to_csv(
        out / 'eigenvalues.tsv', sep='\t', index=False)
    fig = pcoa_plot(ordination, x, ellipse=args.ellipse, plevel=args.plevel, pop_labels=args.pop_labels,
                    xaxis=args.xaxis, yaxis=args.yaxis, output_path=str(out / 'pcoa.png'))
    plt.close(fig)
    logger.info(f"Wrote ordination results to {out}")


def _cmd_assign(args: argparse.Namespace) -> None:
    x = _load(args)
    df = assign_mahalanobis(x, args.unknown, plevel=args.plevel, plot_path=args.plot)
    if args.out:
        df.to_csv(args.out, sep='\t', index=False)
        logger.info(f"Wrote assignment table to {args.out}")
    else:
        print(df.to_string(index=False))


def _cmd_structure(args: argparse.Namespace) -> None:
    x = _load(args)
    out = pathlib.Path(args.out)
    ensure_dir(str(out))
    k_range = range(args.k_min, args.k_max + 1)
    runs = run_structure(x, args.exec, k_range, num_k_rep=args.reps, burnin=args.burnin, numreps=args.numreps,
                         noadmix=args.noadmix, out_dir=str(out / 'runs'), n_workers=args.workers, seed=args.seed)
    summary = pd.DataFrame([{'k': r.k, 'rep': r.rep, 'ln_prob': r.ln_prob, 'mean_llh': r.mean_llh,
                             'var_llh': r.var_llh} for r in runs])
    summary.to_csv(out / 'structure_runs.tsv', sep='\t', index=False)
    if summary['k'].nunique() >= 3:
        ev = evanno(runs)
        ev.to_csv(out / 'evanno.tsv', sep='\t', index=False)
        plt.close(plot_evanno(ev, str(out / 'evanno.png')))
    for k in sorted(summary['k'].unique()):
        q = structure_qmat(runs, int(k))
        q.to_csv(out / f'qmat_K{k}.tsv', sep='\t', index=False)
        if x.latlon is not None and args.map:
            plt.close(map_structure(q, x, output_path=str(out / f'map_K{k}.png')))
    logger.info(f"Wrote STRUCTURE results to {out}")


def _cmd_nhybrids(args: argparse.Namespace) -> None:
    x = _load(args)
    res = nhybrids(x, outfile=args.outfile, outpath=args.out, p0=args.p0, p1=args.p1,
                   threshold=args.threshold, method=args.method, plot=not args.no_plot, pprob=args.pprob,
                   nhyb_directory=args.nhyb_directory, burn_in=args.burn_in, sweeps=args.sweeps,
                   pi_prior=args.pi_prior, theta_prior=args.theta_prior, seed=args.seed)
    logger.info(f"NewHybrids input written to {res.input_file} ({res.loci.n_loc} loci, {res.parental_flag})")


def _cmd_simulate(args: argparse.Namespace) -> None:
    config = SimulationConfig.from_json(args.config) if args.config else SimulationConfig()
    if args.seed is not None:
        config.seed = args.seed
    out = pathlib.Path(args.out)
    ensure_dir(str(out))
    config.to_json(str(out / 'config.json'))
    result = run_simulation(config)
    for i, pop in enumerate(result.populations, start=1):
        write_ped(pop, str(out / f'pop{i}'))
    last = result.snapshots[-1]
    write_genotypes_csv(last, str(out / f'generation{last.ind_metrics["generation"].iloc[0]}'))
    if args.plot:
        ords = [pcoa(s, verbose=0) for s in result.snapshots]
        plt.close(pcoa_plot(ords, result.snapshots, output_path=str(out / 'generations_pca.png')))
    logger.info(f"Simulation of {config.generations} generations written to {out}")


def _cmd_colors(args: argparse.Namespace) -> None:
    colors = select_colors(library=args.library, palette=args.palette, ncolors=args.ncolors, select=args.select)
    if args.out:
        fig, _ = show_colors(colors)
        fig.savefig(args.out, dpi=300)
        plt.close(fig)
    print(json.dumps(colors))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog='snpk',
        description='Population genetics tools for SNP and presence/absence marker data'
    )
    ap.add_argument('--verbose', type=int, default=DEFAULT_VERBOSITY, help='verbosity 0 (silent) to 5 (full report)')
    sub = ap.add_subparsers(dest='command', required=True)

    p = sub.add_parser('filter-monomorphs', help='remove monomorphic and all-NA loci')
    _add_input_args(p)
    p.add_argument('--out', required=True, help='output prefix')
    p.set_defaults(func=_cmd_filter_monomorphs)

    p = sub.add_parser('filter-taglength', help='filter loci on sequence tag length')
    _add_input_args(p)
    p.add_argument('--lower', type=int, default=DEFAULT_TAG_LOWER, help=f'minimum tag length (default {DEFAULT_TAG_LOWER})')
    p.add_argument('--upper', type=int, default=DEFAULT_TAG_UPPER, help=f'maximum tag length (default {DEFAULT_TAG_UPPER})')
    p.add_argument('--out', required=True, help='output prefix')
    p.set_defaults(func=_cmd_filter_taglength)

    p = sub.add_parser('het', help='observed and expected heterozygosity per population')
    _add_input_args(p)
    p.add_argument('--out', default=None, help='TSV report (printed when omitted)')
    p.set_defaults(func=_cmd_het)

    p = sub.add_parser('pcoa', help='ordination of genotypes (PCA) or a distance matrix (PCoA)')
    p.add_argument('--genotypes', default=None, help='CSV of individuals x loci')
    p.add_argument('--ind-metadata', default=None)
    p.add_argument('--loc-metadata', default=None)
    p.add_argument('--datatype', choices=[SNP, SILICODART], default=SNP)
    p.add_argument('--distance', default=None, help='square TSV distance matrix instead of genotypes')
    p.add_argument('--nfactors', type=int, default=DEFAULT_NFACTORS)
    p.add_argument('--ellipse', action='store_true', help='draw population confidence ellipses')
    p.add_argument('--plevel', type=float, default=0.95)
    p.add_argument('--pop-labels', choices=['none', 'ind', 'pop', 'legend'], default='pop')
    p.add_argument('--xaxis', type=int, default=1)
    p.add_argument('--yaxis', type=int, default=2)
    p.add_argument('--out', required=True, help='output directory')
    p.set_defaults(func=_cmd_pcoa)

    p = sub.add_parser('assign', help='Mahalanobis assignment of an unknown individual')
    _add_input_args(p)
    p.add_argument('--unknown', required=True, help='name of the individual to assign')
    p.add_argument('--plevel', type=float, default=DEFAULT_PLEVEL)
    p.add_argument('--plot', default=None, help='optional PCA plot path')
    p.add_argument('--out', default=None, help='TSV table (printed when omitted)')
    p.set_defaults(func=_cmd_assign)

    p = sub.add_parser('structure', help='run STRUCTURE over a range of K')
    _add_input_args(p)
    p.add_argument('--exec', required=True, help='path to the STRUCTURE executable')
    p.add_argument('--k-min', type=int, default=1)
    p.add_argument('--k-max', type=int, default=4)
    p.add_argument('--reps', type=int, default=3, help='replicates per K')
    p.add_argument('--burnin', type=int, default=1000)
    p.add_argument('--numreps', type=int, default=1000)
    p.add_argument('--noadmix', action='store_true')
    p.add_argument('--workers', type=int, default=1, help='runs executed concurrently')
    p.add_argument('--map', action='store_true', help='draw ancestry maps (needs lat/lon)')
    p.add_argument('--seed', type=int, default=None)
    p.add_argument('--out', required=True, help='output directory')
    p.set_defaults(func=_cmd_structure)

    p = sub.add_parser('nhybrids', help='prepare and run NewHybrids')
    _add_input_args(p)
    p.add_argument('--p0', nargs='*', default=None, help='populations of parental group 0')
    p.add_argument('--p1', nargs='*', default=None, help='populations of parental group 1')
    p.add_argument('--threshold', type=float, default=0)
    p.add_argument('--method', default='random', help='random or AvgPIC locus selection')
    p.add_argument('--pprob', type=float, default=DEFAULT_PPROB)
    p.add_argument('--no-plot', action='store_true')
    p.add_argument('--nhyb-directory', default=None, help='directory with the newhybs executable')
    p.add_argument('--burn-in', type=int, default=DEFAULT_BURN_IN)
    p.add_argument('--sweeps', type=int, default=DEFAULT_SWEEPS)
    p.add_argument('--pi-prior', default='Jeffreys')
    p.add_argument('--theta-prior', default='Jeffreys')
    p.add_argument('--outfile', default='nhyb.txt')
    p.add_argument('--seed', type=int, default=None)
    p.add_argument('--out', required=True, help='output directory')
    p.set_defaults(func=_cmd_nhybrids)

    p = sub.add_parser('simulate', help='forward simulation of two populations')
    p.add_argument('--config', default=None, help='JSON file of simulation parameters')
    p.add_argument('--seed', type=int, default=None)
    p.add_argument('--plot', action='store_true', help='PCA panels per recorded generation')
    p.add_argument('--out', required=True, help='output directory')
    p.set_defaults(func=_cmd_simulate)

    p = sub.add_parser('colors', help='select colours from a palette library')
    p.add_argument('--library', default=None, choices=['brewer', 'gr.palette', 'gr.hcl', 'baseR'])
    p.add_argument('--palette', default=None)
    p.add_argument('--ncolors', type=int, default=None)
    p.add_argument('--select', type=int, nargs='*', default=None, help='zero-based positions to return')
    p.add_argument('--out', default=None, help='optional swatch image')
    p.set_defaults(func=_cmd_colors)
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main CLI entry point for snp-kit.

    Dispatches to one sub-command per analysis: locus filters, heterozygosity,
    ordination, provenance assignment, STRUCTURE and NewHybrids runs, the
    population simulator and palette selection.
    """
    args = build_parser().parse_args(argv)
    set_verbosity(args.verbose)
    if args.command == 'pcoa' and not (args.genotypes or args.distance):
        raise SystemExit("pcoa needs --genotypes or --distance")
    logger.info(f"Running {args.command}")
    args.func(args)


if __name__ == '__main__':
    main()
