from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from matplotlib.patches import Ellipse
from scipy.stats import f as f_dist
from skbio.stats.distance import DistanceMatrix

from .genotypes import GenotypeMatrix, SNP, SILICODART, check_datatype
from .colors import hue_palette
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

# ----------------- constants -----------------
DEFAULT_NFACTORS = 5
EIGEN_TOL = 1e-12
PCOA_LARGE_CORRECTION_WARN_THRESHOLD = 0.1  # Warn if Lingoes correction > 10% of max eigenvalue

POP_LABEL_CHOICES = ('none', 'ind', 'pop', 'legend')
DEFAULT_PLEVEL = 0.95
DEFAULT_ADJUST = 1.5


@dataclass
class Ordination:
    """Scores of individuals (rows) on the retained axes plus all positive eigenvalues."""
    scores: pd.DataFrame
    eig: np.ndarray
    kind: str  # 'pca' (genotype matrix) or 'pcoa' (distance matrix)
    loadings: Optional[pd.DataFrame] = None
    correction: float = 0.0

    @property
    def nfactors(self) -> int:
        return self.scores.shape[1]

    def percent_explained(self) -> np.ndarray:
        s = self.eig[self.eig >= 0].sum()
        return np.round(self.eig * 100 / s, 1) if s > 0 else np.zeros_like(self.eig)


# --------------- ordination ----------------
def _pca_genotypes(x: GenotypeMatrix, nfactors: int) -> Ordination:
    """PCA on the centred genotype matrix; missing scores take the locus mean."""
    g = x.genotypes.copy()
    scored = ~np.isnan(g)
    n_obs = scored.sum(axis=0)
    with np.errstate(invalid='ignore', divide='ignore'):
        means = np.where(n_obs > 0, np.nansum(g, axis=0) / np.maximum(n_obs, 1), 0.0)
    g = np.where(scored, g, means[None, :])
    Xc = g - means[None, :]
    n = Xc.shape[0]
    U, s, Vt = np.linalg.svd(Xc, full_matrices=False)
    eig = (s ** 2) / n
    keep = eig > EIGEN_TOL
    if not np.any(keep):
        raise RuntimeError("Ordination failed: no variation among individuals")
    U, s, Vt, eig = U[:, keep], s[keep], Vt[keep], eig[keep]
    k = max(1, min(nfactors, len(eig)))
    cols = [f'PC{i + 1}' for i in range(k)]
    scores = pd.DataFrame(U[:, :k] * s[:k], index=x.ind_names, columns=cols)
    loadings = pd.DataFrame(Vt[:k].T, index=x.loc_names, columns=cols)
    return Ordination(scores=scores, eig=eig, kind='pca', loadings=loadings)


def _pcoa_distance(D: np.ndarray, ids: List[str], nfactors: int, euclid_correction: str = "lingoes") -> Ordination:
    """
    Classical PCoA with optional Lingoes correction.

    Warns if Lingoes correction is substantial.
    """
    n = D.shape[0]
    J = np.eye(n) - np.ones((n, n)) / n
    B = -0.5 * (J @ (D ** 2) @ J)
    eigvals, eigvecs = np.linalg.eigh(B)  # ascending

    correction_magnitude = 0.0
    if euclid_correction == "lingoes" and np.any(eigvals < -EIGEN_TOL):
        c = -float(eigvals.min()) + 1e-12
        correction_magnitude = c
        eigvals = eigvals + c

        max_eigval = eigvals.max() if len(eigvals) > 0 else 1.0
        if max_eigval > 0 and (c / max_eigval) > PCOA_LARGE_CORRECTION_WARN_THRESHOLD:
            logger.warning(
                f"Large Lingoes correction applied (c={c:.4f}, {100*c/max_eigval:.1f}% of max eigenvalue). "
                f"Distance matrix may not be Euclidean."
            )

    pos_mask = eigvals > EIGEN_TOL
    if not np.any(pos_mask):
        raise RuntimeError("Ordination failed: no positive eigenvalues in distance matrix")
    eigvals = eigvals[pos_mask]
    eigvecs = eigvecs[:, pos_mask]
    order = np.argsort(eigvals)[::-1]
    eigvals = eigvals[order]
    eigvecs = eigvecs[:, order]
    k = max(1, min(nfactors, len(eigvals)))
    scores = eigvecs[:, :k] * np.sqrt(eigvals[:k])
    cols = [f'PC{i + 1}' for i in range(k)]
    return Ordination(scores=pd.DataFrame(scores, index=ids, columns=cols), eig=eigvals,
                      kind='pcoa', correction=correction_magnitude)


def pcoa(x: Union[GenotypeMatrix, pd.DataFrame, DistanceMatrix], nfactors: int = DEFAULT_NFACTORS,
         correction: str = "lingoes", verbose: Optional[int] = None) -> Ordination:
    """
    Ordinate individuals from genotypes (PCA) or a distance matrix (PCoA).

    Args:
        x: GenotypeMatrix, square distance DataFrame or scikit-bio DistanceMatrix
        nfactors: Number of axes to retain in the scores
        correction: 'lingoes' to correct negative eigenvalues of non-Euclidean distances, or 'none'
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        Ordination with scores and all positive eigenvalues

    Raises:
        RuntimeError: If there are fewer than two individuals or no variation
    """
    verbose = check_verbosity(verbose)
    flag_start("pcoa", verbose)
    if isinstance(x, GenotypeMatrix):
        check_datatype(x)
        if x.n_ind < 2:
            raise RuntimeError("Ordination requires at least two individuals")
        if verbose >= 2:
            logger.info(f"  Performing a PCA, individuals as entities, loci as attributes, {x.datatype} as state")
        out = _pca_genotypes(x, nfactors)
    else:
        if isinstance(x, pd.DataFrame):
            dm = DistanceMatrix(x.to_numpy(dtype=float), ids=[str(i) for i in x.index])
        elif isinstance(x, DistanceMatrix):
            dm = x
        else:
            raise RuntimeError("Fatal Error: GenotypeMatrix or distance matrix required!")
        if dm.shape[0] < 2:
            raise RuntimeError("Ordination requires at least two entities")
        if verbose >= 2:
            logger.info("  Performing a PCoA, individuals as entities, distances as attributes")
        out = _pcoa_distance(dm.data, list(dm.ids), nfactors, euclid_correction=correction)

    if verbose >= 3:
        pct = out.percent_explained()
        logger.info(f"  Variation explained by the first {out.nfactors} axes: "
                    + ", ".join(f"{p}%" for p in pct[:out.nfactors]))
    flag_end("pcoa", verbose)
    return out


# --------------- plotting ----------------
def confidence_ellipse(pts: np.ndarray, level: float) -> Optional[Ellipse]:
    """Normal-theory confidence ellipse for 2D points (None when fewer than three points)."""
    if pts.shape[0] < 3:
        return None
    cov = np.cov(pts, rowvar=False)
    if not np.all(np.isfinite(cov)):
        return None
    vals, vecs = np.linalg.eigh(cov)
    vals = np.clip(vals, 0.0, None)
    radius = np.sqrt(2 * f_dist.ppf(level, 2, pts.shape[0] - 1))
    angle = np.degrees(np.arctan2(vecs[1, 1], vecs[0, 1]))
    width, height = 2 * radius * np.sqrt(vals[1]), 2 * radius * np.sqrt(vals[0])
    return Ellipse(xy=pts.mean(axis=0), width=width, height=height, angle=angle, fill=False)


def _check_axis(value: Optional[int], n: int, default: int, name: str) -> int:
    if value is None or value < 1 or value > n:
        logger.warning(f"  {name}-axis must be specified to lie between 1 and the number of retained "
                       f"dimensions of the ordination {n}; set to {default}")
        return default
    return value


def _groups_for(x: Union[GenotypeMatrix, pd.DataFrame, DistanceMatrix], ordination: Ordination,
                as_pop: Optional[str], verbose: int) -> np.ndarray:
    if isinstance(x, GenotypeMatrix):
        if as_pop is not None:
            if x.ind_metrics is None or as_pop not in x.ind_metrics.columns:
                raise RuntimeError(f"Fatal Error: individual metric assigned to 'pop' ({as_pop}) does not exist")
            if verbose >= 2:
                logger.info(f"  Temporarily setting population assignments to {as_pop} as specified by the as_pop parameter")
            return x.ind_metrics[as_pop].astype(str).to_numpy()
        if x.pop is None:
            return np.array(['pop1'] * x.n_ind)
        return x.pop
    return np.asarray(ordination.scores.index, dtype=str)


def pcoa_plot(ordination: Union[Ordination, Sequence[Ordination]],
              x: Union[GenotypeMatrix, pd.DataFrame, DistanceMatrix, Sequence[GenotypeMatrix]],
              scale: bool = False,
              ellipse: bool = False,
              plevel: float = DEFAULT_PLEVEL,
              pop_labels: str = 'pop',
              as_pop: Optional[str] = None,
              hadjust: float = DEFAULT_ADJUST,
              vadjust: float = 1.0,
              xaxis: int = 1,
              yaxis: int = 2,
              zaxis: Optional[int] = None,
              pt_size: float = 2,
              pt_colors: Optional[Sequence[str]] = None,
              pt_shapes: Optional[Sequence[str]] = None,
              label_size: float = 1,
              axis_label_size: float = 1.5,
              output_path: Optional[str] = None,
              verbose: Optional[int] = None):
    """
    Bivariate or trivariate plot of an ordination, individuals coloured by population.

    A list of ordinations (with the matching list of genotype matrices, e.g.
    simulated generations) is drawn as one panel per generation.

    Returns:
        matplotlib Figure
    """
    verbose = check_verbosity(verbose)
    flag_start("pcoa_plot", verbose)

    if isinstance(ordination, (list, tuple)):
        fig = _plot_generations(list(ordination), list(x), xaxis=xaxis, yaxis=yaxis, pt_size=pt_size)
        if output_path:
            fig.savefig(output_path, dpi=300, bbox_inches="tight")
        flag_end("pcoa_plot", verbose)
        return fig

    if pop_labels not in POP_LABEL_CHOICES:
        logger.warning(f"  Parameter 'pop_labels' must be one of {'|'.join(POP_LABEL_CHOICES)}, set to 'pop'")
        pop_labels = 'pop'
    if plevel < 0 or plevel > 1:
        logger.warning(f"  Parameter 'plevel' must fall between 0 and 1, set to {DEFAULT_PLEVEL}")
        plevel = DEFAULT_PLEVEL
    if hadjust < 0 or hadjust > 3:
        logger.warning(f"  Parameter 'hadjust' must fall between 0 and 3, set to {DEFAULT_ADJUST}")
        hadjust = DEFAULT_ADJUST
    if vadjust < 0 or vadjust > 3:
        logger.warning(f"  Parameter 'vadjust' must fall between 0 and 3, set to {DEFAULT_ADJUST}")
        vadjust = DEFAULT_ADJUST
    n_axes = ordination.nfactors
    xaxis = _check_axis(xaxis, n_axes, 1, 'X')
    yaxis = _check_axis(yaxis, n_axes, 2, 'Y')
    if zaxis is not None:
        zaxis = _check_axis(zaxis, n_axes, 3, 'Z')

    groups = _groups_for(x, ordination, as_pop, verbose)
    is_genotypes = isinstance(x, GenotypeMatrix)
    if not is_genotypes:
        pop_labels = 'pop'

    pct = ordination.percent_explained()
    stem = "PCA Axis" if is_genotypes else "PCoA Axis"
    xlab = f"{stem} {xaxis} ({pct[xaxis - 1]}%)"
    ylab = f"{stem} {yaxis} ({pct[yaxis - 1]}%)"
    scores = ordination.scores.to_numpy()
    labels = list(ordination.scores.index)

    levels = sorted(set(groups.tolist()))
    colors = list(pt_colors) if pt_colors is not None else hue_palette(len(levels))
    if len(colors) < len(levels):
        logger.warning(f"  {len(colors)} colours supplied for {len(levels)} populations; recycling")
    color_of = {lvl: colors[i % len(colors)] for i, lvl in enumerate(levels)}
    shape_of = {lvl: (pt_shapes[i % len(pt_shapes)] if pt_shapes else 'o') for i, lvl in enumerate(levels)}
    fs_axis = axis_label_size * 10
    fs_label = label_size * 10
    s = pt_size * 15

    if verbose >= 2:
        if is_genotypes and x.datatype == SNP:
            logger.info("  Plotting populations in a space defined by the SNPs")
        elif is_genotypes and x.datatype == SILICODART:
            logger.info("  Plotting populations in a space defined by the presence/absence data")
        else:
            logger.info("  Plotting entities from the Distance Matrix")

    if zaxis is not None:
        fig = plt.figure(figsize=(7, 6))
        ax = fig.add_subplot(111, projection='3d')
        for lvl in levels:
            m = groups == lvl
            ax.scatter(scores[m, xaxis - 1], scores[m, yaxis - 1], scores[m, zaxis - 1],
                       color=color_of[lvl], marker=shape_of[lvl], s=s, label=lvl)
        ax.set_xlabel(xlab, fontsize=fs_axis * 0.6)
        ax.set_ylabel(ylab, fontsize=fs_axis * 0.6)
        ax.set_zlabel(f"{stem} {zaxis} ({pct[zaxis - 1]}%)", fontsize=fs_axis * 0.6)
        ax.legend(frameon=False, fontsize=fs_label * 0.8)
    else:
        fig, ax = plt.subplots(figsize=(7, 6))
        for lvl in levels:
            m = groups == lvl
            pts = scores[m][:, [xaxis - 1, yaxis - 1]]
            ax.scatter(pts[:, 0], pts[:, 1], color=color_of[lvl], marker=shape_of[lvl], s=s,
                       edgecolors="none", label=lvl)
            if ellipse:
                e = confidence_ellipse(pts, plevel)
                if e is not None:
                    e.set_edgecolor(color_of[lvl])
                    ax.add_patch(e)
            if pop_labels == 'pop':
                cx, cy = pts.mean(axis=0)
                ax.annotate(lvl, (cx, cy), xytext=(hadjust * 4, vadjust * 4), textcoords='offset points',
                            color=color_of[lvl], fontsize=fs_label, fontweight='bold')
        if pop_labels == 'ind':
            for i, lab in enumerate(labels):
                ax.annotate(lab, (scores[i, xaxis - 1], scores[i, yaxis - 1]), xytext=(hadjust * 2, vadjust * 2),
                            textcoords='offset points', fontsize=fs_label * 0.7)
        if pop_labels == 'legend':
            if verbose >= 2:
                logger.info("  Plotting populations identified by a legend")
            ax.legend(title="Population", frameon=False, fontsize=fs_label * 0.8)
        ax.axhline(0, color='black', linewidth=0.8)
        ax.axvline(0, color='black', linewidth=0.8)
        ax.set_xlabel(xlab, fontsize=fs_axis, fontstyle='italic', fontweight='bold')
        ax.set_ylabel(ylab, fontsize=fs_axis, fontstyle='italic', fontweight='bold')
        ax.spines["top"].set_visible(False)
        ax.spines["right"].set_visible(False)
        if scale:
            ax.set_aspect('equal', adjustable='datalim')
        fig.tight_layout()

    if output_path:
        fig.savefig(output_path, dpi=300, bbox_inches="tight")
    flag_end("pcoa_plot", verbose)
    return fig


def _generation_of(x: GenotypeMatrix, default: int) -> int:
    if x.ind_metrics is not None and 'generation' in x.ind_metrics.columns and len(x.ind_metrics):
        return int(x.ind_metrics['generation'].iloc[0])
    return default


def _plot_generations(ordinations: List[Ordination], xs: List[GenotypeMatrix],
                      xaxis: int = 1, yaxis: int = 2, pt_size: float = 2):
    """
    One panel per generation; axis signs follow the first generation.

    The sign of an ordination axis is arbitrary, so each generation is flipped
    to agree with generation one at the individual with the largest absolute
    score in generation one.
    """
    if len(ordinations) != len(xs) or not ordinations:
        raise ValueError("Need one genotype matrix per ordination")
    first = ordinations[0].scores.to_numpy()
    ind_x = int(np.argmax(np.abs(first[:, xaxis - 1])))
    ind_y = int(np.argmax(np.abs(first[:, yaxis - 1])))
    sign_x0 = first[ind_x, xaxis - 1] >= 0
    sign_y0 = first[ind_y, yaxis - 1] >= 0

    levels = sorted({p for g in xs for p in (g.pop.tolist() if g.pop is not None else ['pop1'])})
    colors = dict(zip(levels, hue_palette(len(levels))))
    n = len(ordinations)
    ncol = min(4, n)
    nrow = int(np.ceil(n / ncol))
    fig, axes = plt.subplots(nrow, ncol, figsize=(3.2 * ncol, 3 * nrow), squeeze=False)
    for i, (o, g) in enumerate(zip(ordinations, xs)):
        ax = axes[i // ncol][i % ncol]
        sc = o.scores.to_numpy()[:, [xaxis - 1, yaxis - 1]].copy()
        if ind_x < sc.shape[0] and (sc[ind_x, 0] >= 0) != sign_x0:
            sc[:, 0] *= -1
        if ind_y < sc.shape[0] and (sc[ind_y, 1] >= 0) != sign_y0:
            sc[:, 1] *= -1
        pops = g.pop if g.pop is not None else np.array(['pop1'] * g.n_ind)
        for lvl in sorted(set(pops.tolist())):
            m = pops == lvl
            ax.scatter(sc[m, 0], sc[m, 1], color=colors[lvl], s=pt_size * 10, edgecolors="none", label=lvl)
        ax.set_title(f"Generation: {_generation_of(g, i + 1)}", fontsize=9)
        ax.set_xlabel(f"PCA Axis {xaxis}", fontsize=8)
        ax.set_ylabel(f"PCA Axis {yaxis}", fontsize=8)
        ax.tick_params(labelsize=7)
    for j in range(n, nrow * ncol):
        axes[j // ncol][j % ncol].axis('off')
    axes[0][0].legend(frameon=False, fontsize=7)
    fig.tight_layout()
    return fig
