import logging
from typing import List, Optional, Sequence

import numpy as np
import matplotlib
import matplotlib.pyplot as plt
from matplotlib.colors import to_hex, hsv_to_rgb, ListedColormap

from .genotypes import GenotypeMatrix, check_datatype
from .verbosity import check_verbosity, flag_start, flag_end

logger = logging.getLogger(__name__)

DEFAULT_NCOLORS = 9

# Library name -> (default palette, palette name -> matplotlib colormap)
BREWER_PALETTES = {
    name: name for name in (
        'BrBG', 'PiYG', 'PRGn', 'PuOr', 'RdBu', 'RdGy', 'RdYlBu', 'RdYlGn', 'Spectral',
        'Accent', 'Dark2', 'Paired', 'Pastel1', 'Pastel2', 'Set1', 'Set2', 'Set3',
        'Blues', 'BuGn', 'BuPu', 'GnBu', 'Greens', 'Greys', 'Oranges', 'OrRd', 'PuBu',
        'PuBuGn', 'PuRd', 'Purples', 'RdPu', 'Reds', 'YlGn', 'YlGnBu', 'YlOrBr', 'YlOrRd',
    )
}
PALETTE_PALETTES = {
    'Tableau 10': 'tab10', 'Tableau 20': 'tab20', 'Set 1': 'Set1', 'Set 2': 'Set2',
    'Set 3': 'Set3', 'Pastel 1': 'Pastel1', 'Pastel 2': 'Pastel2', 'Dark 2': 'Dark2',
    'Accent': 'Accent', 'Paired': 'Paired',
}
HCL_PALETTES = {
    'Spectral': 'Spectral', 'RdBu': 'RdBu', 'Viridis': 'viridis', 'Plasma': 'plasma',
    'Inferno': 'inferno', 'Magma': 'magma', 'Cividis': 'cividis', 'Blues': 'Blues',
    'Greens': 'Greens', 'Reds': 'Reds', 'Purples': 'Purples', 'Oranges': 'Oranges',
    'PuOr': 'PuOr', 'YlGnBu': 'YlGnBu', 'Zissou 1': 'coolwarm', 'Terrain': 'terrain',
}
BASER_PALETTES = {
    'rainbow': 'hsv', 'topo.colors': 'gist_earth', 'terrain.colors': 'terrain', 'cm.colors': 'cool',
}
LIBRARIES = {
    'brewer': ('Spectral', BREWER_PALETTES),
    'gr.palette': ('Tableau 10', PALETTE_PALETTES),
    'gr.hcl': ('Spectral', HCL_PALETTES),
    'baseR': ('rainbow', BASER_PALETTES),
}


def hue_palette(n: int) -> List[str]:
    """Evenly spaced hues starting at 15 degrees, as used for default group colours."""
    if n <= 0:
        return []
    hues = (15 + 360 * np.arange(n) / n) % 360 / 360.0
    hsv = np.column_stack([hues, np.full(n, 0.65), np.full(n, 0.95)])
    return [to_hex(c) for c in hsv_to_rgb(hsv)]


def _from_cmap(cmap_name: str, n: int, cyclic: bool = False) -> List[str]:
    cmap = matplotlib.colormaps[cmap_name]
    if isinstance(cmap, ListedColormap) and cmap.N <= 20:
        # qualitative palettes: take the listed colours, recycling when short
        return [to_hex(cmap.colors[i % cmap.N]) for i in range(n)]
    pos = np.linspace(0, 1, n, endpoint=not cyclic) if n > 1 else np.array([0.0])
    return [to_hex(cmap(v)) for v in pos]


def select_colors(x: Optional[GenotypeMatrix] = None,
                  library: Optional[str] = None,
                  palette: Optional[str] = None,
                  ncolors: Optional[int] = None,
                  select: Optional[Sequence[int]] = None,
                  show: bool = False,
                  verbose: Optional[int] = None) -> List[str]:
    """
    Select colours from one of several palette libraries.

    Args:
        x: Optional genotype matrix from which to take the number of populations
        library: 'brewer', 'gr.palette', 'gr.hcl' or 'baseR' (default: evenly spaced hues)
        palette: Palette within the library (library-specific default)
        ncolors: Number of colours (default: populations in `x`, else 9)
        select: Zero-based positions of the colours to return, repeats allowed
        show: Draw a swatch of the returned colours
        verbose: Verbosity 0-5 (package default when None)

    Returns:
        List of hex colour strings

    Raises:
        RuntimeError: If `select` does not match the number of populations in `x`
        ValueError: If the library is unknown or a `select` position lies outside the palette
    """
    verbose = check_verbosity(verbose)
    flag_start("select_colors", verbose)

    if x is not None:
        check_datatype(x)

    if ncolors is None:
        if x is not None:
            ncolors = x.n_pop
            if verbose >= 2:
                logger.warning(f"  Number of required colors not specified, set to number of pops {x.n_pop} in genotype matrix")
        else:
            if verbose >= 2:
                logger.warning(f"  Number of required colors not specified, set to {DEFAULT_NCOLORS} to display the colors")
            ncolors = DEFAULT_NCOLORS

    if select is not None and x is not None:
        if x.n_pop != len(select):
            raise RuntimeError(f"Fatal Error: Number of specified colours {len(select)} does not correspond "
                               f"to number of populations {x.n_pop} in supplied genotype matrix")
        if verbose >= 2:
            logger.info(f"  Number of specified colours {len(select)} corresponds to number of populations in supplied genotype matrix")

    if library is None:
        if verbose >= 2:
            logger.warning("  No colour library or palette specified, set to default")
            logger.warning(f"    Select one of {', '.join(LIBRARIES)}")
        library, palette = 'hue', 'hue_pal'
        colors = hue_palette(ncolors)
    else:
        if library not in LIBRARIES:
            raise ValueError(f"library must be one of {list(LIBRARIES)}, got {library!r}")
        default, palettes = LIBRARIES[library]
        if palette is None:
            if verbose >= 2:
                logger.warning(f"  Palette not specified, set to {default}")
            palette = default
        if palette not in palettes:
            if verbose >= 2:
                logger.warning(f"  Nominated palette not available in {library}, should be one of")
                logger.warning(f"  {', '.join(palettes)}")
                logger.warning(f"  Set to {default}")
            palette = default
        colors = _from_cmap(palettes[palette], ncolors, cyclic=(library == 'baseR' and palette == 'rainbow'))

    if select is not None:
        bad = [i for i in select if not 0 <= i < len(colors)]
        if bad:
            raise ValueError(f"select positions {bad} outside 0..{len(colors) - 1} for {ncolors} colours")
        colors = [colors[i] for i in select]
        if verbose >= 1:
            logger.info(f"  Returning {len(select)} of {ncolors} colours for library {library}: palette {palette}")
    elif verbose >= 1:
        logger.info(f"  Returning {ncolors} colours for library {library}: palette {palette}")

    if show:
        show_colors(colors)

    flag_end("select_colors", verbose)
    return colors


def show_colors(colors: Sequence[str]):
    """Draw a row of swatches labelled with their hex codes."""
    n = max(1, len(colors))
    fig, ax = plt.subplots(figsize=(max(3, n * 0.8), 1.2))
    for i, c in enumerate(colors):
        ax.add_patch(plt.Rectangle((i, 0), 1, 1, color=c))
        ax.text(i + 0.5, -0.15, c, ha='center', va='top', fontsize=7)
    ax.set_xlim(0, n)
    ax.set_ylim(-0.4, 1)
    ax.axis('off')
    fig.tight_layout()
    return fig, ax
