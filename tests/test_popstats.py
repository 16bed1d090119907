import sys
import pathlib

import numpy as np
import pandas as pd
import pytest

# Ensure project src/ is on sys.path for imports when running tests locally
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from snp_kit.genotypes import GenotypeMatrix, SILICODART
from snp_kit.popstats import (
    het_pop, report_heterozygosity, percent_freq, is_fixed, fixed_differences, fst_pairwise
)


def _two_pops():
    # pop A fixed for reference at L1, pop B fixed for alternate
    g = np.array([
        [0, 1, 0],
        [0, 1, np.nan],
        [2, 0, 1],
        [2, 2, 1],
    ])
    return GenotypeMatrix(genotypes=g, ind_names=['a1', 'a2', 'b1', 'b2'],
                          loc_names=['L1', 'L2', 'L3'], pop=['A', 'A', 'B', 'B'])


def test_het_pop():
    """Test mean expected heterozygosity per population."""
    he = het_pop(_two_pops())
    # A: L1 0, L2 p=q=0.5 -> 0.5, L3 0 ; mean 1/6
    # B: L1 0, L2 0.5, L3 0.5 ; mean 1/3
    assert he.name == 'He'
    assert he['A'] == round(1 / 6, 6)
    assert he['B'] == round(1 / 3, 6)


def test_het_pop_requires_snp():
    """Test presence/absence data are rejected."""
    x = GenotypeMatrix(genotypes=[[0, 1]], ind_names=['a'], loc_names=['L1', 'L2'], datatype=SILICODART)
    with pytest.raises(RuntimeError):
        het_pop(x)


def test_report_heterozygosity():
    """Test observed heterozygosity and FIS."""
    df = report_heterozygosity(_two_pops(), verbose=0)
    assert list(df.columns) == ['pop', 'n_ind', 'n_loc', 'Ho', 'He', 'FIS']
    a = df[df['pop'] == 'A'].iloc[0]
    assert a['n_ind'] == 2
    assert a['Ho'] == round(1 / 3, 6)
    assert a['FIS'] == pytest.approx(1 - (1 / 3) / (1 / 6), abs=1e-5)


def test_percent_freq():
    """Test percentage frequencies ordered by locus then population."""
    pf = percent_freq(_two_pops())
    assert list(pf.columns) == ['pop', 'locus', 'sum', 'nobs', 'nmissing', 'frequency']
    assert list(pf['locus'])[:2] == ['L1', 'L1']
    l1 = pf[pf['locus'] == 'L1'].set_index('pop')['frequency']
    assert l1['A'] == 0
    assert l1['B'] == 100
    l3a = pf[(pf['locus'] == 'L3') & (pf['pop'] == 'A')].iloc[0]
    assert l3a['nobs'] == 1
    assert l3a['nmissing'] == 1


def test_is_fixed():
    """Test fixed difference calls with and without tolerance."""
    assert is_fixed(0, 100) is True
    assert is_fixed(100, 0) is True
    assert is_fixed(3, 97) is False
    assert is_fixed(3, 97, tloc=0.05) is True
    assert is_fixed(np.nan, 100) is None
    try:
        is_fixed(0, 100, tloc=0.6)
        assert False, "Should have raised ValueError"
    except ValueError as e:
        assert "tloc" in str(e)


def test_fixed_differences():
    """Test pairwise fixed difference counts."""
    fd = fixed_differences(_two_pops())
    assert fd.loc['A', 'B'] == 1
    assert fd.loc['B', 'A'] == 1
    assert fd.loc['A', 'A'] == 0


def test_fst_pairwise():
    """Test Nei's GST is symmetric and positive for diverged populations."""
    fst = fst_pairwise(_two_pops())
    assert fst.loc['A', 'B'] == fst.loc['B', 'A']
    assert 0 < fst.loc['A', 'B'] <= 1
    assert fst.loc['A', 'A'] == 0
