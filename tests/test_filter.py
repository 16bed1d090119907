import sys
import pathlib
import logging

import numpy as np
import pandas as pd
import pytest

# Ensure project src/ is on sys.path for imports when running tests locally
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from snp_kit.genotypes import GenotypeMatrix, SILICODART
from snp_kit.filter import filter_monomorphs, filter_taglength


def _snp():
    g = np.array([
        [0, 2, 1, np.nan, 0],
        [0, 2, 0, np.nan, np.nan],
        [0, 2, 2, np.nan, 2],
    ])
    return GenotypeMatrix(
        genotypes=g,
        ind_names=['a', 'b', 'c'],
        loc_names=['mono0', 'mono2', 'poly', 'allna', 'poly_na'],
        pop=['p1', 'p1', 'p2'],
        loc_metrics=pd.DataFrame({'AlleleID': ['mono0', 'mono2', 'poly', 'allna', 'poly_na'],
                                  'TrimmedSequence': ['A' * 20, 'A' * 69, 'A' * 19, 'A' * 70, 'A' * 45]}),
    )


def test_filter_monomorphs_snp():
    """Test monomorphic and all-NA loci are removed."""
    out = filter_monomorphs(_snp(), verbose=0)
    assert out.loc_names == ['poly', 'poly_na']
    assert out.flags['monomorphs'] is True
    assert out.history[-1] == "filter_monomorphs()"
    assert list(out.loc_metrics['AlleleID']) == ['poly', 'poly_na']


def test_filter_monomorphs_silicodart():
    """Test presence/absence data treat all-1 loci as monomorphic."""
    x = GenotypeMatrix(genotypes=[[1, 0, 1], [1, 1, np.nan]], ind_names=['a', 'b'],
                       loc_names=['all1', 'poly', 'one1'], datatype=SILICODART)
    out = filter_monomorphs(x, verbose=0)
    assert out.loc_names == ['poly']


def test_filter_monomorphs_nothing_to_remove():
    """Test the matrix is returned unchanged when all loci are polymorphic."""
    x = _snp().keep_loc(['poly', 'poly_na'])
    out = filter_monomorphs(x, verbose=0)
    assert out.loc_names == ['poly', 'poly_na']
    assert out is not x


def test_filter_monomorphs_reports(caplog):
    """Test the summary report at verbosity 3."""
    with caplog.at_level(logging.INFO, logger='snp_kit.filter'):
        filter_monomorphs(_snp(), verbose=3)
    assert "Monomorphic loci: 2" in caplog.text
    assert "Loci scored all NA: 1" in caplog.text
    assert "No. of loci retained: 2" in caplog.text


def test_filter_taglength():
    """Test loci are kept when lower <= tag length <= upper."""
    out = filter_taglength(_snp(), verbose=0)
    assert out.loc_names == ['mono0', 'mono2', 'poly_na']
    out = filter_taglength(_snp(), lower=19, upper=45, verbose=0)
    assert out.loc_names == ['mono0', 'poly', 'poly_na']


def test_filter_taglength_missing_sequences():
    """Test a clear error when locus metrics lack trimmed sequences."""
    x = _snp()
    x.loc_metrics = x.loc_metrics.drop(columns=['TrimmedSequence'])
    try:
        filter_taglength(x, verbose=0)
        assert False, "Should have raised RuntimeError"
    except RuntimeError as e:
        assert "do not include trimmed sequences" in str(e)


def test_filter_taglength_assigns_default_population():
    """Test individuals without populations are put in pop1."""
    x = _snp()
    x.pop = None
    out = filter_taglength(x, verbose=0)
    assert out.pop_names == ['pop1']


def test_filter_taglength_warns_on_monomorphs(caplog):
    """Test the monomorph warning at verbosity 2."""
    with caplog.at_level(logging.WARNING, logger='snp_kit.filter'):
        filter_taglength(_snp(), verbose=2)
    assert "monomorphic loci" in caplog.text
