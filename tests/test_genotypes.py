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

from snp_kit.genotypes import (
    GenotypeMatrix, SNP, SILICODART, check_datatype, allele_frequencies, pic, subsample_loci
)


def _matrix():
    g = np.array([
        [0, 1, 2, np.nan],
        [0, 2, 2, 1],
        [2, 1, 0, 1],
        [2, 0, 0, np.nan],
    ])
    return GenotypeMatrix(
        genotypes=g,
        ind_names=['i1', 'i2', 'i3', 'i4'],
        loc_names=['L1', 'L2', 'L3', 'L4'],
        pop=['B', 'B', 'A', 'A'],
        loc_metrics=pd.DataFrame({'AlleleID': ['L1', 'L2', 'L3', 'L4'], 'AvgPIC': [0.1, 0.4, 0.3, 0.2]}),
    )


def test_shape_and_populations():
    """Test basic dimensions and sorted population names."""
    x = _matrix()
    assert x.n_ind == 4
    assert x.n_loc == 4
    assert x.pop_names == ['A', 'B']
    assert x.n_pop == 2


def test_invalid_scores_rejected():
    """Test that scores outside the datatype's states are rejected."""
    with pytest.raises(ValueError, match="scores must be in"):
        GenotypeMatrix(genotypes=[[0, 3]], ind_names=['i1'], loc_names=['L1', 'L2'])
    with pytest.raises(ValueError):
        GenotypeMatrix(genotypes=[[0, 2]], ind_names=['i1'], loc_names=['L1', 'L2'], datatype=SILICODART)


def test_name_length_mismatch():
    """Test that names must match the matrix shape."""
    with pytest.raises(ValueError, match="individual names"):
        GenotypeMatrix(genotypes=[[0, 1]], ind_names=['i1', 'i2'], loc_names=['L1', 'L2'])
    with pytest.raises(ValueError, match="population labels"):
        GenotypeMatrix(genotypes=[[0, 1]], ind_names=['i1'], loc_names=['L1', 'L2'], pop=['a', 'b'])


def test_subset_carries_metadata():
    """Test subsetting loci keeps locus metrics aligned."""
    x = _matrix()
    sub = x.subset(loci=[1, 3])
    assert sub.loc_names == ['L2', 'L4']
    assert list(sub.loc_metrics['AlleleID']) == ['L2', 'L4']
    assert sub.genotypes.shape == (4, 2)
    # Original is untouched
    assert x.n_loc == 4


def test_keep_and_drop():
    """Test keep/drop helpers for loci and individuals."""
    x = _matrix()
    assert x.drop_loc(['L1']).loc_names == ['L2', 'L3', 'L4']
    assert x.keep_loc(['L3', 'L1']).loc_names == ['L1', 'L3']
    assert x.keep_ind(['i3']).ind_names == ['i3']
    assert x.drop_ind(['i1', 'i2']).pop.tolist() == ['A', 'A']


def test_seppop():
    """Test splitting by population."""
    parts = _matrix().seppop()
    assert list(parts) == ['A', 'B']
    assert parts['A'].ind_names == ['i3', 'i4']


def test_seppop_without_populations():
    """Test that a matrix without populations is one group."""
    x = GenotypeMatrix(genotypes=[[0, 1]], ind_names=['i1'], loc_names=['L1', 'L2'])
    assert list(x.seppop()) == ['pop1']


def test_cbind():
    """Test concatenating loci of two matrices."""
    x = _matrix()
    both = x.keep_loc(['L1']).cbind(x.keep_loc(['L2']))
    assert both.loc_names == ['L1', 'L2']
    assert len(both.loc_metrics) == 2
    try:
        x.cbind(x)
        assert False, "Should have raised RuntimeError"
    except RuntimeError as e:
        assert "Loci present in both" in str(e)


def test_check_datatype():
    """Test datatype checks."""
    assert check_datatype(_matrix()) == SNP
    with pytest.raises(RuntimeError, match="GenotypeMatrix object required"):
        check_datatype(pd.DataFrame())
    with pytest.raises(RuntimeError, match="not accepted"):
        check_datatype(_matrix(), accept=(SILICODART,))


def test_allele_frequencies_and_pic():
    """Test alternate allele frequencies ignore missing scores."""
    freqs = allele_frequencies(_matrix())
    np.testing.assert_allclose(freqs, [0.5, 0.5, 0.5, 0.5])
    np.testing.assert_allclose(pic(_matrix()), [0.375] * 4)


def test_subsample_loci_avgpic():
    """Test AvgPIC subsampling keeps the most informative loci in original order."""
    sub = subsample_loci(_matrix(), 2, method='AvgPIC')
    assert sub.loc_names == ['L2', 'L3']


def test_subsample_loci_random():
    """Test random subsampling returns distinct loci."""
    sub = subsample_loci(_matrix(), 3, method='random', rng=np.random.default_rng(1))
    assert sub.n_loc == 3
    assert len(set(sub.loc_names)) == 3
    assert subsample_loci(_matrix(), 10).n_loc == 4
    with pytest.raises(ValueError):
        subsample_loci(_matrix(), 2, method='best')
