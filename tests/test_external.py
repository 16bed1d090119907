import sys
import pathlib
import tempfile
from unittest.mock import patch

# Ensure project src/ is on sys.path for imports when running tests locally
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from snp_kit.external import require_exec, find_in_directory


def test_require_exec_existing_file():
    """Test require_exec returns the absolute path of an existing file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        exe = pathlib.Path(tmpdir) / 'structure'
        exe.touch()
        assert require_exec(str(exe), 'STRUCTURE') == str(exe.absolute())


def test_require_exec_missing_file():
    """Test require_exec names the program when the path does not exist."""
    try:
        require_exec('/nonexistent/structure', 'STRUCTURE')
        assert False, "Should have raised RuntimeError"
    except RuntimeError as e:
        assert "Cannot find STRUCTURE executable" in str(e)
        assert "/nonexistent/structure" in str(e)


@patch('shutil.which')
def test_find_in_directory_prefers_directory(mock_which):
    """Test find_in_directory looks in the directory before PATH."""
    mock_which.return_value = '/usr/bin/newhybs'
    with tempfile.TemporaryDirectory() as tmpdir:
        exe = pathlib.Path(tmpdir) / 'newhybs'
        exe.touch()
        assert find_in_directory(tmpdir, ('newhybs',)) == str(exe.absolute())
    mock_which.assert_not_called()


@patch('shutil.which')
def test_find_in_directory_falls_back_to_path(mock_which):
    """Test find_in_directory uses PATH when the directory lacks the program."""
    mock_which.side_effect = lambda name: '/opt/bin/newhybrids' if name == 'newhybrids' else None
    with tempfile.TemporaryDirectory() as tmpdir:
        assert find_in_directory(tmpdir, ('newhybs', 'newhybrids')) == '/opt/bin/newhybrids'


@patch('shutil.which')
def test_find_in_directory_not_found(mock_which):
    """Test find_in_directory returns None when nothing is found."""
    mock_which.return_value = None
    assert find_in_directory(None, ('newhybs',)) is None
