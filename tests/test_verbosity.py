import sys
import logging
import pathlib

# Ensure project src/ is on sys.path for imports when running tests locally
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / 'src'
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from snp_kit.verbosity import DEFAULT_VERBOSITY, check_verbosity, set_verbosity, flag_start, flag_end


def test_check_verbosity_default():
    set_verbosity(DEFAULT_VERBOSITY)
    assert check_verbosity(None) == DEFAULT_VERBOSITY
    assert check_verbosity(4) == 4


def test_check_verbosity_out_of_range(caplog):
    assert check_verbosity(9) == DEFAULT_VERBOSITY
    assert "between 0 [silent] and 5 [full report]" in caplog.text


def test_set_verbosity_changes_default():
    try:
        assert set_verbosity(0) == 0
        assert check_verbosity(None) == 0
    finally:
        set_verbosity(DEFAULT_VERBOSITY)


def test_flags(caplog):
    caplog.set_level(logging.INFO)
    flag_start("gl_test", 0)
    assert "Starting" not in caplog.text
    flag_start("gl_test", 1)
    flag_end("gl_test", 1)
    assert "Starting gl_test" in caplog.text
    assert "Completed: gl_test" in caplog.text
