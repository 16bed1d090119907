import os
import shutil
from typing import Optional


def require_exec(path: str, program: str) -> str:
    """
    Check that an executable given by explicit path exists.

    Args:
        path: Path to the executable file
        program: Program name used in the error message

    Returns:
        Absolute path to the executable

    Raises:
        RuntimeError: If the path does not point to an existing file
    """
    if not path or not os.path.isfile(path):
        raise RuntimeError(f"Cannot find {program} executable in the path provided: {path}")
    return os.path.abspath(path)


def find_in_directory(directory: Optional[str], names: tuple) -> Optional[str]:
    """Return the first of `names` present in `directory`, falling back to PATH."""
    if directory:
        for name in names:
            cand = os.path.join(directory, name)
            if os.path.isfile(cand):
                return os.path.abspath(cand)
    for name in names:
        found = shutil.which(name)
        if found:
            return found
    return None
