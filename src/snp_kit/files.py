import re, pathlib, subprocess
from typing import List, Optional

LABEL_RE = re.compile(r'[^A-Za-z0-9_.-]+')

def safe_label(label: str) -> str:
    """Make a population or locus label usable inside a file name."""
    s = LABEL_RE.sub('_', str(label)).strip('_')
    return s or 'unnamed'

def ensure_dir(p: str):
    pathlib.Path(p).mkdir(parents=True, exist_ok=True)

def run(cmd: List[str], log: Optional[str] = None, cwd: Optional[str] = None):
    if log:
        with open(log, 'w') as fh:
            subprocess.check_call(cmd, stdout=fh, stderr=subprocess.STDOUT, cwd=cwd)
    else:
        subprocess.check_call(cmd, cwd=cwd)
