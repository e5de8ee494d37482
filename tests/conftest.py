import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
PROJECT_PARENT = ROOT.parent

for path in (ROOT, PROJECT_PARENT):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)
