"""
Pytest configuration

Puts the project root on sys.path so `calltree` and `config` import
without an editable install.
"""

import sys
from pathlib import Path


project_root = Path(__file__).parent.parent.resolve()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))
