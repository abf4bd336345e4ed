"""
Pytest configuration for loopgraph tests.

Puts ``src`` and the tests directory on the path so test modules can import
the package without installation and share the graphs in ``sample_graphs``.
"""

import sys
from pathlib import Path

# Ensure src and tests directories are in path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))
