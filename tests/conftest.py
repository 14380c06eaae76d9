"""
Pytest configuration for the channel archive tests.

Ensures the repo root (modules) and this directory (fakes) are importable.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))
