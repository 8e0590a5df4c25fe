"""Pytest configuration for the Vibenav backend test suite."""

import sys
from pathlib import Path

# Ensure the backend package root is on the path so tests can import
# modules directly (e.g. `import playlist`) without a package prefix.
sys.path.insert(0, str(Path(__file__).parent.parent))
