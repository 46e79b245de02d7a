"""Conftest for list_buckets tests - adds the function dir to sys.path."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
