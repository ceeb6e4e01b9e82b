"""
pytest configuration for dlq_recovery tests.

Adds src directory to Python path for imports and keeps the environment from
leaking broker settings into tests.
"""

import os
import sys
from pathlib import Path

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

# Never push metrics from tests
os.environ.pop("PROMETHEUS_PUSHGATEWAY", None)
