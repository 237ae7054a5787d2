from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Ensure project packages are importable in pytest.
sys.path.insert(0, str(PROJECT_ROOT))
