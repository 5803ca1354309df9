from __future__ import annotations

import sys
from pathlib import Path


# Ensure repo root is importable so `import lisa` works under pytest's import modes.
_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(_ROOT))
