import os
import sys
from pathlib import Path

os.environ.setdefault("X402_ENABLED", "true")
os.environ.setdefault("SNAPAPI_DATA_DIR", "/tmp/snapapi-test-data")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
