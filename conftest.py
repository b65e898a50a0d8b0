import os
import sys
import tempfile
from pathlib import Path

# Ensure repo root on sys.path for imports from anywhere in tests tree.
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("PG_DATABASE_URL", f"sqlite:///{tempfile.mkdtemp()}/relay-test.db")
os.environ.setdefault("GRAPHITE_HOST", "localhost")
os.environ.setdefault("GRAPHITE_HOST_PORT", "8125")
os.environ.setdefault("RELAY_SERVICE_URL", "http://relay.test")
