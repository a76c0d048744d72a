import os
import sys
import tempfile

# The app builds its store at import time, so point it at a throwaway database first.
os.environ.setdefault("LOCALSERVE_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="localserve-tests-"), "marketplace.sqlite3"))

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
