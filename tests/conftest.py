# make `import term_engine` / `import ingestion` / `import helpers` work without installing
import os
import sys

TESTS = os.path.dirname(__file__)
ROOT = os.path.dirname(TESTS)
SRC = os.path.join(ROOT, "src")

for path in (SRC, TESTS):
    if path not in sys.path:
        sys.path.insert(0, path)
