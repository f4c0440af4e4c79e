import os
import sys


# Tests import `backend.app.*` and the shared fakes in `backend.tests`,
# so the repo root must be importable whether pytest runs from the root or `backend/`.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)
