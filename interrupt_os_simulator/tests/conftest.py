import os
import sys


def pytest_sessionstart(session):
    # Ensure repo root is on sys.path so 'interrupt_os_simulator' can be imported
    here = os.path.dirname(os.path.abspath(__file__))
    repo_root = os.path.abspath(os.path.join(here, os.pardir, os.pardir))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)
