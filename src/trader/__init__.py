"""
Bot orchestration package.

The entrypoint remains `main.py` at the repo root. The scheduler, balance snapshots and
per-call timeouts live under `src/trader/` to keep entrypoints thin and testable.
"""
