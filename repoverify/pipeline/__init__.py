"""Per-job verification pipeline: fetch, resolve, execute, report."""
