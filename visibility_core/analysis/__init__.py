"""Visibility view computations.

Pure functions that turn persisted, possibly noisy pipeline records into the
read models served to pollers and dashboards:
  1. Name Normalizer & Deduplicator  (names.py)
  2. Leaderboard Engine               (leaderboard.py)
  3. Analysis Aggregator              (aggregator.py)
  4. Pipeline Status Aggregator       (status.py)
  5. Publish Eligibility Gate         (publish_gate.py)

Input:  kind-stamped upstream records (schemas/records.py)
Output: view models (schemas/leaderboard.py, analysis.py, status.py, publish.py)
"""
