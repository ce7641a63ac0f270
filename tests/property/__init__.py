# tests/property/__init__.py
"""Property-based tests for the recorder.

Properties are checked against generated event interleavings rather than
hand-picked examples.

Test categories:
- aggregation/: first-write-wins, exactly-once terminal metrics, expiry capture
"""
