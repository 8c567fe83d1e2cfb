from __future__ import annotations

"""
Diagnostics and error classification utilities.

This package currently provides:
- error_classifier: classify failed gpgv and generator runs into stable,
  machine-readable reasons that end up in log lines.
"""
