"""Pytest configuration shared across all test modules.

Environment defaults must be set before anything imports ``app.core.config``,
because the global settings object is built at import time.
"""

import os

os.environ["APP_ENV"] = "testing"

# Keep tests off the shared temp dir; file-store tests use tmp_path explicitly
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("RATE_LIMIT_REQUESTS_PER_WINDOW", "120")
os.environ.setdefault("LOG_LEVEL", "INFO")
