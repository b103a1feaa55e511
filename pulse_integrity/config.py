"""
Configuration module for pulse_integrity.

Centralizes all configuration with environment variable support.
Secret material never has a default here: the signing key is always read
from the file named by SIGNING_KEY_PATH, which a secrets manager mounts.
"""

import os

# ============================================================
# Environment Configuration
# ============================================================

# k-anonymity threshold applied on every read path
PRIVACY_THRESHOLD = int(os.getenv("PRIVACY_THRESHOLD", "20"))

# Paths
DB_PATH = os.getenv("PULSE_DB_PATH", "data/pulse.db")
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/aggregate_signing_key.json")

# Nightly job
JOB_DEADLINE_SECONDS = float(os.getenv("JOB_DEADLINE_SECONDS", "900"))
STORE_MAX_ATTEMPTS = int(os.getenv("STORE_MAX_ATTEMPTS", "3"))
STORE_RETRY_MAX_WAIT = float(os.getenv("STORE_RETRY_MAX_WAIT", "10"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")

# ============================================================
# Composite score
# ============================================================

# score = SCALE * (WEIGHT_A * a + WEIGHT_B * (B_MAX - b))
COMPOSITE_SCALE = 10.0
COMPOSITE_WEIGHT_A = 0.4
COMPOSITE_WEIGHT_B = 0.6
COMPOSITE_B_MAX = 10.0

# 95% normal-approximation interval
CI_Z_SCORE = 1.96

AGGREGATE_VERSION = "1.0"
CHAIN_EXPORT_VERSION = "1.0"
