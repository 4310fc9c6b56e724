"""
config.py
Runtime settings read from the environment.
"""

from __future__ import annotations

import os
from pathlib import Path

DB_FILE = Path(os.environ.get("GYM_DB_FILE", Path(__file__).with_name("gym.db")))
CURRENCY = os.environ.get("GYM_CURRENCY", "usd")
PAYMENT_TIMEOUT_SECONDS = float(os.environ.get("GYM_PAYMENT_TIMEOUT", "10"))
LOCK_TIMEOUT_SECONDS = float(os.environ.get("GYM_LOCK_TIMEOUT", "5"))
LOG_FORMAT = os.environ.get("GYM_LOG_FORMAT", "console")  # console or json
LOG_LEVEL = os.environ.get("GYM_LOG_LEVEL", "INFO")
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
