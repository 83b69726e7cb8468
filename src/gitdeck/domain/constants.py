"""Centralized constants for gitdeck.

All magic numbers and configuration defaults live here so every layer
imports from a single source of truth.
"""

from datetime import timedelta

# ---------- Repository layout ----------
CARDS_FILE = "cards.json"
RESERVED_KEY_PREFIX = "$"
SIDE_BRANCH_PREFIX = "sync/"
DEFAULT_BRANCH = "main"

# ---------- GitHub / HTTP ----------
GITHUB_API_URL = "https://api.github.com"
REQUEST_TIMEOUT = 30.0
RESPONSIVENESS_TIMEOUT = 5.0
DEFAULT_COMMIT_LIMIT = 10

# ---------- Sync ----------
DEBOUNCE_SECONDS = 10.0
MAX_BATCH_SIZE = 10
SYNC_RETRY_MESSAGE = "Sync failed, will retry on next trigger"

# ---------- FSRS ----------
# One learning step and one relearning step: the fsrs "step" counter then
# stays at 0 and never needs to be stored in the deck document.
LEARNING_STEPS = (timedelta(minutes=10),)
RELEARNING_STEPS = (timedelta(minutes=10),)
DESIRED_RETENTION = 0.9

# ---------- Study queue ----------
DEFAULT_NEW_CARDS_PER_DAY = 10
REVERSE_SUFFIX = ":reverse"
CARD_ID_SEPARATOR = "|"

# ---------- Local storage ----------
DATABASE_FILENAME = "gitdeck.db"
