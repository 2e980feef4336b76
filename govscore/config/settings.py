import os
from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file

# --------------------------------------------------
# Upstream Governance API Configuration
# --------------------------------------------------
UPSTREAM_BASE_URL = os.environ.get("UPSTREAM_BASE_URL") or "https://api.koios.rest/api/v1"
UPSTREAM_API_KEY = os.environ.get("UPSTREAM_API_KEY")
UPSTREAM_TIMEOUT_SECONDS = float(os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "30"))
UPSTREAM_PAGE_SIZE = int(os.environ.get("UPSTREAM_PAGE_SIZE", "1000"))

# --------------------------------------------------
# Chain Time & Units
# --------------------------------------------------
# Epoch arithmetic anchored on a known (unix time, epoch) pair
EPOCH_ANCHOR_TIME = int(os.environ.get("EPOCH_ANCHOR_TIME", "1596491091"))
EPOCH_ANCHOR_NUMBER = int(os.environ.get("EPOCH_ANCHOR_NUMBER", "209"))
EPOCH_LENGTH_SECONDS = int(os.environ.get("EPOCH_LENGTH_SECONDS", "432000"))
BASE_UNITS_PER_WHOLE = int(os.environ.get("BASE_UNITS_PER_WHOLE", "1000000"))

# --------------------------------------------------
# Rationale Resolution
# --------------------------------------------------
IPFS_GATEWAY = os.environ.get("IPFS_GATEWAY") or "https://ipfs.io/ipfs/"
RATIONALE_FETCH_TIMEOUT_SECONDS = float(os.environ.get("RATIONALE_FETCH_TIMEOUT_SECONDS", "8"))
RATIONALE_MAX_CONTENT_BYTES = int(os.environ.get("RATIONALE_MAX_CONTENT_BYTES", "50000"))
MIN_RATIONALE_LENGTH = 50

# --------------------------------------------------
# Profile Verification
# --------------------------------------------------
LINK_CHECK_TIMEOUT_SECONDS = float(os.environ.get("LINK_CHECK_TIMEOUT_SECONDS", "5"))
LINK_CHECK_USER_AGENT = os.environ.get("LINK_CHECK_USER_AGENT") or "govscore-link-checker/1.0"
METADATA_MAX_CONTENT_BYTES = int(os.environ.get("METADATA_MAX_CONTENT_BYTES", "200000"))

# --------------------------------------------------
# Read Path / Cache
# --------------------------------------------------
CACHE_FRESHNESS_MINUTES = int(os.environ.get("CACHE_FRESHNESS_MINUTES", "15"))

# --------------------------------------------------
# Summarization Collaborator
# --------------------------------------------------
SUMMARY_MAX_LENGTH = int(os.environ.get("SUMMARY_MAX_LENGTH", "160"))
SUMMARY_TIMEOUT_SECONDS = float(os.environ.get("SUMMARY_TIMEOUT_SECONDS", "20"))
SUMMARY_MODEL = os.environ.get("SUMMARY_MODEL")

# --------------------------------------------------
# API Configuration
# --------------------------------------------------
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "*")
