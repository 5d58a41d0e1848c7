"""Central configuration for paths, backends and constants."""

import os
from pathlib import Path

# Data directory, override with HYPERMAPS_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("HYPERMAPS_DATA_DIR", str(Path.home() / ".hypermaps"))
)

# Database paths
SQLITE_PATH = DATA_DIR / "hypermaps.db"
CHROMA_PATH = DATA_DIR / "spaces"

# Store backend: "space" (chromadb entity spaces) or "relational" (sqlite)
STORE_BACKEND = os.environ.get("HYPERMAPS_STORE_BACKEND", "space").lower()
SPACE_ID = os.environ.get("HYPERMAPS_SPACE_ID", "private")
PUBLIC_SPACE_ID = os.environ.get("HYPERMAPS_PUBLIC_SPACE_ID", "public")

# Completion endpoint
COMPLETION_URL = os.environ.get(
    "HYPERMAPS_COMPLETION_URL", "http://localhost:3000/api/ai-response"
)
MODEL = os.environ.get("HYPERMAPS_MODEL") or None
TEMPERATURE = float(os.environ.get("HYPERMAPS_TEMPERATURE", "0.7"))
MAX_TOKENS = int(os.environ.get("HYPERMAPS_MAX_TOKENS", "1000"))
SYSTEM_PROMPT = os.environ.get(
    "HYPERMAPS_SYSTEM_PROMPT",
    "You are a helpful AI assistant. Provide clear, concise, and helpful responses.",
)
REQUEST_TIMEOUT = float(os.environ.get("HYPERMAPS_REQUEST_TIMEOUT", "60"))

LOG_LEVEL = os.environ.get("HYPERMAPS_LOG_LEVEL", "WARNING").upper()

# Retries of the last user message per conversation view
MAX_RETRIES = 3

# Canvas layout
ROW_SPACING = 160
USER_COLUMN_X = 50
ASSISTANT_COLUMN_X = 450
COMMENT_COLUMN_X = 850
CHILD_OFFSET_X = 400
JITTER_RANGE = 10  # Jitter spans [-JITTER_RANGE, JITTER_RANGE]
