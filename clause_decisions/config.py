"""Configuration constants, paths, and engine settings."""

import logging
import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Load .env if present
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).parent.parent
_env_path = BASE_DIR / ".env"
if _env_path.exists():
    for _line in _env_path.read_text().splitlines():
        _line = _line.strip()
        if _line and not _line.startswith("#") and "=" in _line:
            _k, _, _v = _line.partition("=")
            os.environ.setdefault(_k.strip(), _v.strip().strip("\"'"))

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
DB_PATH = Path(os.environ.get("CLAUSE_DECISIONS_DB", str(BASE_DIR / "decisions.db")))

# ---------------------------------------------------------------------------
# Projection cache
# ---------------------------------------------------------------------------
PROJECTION_CACHE_TTL_SECONDS = float(os.environ.get("PROJECTION_CACHE_TTL_SECONDS", "300"))

# ---------------------------------------------------------------------------
# Roles & messages
# ---------------------------------------------------------------------------
ADMIN_ROLE = os.environ.get("ADMIN_ROLE", "admin")
CONFLICT_MESSAGE = (
    "This clause was modified by another user since you loaded it. "
    "Your change has been applied, but you may want to review it or undo it."
)

# ---------------------------------------------------------------------------
# Server & logging
# ---------------------------------------------------------------------------
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
