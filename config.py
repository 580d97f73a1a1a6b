from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Data directory (gitignored)
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/transit.db")

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))
CORS_ORIGINS: list[str] = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
]
INGEST_API_KEY: str = os.getenv("INGEST_API_KEY", "")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# Journey search
MAX_PATHS: int = int(os.getenv("MAX_PATHS", "3"))
MAX_TRANSFERS: int = int(os.getenv("MAX_TRANSFERS", "3"))
NON_PREFERRED_PENALTY_MINUTES: int = int(os.getenv("NON_PREFERRED_PENALTY_MINUTES", "5"))
MIN_EDGE_MINUTES: int = int(os.getenv("MIN_EDGE_MINUTES", "2"))
DEFAULT_EDGE_MINUTES: int = int(os.getenv("DEFAULT_EDGE_MINUTES", "5"))  # stop without coordinates
DEFAULT_SPEED_KPH: float = float(os.getenv("DEFAULT_SPEED_KPH", "20"))
PATH_CACHE_TTL_SECONDS: int = int(os.getenv("PATH_CACHE_TTL_SECONDS", "300"))

# Average speeds per transport type (km/h), used for edge weights and the heuristic
TRANSPORT_SPEEDS_KPH: dict[str, float] = {
    "BUS": float(os.getenv("SPEED_BUS_KPH", "20")),
    "TRAM": float(os.getenv("SPEED_TRAM_KPH", "25")),
    "METRO": float(os.getenv("SPEED_METRO_KPH", "40")),
    "TRAIN": float(os.getenv("SPEED_TRAIN_KPH", "60")),
    "RAIL": float(os.getenv("SPEED_RAIL_KPH", "60")),
}

# Crowd report quorum
REPORT_MATCH_RADIUS_METRES: float = float(os.getenv("REPORT_MATCH_RADIUS_METRES", "500"))
REPORT_MATCH_WINDOW_MINUTES: int = int(os.getenv("REPORT_MATCH_WINDOW_MINUTES", "30"))
PENDING_REPORT_TTL_HOURS: int = int(os.getenv("PENDING_REPORT_TTL_HOURS", "24"))
NEAR_THRESHOLD_SCORE: float = float(os.getenv("NEAR_THRESHOLD_SCORE", "0.7"))
STORE_RETRY_ATTEMPTS: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
STORE_BUSY_TIMEOUT_MS: int = int(os.getenv("STORE_BUSY_TIMEOUT_MS", "5000"))  # SQLite lock wait

# Reputation
NEW_USER_REPUTATION: int = int(os.getenv("NEW_USER_REPUTATION", "34"))  # starting reputation of a new account

# Notifications
NOTIFY_TRUST_THRESHOLD: float = float(os.getenv("NOTIFY_TRUST_THRESHOLD", "1.2"))
DELIVERY_TTL_SECONDS: int = int(os.getenv("DELIVERY_TTL_SECONDS", "3600"))

# Background sweeps
DELIVERY_SWEEP_MINUTES: int = int(os.getenv("DELIVERY_SWEEP_MINUTES", "10"))
EXPIRY_SWEEP_MINUTES: int = int(os.getenv("EXPIRY_SWEEP_MINUTES", "5"))
TRUST_RECOMPUTE_HOURS: int = int(os.getenv("TRUST_RECOMPUTE_HOURS", "6"))
