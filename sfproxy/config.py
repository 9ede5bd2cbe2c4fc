import os
from dotenv import load_dotenv

load_dotenv()

SERVICE_NAME = "SourceForge Proxy API"
SERVICE_VERSION = "2.0.0"

MIRROR_HOST = os.getenv("MIRROR_HOST", "master.dl.sourceforge.net")
PROXY_NAME = os.getenv("PROXY_NAME", "SourceForge-Proxy")
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "3600"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
MAX_REDIRECTS = int(os.getenv("MAX_REDIRECTS", "5"))

# Trusted headers set by the edge in front of the proxy
CLIENT_IP_HEADER = os.getenv("CLIENT_IP_HEADER", "cf-connecting-ip")
CACHE_STATUS_HEADER = os.getenv("CACHE_STATUS_HEADER", "cf-cache-status")

# Statistics
STATS_SYNC_INTERVAL_SECONDS = int(os.getenv("STATS_SYNC_INTERVAL_SECONDS", str(6 * 60 * 60)))
RESPONSE_TIME_SAMPLE_CAP = int(os.getenv("RESPONSE_TIME_SAMPLE_CAP", "1000"))
RESPONSE_TIME_SAMPLE_KEEP = int(os.getenv("RESPONSE_TIME_SAMPLE_KEEP", "500"))
ENABLE_SYNC_SCHEDULER = os.getenv("ENABLE_SYNC_SCHEDULER", "true").lower() in {"true", "1", "yes"}
SYNC_SCHEDULER_MINUTES = int(os.getenv("SYNC_SCHEDULER_MINUTES", "60"))

# Stats storage: auto, redis, sql, memory or none
STATS_STORE = os.getenv("STATS_STORE", "auto").lower()
DB_URL = os.getenv("DB_URL", "sqlite:///./sfproxy.db")
DB_CONNECT_ARGS = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
