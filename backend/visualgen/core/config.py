import os

BACKEND_TOKEN = os.environ.get("BACKEND_TOKEN", "")
APP_DATA_DIR = os.environ.get("APP_DATA_DIR", os.path.join(os.getcwd(), "data"))
LOG_DIR = os.environ.get("LOG_DIR", os.path.join(APP_DATA_DIR, "logs"))
LOG_TO_FILE = os.environ.get("LOG_TO_FILE", "0") == "1"

JOB_STORE = os.environ.get("JOB_STORE", "sqlite")
DB_PATH = os.path.join(APP_DATA_DIR, "visualgen.db")
JOB_RETENTION_COUNT = int(os.environ.get("JOB_RETENTION_COUNT", "100"))

BATCH_WORKERS = int(os.environ.get("BATCH_WORKERS", "2"))
MAX_BATCH_WORKERS = 8
MAX_BATCH_WORDS = int(os.environ.get("MAX_BATCH_WORDS", "500"))
# Rough wall-clock cost of one item, used for the estimate returned on submit.
ESTIMATED_SECONDS_PER_ITEM = 10

# Retry policy (seconds)
RETRY_MAX_ATTEMPTS = int(os.environ.get("RETRY_MAX_ATTEMPTS", "4"))
RETRY_BASE_DELAY = float(os.environ.get("RETRY_BASE_DELAY_MS", "300")) / 1000.0
RETRY_MAX_DELAY = float(os.environ.get("RETRY_MAX_DELAY_MS", "10000")) / 1000.0
RETRY_TIMEOUT = float(os.environ.get("RETRY_TIMEOUT_MS", "30000")) / 1000.0
RETRY_JITTER = os.environ.get("RETRY_JITTER", "1") != "0"

# Pacing between external calls (seconds)
IMAGE_INTERVAL = float(os.environ.get("IMAGE_DELAY_MS", "2000")) / 1000.0
WORD_INTERVAL = float(os.environ.get("WORD_DELAY_MS", "1000")) / 1000.0
CONTENT_INTERVAL = float(os.environ.get("CONTENT_DELAY_MS", "0")) / 1000.0

# Language model
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
ANTHROPIC_API_URL = os.environ.get("ANTHROPIC_API_URL", "https://api.anthropic.com")
ANTHROPIC_MODEL = os.environ.get("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
ANTHROPIC_VERSION = "2023-06-01"

# Image model
STABILITY_API_KEY = os.environ.get("STABILITY_API_KEY", "")
STABILITY_API_URL = os.environ.get(
    "STABILITY_API_URL", "https://api.stability.ai/v1/generation"
)
STABILITY_ENGINE = os.environ.get("STABILITY_ENGINE", "stable-diffusion-xl-1024-v1-0")

# Asset storage
CLOUDINARY_CLOUD_NAME = os.environ.get("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_API_KEY = os.environ.get("CLOUDINARY_API_KEY", "")
CLOUDINARY_API_SECRET = os.environ.get("CLOUDINARY_API_SECRET", "")
CLOUDINARY_FOLDER = os.environ.get("CLOUDINARY_FOLDER", "vocavision/visuals")

# Record store
RECORDS_API_URL = os.environ.get("RECORDS_API_URL", "http://127.0.0.1:3001")
RECORDS_ADMIN_KEY = os.environ.get("RECORDS_ADMIN_KEY", "")


def ensure_dirs() -> None:
    os.makedirs(APP_DATA_DIR, exist_ok=True)
    os.makedirs(LOG_DIR, exist_ok=True)


def missing_credentials() -> list[str]:
    required = {
        "ANTHROPIC_API_KEY": ANTHROPIC_API_KEY,
        "STABILITY_API_KEY": STABILITY_API_KEY,
        "CLOUDINARY_CLOUD_NAME": CLOUDINARY_CLOUD_NAME,
        "CLOUDINARY_API_KEY": CLOUDINARY_API_KEY,
        "CLOUDINARY_API_SECRET": CLOUDINARY_API_SECRET,
    }
    return [name for name, value in required.items() if not value]
