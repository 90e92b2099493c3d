import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

# Job store mode: memory / local (json files under data/)
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory")

LOCAL_INPUT_DIR = BASE_DIR / "data" / "input"
LOCAL_OUTPUT_DIR = BASE_DIR / "data" / "output"
LOCAL_JOBS_FILE = BASE_DIR / "data" / "jobs.json"
LOCAL_CONTACTS_FILE = BASE_DIR / "data" / "contacts.json"

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

# Uploaded and enhanced files are removed this long after the job finishes.
RETENTION_SECONDS = int(os.getenv("RETENTION_SECONDS", str(24 * 60 * 60)))
WORKER_THREADS = int(os.getenv("WORKER_THREADS", "4"))

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN")
REMOTE_TIMEOUT = float(os.getenv("REMOTE_TIMEOUT", "120"))
# Overall deadline for one hosted model prediction, queueing included.
PREDICTION_TIMEOUT = float(os.getenv("PREDICTION_TIMEOUT", "300"))
PREDICTION_POLL_INTERVAL = 2.0

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Ensure dirs exist
LOCAL_INPUT_DIR.mkdir(parents=True, exist_ok=True)
LOCAL_OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
LOCAL_JOBS_FILE.parent.mkdir(parents=True, exist_ok=True)
