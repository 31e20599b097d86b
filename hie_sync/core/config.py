import os

from dotenv import load_dotenv

load_dotenv()

SOURCE_ID = os.getenv("SOURCE_ID", "neotree")
FACILITY_ID = os.getenv("FACILITY_ID")

SOURCE_DB_URL = os.getenv(
    "SOURCE_DB_URL", "mysql+mysqlconnector://root:@localhost:3307/consultation"
)
# Watermark, queue and run tables. Defaults to the source database.
STATE_DB_URL = os.getenv("STATE_DB_URL") or SOURCE_DB_URL

MEDIATOR_BASE_URL = os.getenv("MEDIATOR_BASE_URL", "http://localhost:5001")
MEDIATOR_USERNAME = os.getenv("MEDIATOR_USERNAME")
MEDIATOR_PASSWORD = os.getenv("MEDIATOR_PASSWORD")
MEDIATOR_CLIENT_ID = os.getenv("MEDIATOR_CLIENT_ID") or SOURCE_ID
MPI_CHANNEL_PATH = os.getenv("MPI_CHANNEL_PATH", "/opencr/fhir")
SHR_CHANNEL_PATH = os.getenv("SHR_CHANNEL_PATH", "/shr/fhir")

REQUEST_TIMEOUT_SECS = float(os.getenv("REQUEST_TIMEOUT_SECS", "30"))
MEDIATOR_MAX_PAGES = int(os.getenv("MEDIATOR_MAX_PAGES", "3"))

PUSH_BATCH_SIZE = int(os.getenv("PUSH_BATCH_SIZE", "50"))
POLL_INTERVAL_SECS = float(os.getenv("POLL_INTERVAL_SECS", "60"))
QUEUE_SWEEP_INTERVAL_SECS = float(os.getenv("QUEUE_SWEEP_INTERVAL_SECS", "30"))
QUEUE_TTL_HOURS = float(os.getenv("QUEUE_TTL_HOURS", "24"))

TRANSMIT_MAX_ATTEMPTS = int(os.getenv("TRANSMIT_MAX_ATTEMPTS", "3"))
TRANSMIT_BACKOFF_BASE_SECS = float(os.getenv("TRANSMIT_BACKOFF_BASE_SECS", "0.25"))

RESOLVE_CONCURRENCY = int(os.getenv("RESOLVE_CONCURRENCY", "10"))
RESOLVER_REQUERY_DELAY_SECS = float(os.getenv("RESOLVER_REQUERY_DELAY_SECS", "0.5"))

DLQ_DIR = os.getenv("DLQ_DIR", "dlq")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json | console

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "3000"))
