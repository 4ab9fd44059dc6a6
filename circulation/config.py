import os
from dotenv import load_dotenv


load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./library.db")

# e.g. "SERIALIZABLE"; unset keeps the driver default and relies on row locks
DATABASE_ISOLATION_LEVEL = os.getenv("DATABASE_ISOLATION_LEVEL")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

MAX_BORROW_DAYS = int(os.getenv("MAX_BORROW_DAYS", "30"))
MAX_RENEWALS = int(os.getenv("MAX_RENEWALS", "3"))
EXTENSION_DAYS = int(os.getenv("EXTENSION_DAYS", "14"))
DEFAULT_VIOLATION_DUE_DATE_DAYS = int(
    os.getenv("DEFAULT_VIOLATION_DUE_DATE_DAYS", "3")
)
