# settings.py
import os
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO") #priority levels: DEBUG < INFO < WARNING < ERROR < CRITICAL
ENABLE_CONSOLE_LOG = os.getenv("ENABLE_CONSOLE_LOG", "true").lower() == "true"
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "false").lower() == "true"

PARLEY_INSTANCE_ID = os.getenv("PARLEY_INSTANCE_ID")
PARLEY_ORIGIN = os.getenv("PARLEY_ORIGIN", "")
