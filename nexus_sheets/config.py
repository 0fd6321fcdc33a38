import os

from dotenv import load_dotenv

# .env in the working directory; real environment variables win
load_dotenv()

GOAL_SEEK_MAX_ITERATIONS = int(os.getenv("NEXUS_GOAL_SEEK_MAX_ITERATIONS", "100"))
GOAL_SEEK_TOLERANCE = float(os.getenv("NEXUS_GOAL_SEEK_TOLERANCE", "0.001"))

CORS_ORIGINS = [o.strip() for o in os.getenv("NEXUS_CORS_ORIGINS", "*").split(",") if o.strip()]

HOST = os.getenv("NEXUS_HOST", "127.0.0.1")
PORT = int(os.getenv("NEXUS_PORT", "8000"))
LOG_LEVEL = os.getenv("NEXUS_LOG_LEVEL", "INFO").upper()
