import os

from dotenv import load_dotenv

# Values may come from a local .env file, e.g.
# GRAPHHOPPER_URL=http://127.0.0.1:8989/route
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "safe_routes")

GRAPHHOPPER_URL = os.getenv("GRAPHHOPPER_URL", "http://127.0.0.1:8989/route")
GRAPHHOPPER_TIMEOUT = float(os.getenv("GRAPHHOPPER_TIMEOUT", "15"))

MAX_ROUTE_DISTANCE_KM = float(os.getenv("MAX_ROUTE_DISTANCE_KM", "100"))
WALKING_DISTANCE_KM = float(os.getenv("WALKING_DISTANCE_KM", "50"))

# SOS shares never last less than a minute
SOS_TTL_MINUTES = max(float(os.getenv("SOS_TTL_MINUTES", "15")), 1.0)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))
