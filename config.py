import os
import logging

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

NEARBY_RADIUS_KM = float(os.getenv("NEARBY_RADIUS_KM", "5.0"))
STORE_READ_RETRIES = int(os.getenv("STORE_READ_RETRIES", "2"))
FEED_QUEUE_SIZE = int(os.getenv("FEED_QUEUE_SIZE", "100"))

GEOCODER_URL = os.getenv("GEOCODER_URL")  # Nominatim-compatible /reverse endpoint
GEOCODER_TIMEOUT = float(os.getenv("GEOCODER_TIMEOUT", "5"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
