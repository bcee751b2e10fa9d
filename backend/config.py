"""
Runtime configuration, read from the environment (backend/.env is loaded
first when present).
"""

from dotenv import load_dotenv
from pathlib import Path
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

STORE_BACKENDS = ("mongo", "memory")


class Settings:
    def __init__(self):
        self.mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
        self.db_name = os.getenv("DB_NAME", "storefront_billing")
        self.store_backend = os.getenv("STORE_BACKEND", "mongo").lower()
        # Tax registration state code of the store itself (first two GSTIN characters)
        self.home_jurisdiction = os.getenv("HOME_JURISDICTION", "29")
        self.gst_rate = os.getenv("GST_RATE", "0.18")
        self.low_stock_threshold = int(os.getenv("LOW_STOCK_THRESHOLD", "50"))
        self.invoice_prefix = os.getenv("INVOICE_PREFIX", "INV")
        self.cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

        if self.store_backend not in STORE_BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {STORE_BACKENDS}, got {self.store_backend!r}"
            )


settings = Settings()
