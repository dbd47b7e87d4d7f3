import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Config:
    # Azure CosmosDB Configuration
    COSMOSDB_ENDPOINT = os.getenv("COSMOS_DB_ENDPOINT")
    COSMOSDB_KEY = os.getenv("COSMOS_DB_KEY")
    COSMOSDB_DATABASE_NAME = os.getenv("COSMOS_DB_DATABASE", "gymledger")
    COSMOSDB_CONTAINER_NAME = {
        "members": os.getenv("COSMOS_CONTAINERS_MEMBERS", "members"),
        "classes": os.getenv("COSMOS_CONTAINERS_CLASSES", "classes"),
        "bookings": os.getenv("COSMOS_CONTAINERS_BOOKINGS", "bookings"),
        "membership_requests": os.getenv("COSMOS_CONTAINERS_MEMBERSHIP_REQUESTS", "membership_requests"),
        "membership_types": os.getenv("COSMOS_CONTAINERS_MEMBERSHIP_TYPES", "membership_types"),
        "payments": os.getenv("COSMOS_CONTAINERS_PAYMENTS", "payments"),
        "settings": os.getenv("COSMOS_CONTAINERS_SETTINGS", "settings")
    }

    # Store call limits
    STORE_TIMEOUT_SECONDS = int(os.getenv("STORE_TIMEOUT_SECONDS", "10"))
    STORE_RETRY_TOTAL = int(os.getenv("STORE_RETRY_TOTAL", "3"))
    LEDGER_MAX_CAS_ATTEMPTS = int(os.getenv("LEDGER_MAX_CAS_ATTEMPTS", "5"))

    # Booking rules
    CANCELLATION_LEAD_HOURS = float(os.getenv("CANCELLATION_LEAD_HOURS", "4"))
    BOOKING_MIN_LEAD_HOURS = float(os.getenv("BOOKING_MIN_LEAD_HOURS", "2"))
    BOOKING_MAX_ADVANCE_DAYS = int(os.getenv("BOOKING_MAX_ADVANCE_DAYS", "7"))
    MAX_PENDING_REQUESTS = int(os.getenv("MAX_PENDING_REQUESTS", "2"))
    GYM_TIMEZONE = os.getenv("GYM_TIMEZONE", "UTC")

    # Background reconciliation
    SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "30"))

    # JWT Configuration
    JWT_SECRET_KEY = os.getenv("AUTH_SECRET_KEY")
    JWT_ALGORITHM = os.getenv("AUTH_ALGORITHM", "HS256")

    # Application Insights
    APPLICATIONINSIGHTS_CONNECTION_STRING = os.getenv("APPINSIGHTS_INSTRUMENTATIONKEY")
