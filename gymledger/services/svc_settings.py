from azure.cosmos import ContainerProxy
from typing import Optional
from gymledger.configuration.config import Config
from gymledger.configuration.database import read_document
from gymledger.configuration.monitor import log_warning

ADMIN_SETTINGS_ID = "admin_settings"


class SettingsService:
    """Operational settings maintained from the admin screens."""

    def __init__(self, settings: Optional[ContainerProxy] = None):
        self.settings = settings

    def get_cancellation_hours(self) -> float:
        """Lead time required for cancellations, falling back to the configured default"""
        if self.settings is None:
            return Config.CANCELLATION_LEAD_HOURS

        doc = read_document(self.settings, ADMIN_SETTINGS_ID)
        value = (doc or {}).get("cancellation_hours")
        if value is None:
            return Config.CANCELLATION_LEAD_HOURS
        try:
            hours = float(value)
        except (TypeError, ValueError):
            log_warning("Invalid cancellation_hours setting", {"value": value})
            return Config.CANCELLATION_LEAD_HOURS
        if hours < 0:
            log_warning("Negative cancellation_hours setting", {"value": value})
            return Config.CANCELLATION_LEAD_HOURS
        return hours
