"""
Liveness reporting for the hub server.
"""
import time
from datetime import datetime, timezone
from typing import Dict, Any


class HealthChecker:
    """
    Reports whether the server process is up and for how long.
    """

    def __init__(self, service_name: str = "anchr", version: str = "1.0.0"):
        self.service_name = service_name
        self.version = version
        self._started = time.monotonic()

    def liveness(self) -> Dict[str, Any]:
        """
        Liveness check - basic health check.

        Returns:
            dict: Health status with service info, timestamp and uptime seconds
        """
        return {
            "status": "ok",
            "service": self.service_name,
            "version": self.version,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "uptime": round(time.monotonic() - self._started, 3),
        }
