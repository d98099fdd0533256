import json
import logging
from datetime import UTC, datetime

from eventhooks.infrastructure.logging.context import get_event_id, get_request_id, get_tenant_id


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, tagged with the request, tenant and event in scope."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
            "tenant_id": get_tenant_id(),
            "event_id": get_event_id(),
        }
        if record.processName and record.processName != "MainProcess":
            payload["process"] = record.processName
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)
