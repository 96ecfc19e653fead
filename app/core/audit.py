import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_audit_logger = logging.getLogger("app.audit")


def log_event(event_type: str, payload: Dict[str, Any], request_id: Optional[str] = None) -> Dict[str, Any]:
    record = {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "event": event_type,
        "request_id": request_id,
        **payload,
    }
    _audit_logger.info(json.dumps(record, ensure_ascii=False, default=str))
    return record
