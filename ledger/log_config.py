import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# LogRecord attributes that are not user-supplied ``extra`` fields.
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {
    "message",
    "asctime",
}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: ts, lvl, logger, msg, any ``extra`` fields
    (member_id, escrow_id, transaction_id, ...) and the stack when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        evt: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED or key.startswith("_"):
                continue
            evt[key] = value if isinstance(value, (str, int, float, bool)) or value is None else str(value)
        if record.exc_info:
            evt["exc"] = self.formatException(record.exc_info)
        return json.dumps(evt, separators=(",", ":"), ensure_ascii=False)


def configure_json_logging(level: str = "INFO", *, json_lines: bool = True, stream: Any = None) -> logging.Logger:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(stream=stream or sys.stderr)
    if json_lines:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.setLevel(lvl)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.addHandler(handler)
        lg.propagate = False

    return root
