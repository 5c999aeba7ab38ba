"""blockbench.core.logs

Logging setup.

Modules log through ``logging.getLogger(__name__)`` with snake_case event names
and context in ``extra``. This module only decides where records go and how
they look.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from blockbench.core.config import LoggingConfig

_STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are merged into the object."""

    def format(self, record: logging.LogRecord) -> str:
        body: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        for k, v in vars(record).items():
            if k not in _STANDARD_ATTRS and not k.startswith("_"):
                body[k] = v
        if record.exc_info:
            body["exc"] = self.formatException(record.exc_info)
        return json.dumps(body, default=str, sort_keys=True)


def configure_logging(cfg: LoggingConfig | None = None) -> None:
    cfg = cfg or LoggingConfig()
    handler = logging.StreamHandler()
    if cfg.json_output:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger("blockbench")
    root.handlers[:] = [handler]
    root.setLevel(cfg.level.upper())
