import json
import logging
import sys
from typing import Literal

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class _JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "name": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class _PlainFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        extras = {
            k: v for k, v in record.__dict__.items() if k not in _RESERVED and not k.startswith("_")
        }
        if extras:
            text = f"{text} {json.dumps(extras, default=str)}"
        return text


def setup_logging(level: str = "INFO", mode: Literal["plain", "json"] = "plain") -> None:
    """Configure root logging for the application.

    ``plain`` renders ``LEVEL - name - message`` followed by the ``extra``
    fields as JSON; ``json`` renders one JSON object per line.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if mode == "json":
        formatter: logging.Formatter = _JsonLineFormatter()
    else:
        formatter = _PlainFormatter("%(levelname)s - %(name)s - %(message)s")

    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
