import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from chat_gateway.config.settings import settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("chat_gateway")
    logger.setLevel(getattr(logging, str(settings.log_level).upper(), logging.INFO))
    # 重复导入时不重复挂载 handler
    if any(getattr(h, "_chat_gateway", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "gateway.log", encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(JsonFormatter())
    fh._chat_gateway = True  # type: ignore[attr-defined]
    logger.addHandler(fh)
    return logger


def get_logger(name: str) -> logging.Logger:
    """返回 chat_gateway 下的子 logger，共享同一个 JSON 文件 handler。"""

    return logger.getChild(name)


logger = setup_logger()
