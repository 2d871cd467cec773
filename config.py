"""config.py
Central configuration for AutoBright.

Notes:
- Every value can be overridden with an AUTOBRIGHT_* environment variable.
- Connection settings (last port, auto-connect) live in their own JSON file
  and are owned by the app, not by the brightness engine.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger("AutoBright.Config")

# ================= Files =================
HOME_DIR = Path(os.getenv("AUTOBRIGHT_HOME", os.path.expanduser("~")))
CALIBRATION_FILE = HOME_DIR / ".autobright_calibration.json"
SETTINGS_FILE    = HOME_DIR / ".autobright_settings.json"

# ================= Serial =================
SERIAL_BAUDRATE  = int(os.getenv("AUTOBRIGHT_BAUDRATE", "9600"))
SERIAL_TIMEOUT_S = 0.5

# ================= Engine =================
MANUAL_DEBOUNCE_S = 0.3      # quiet period before a slider value is applied
AUTO_CONNECT_DELAY_S = 0.5   # let the web UI come up before reconnecting
CALIBRATION_MAX_AGE_DAYS = int(os.getenv("AUTOBRIGHT_MAX_AGE_DAYS", "0"))   # 0 = keep forever

# ================= Web =================
HOST = os.getenv("AUTOBRIGHT_HOST", "127.0.0.1")
PORT = int(os.getenv("AUTOBRIGHT_PORT", "8000"))

# ================= Logging =================
LOG_LEVEL = os.getenv("AUTOBRIGHT_LOG_LEVEL", "INFO").upper()


@dataclass
class ConnectionSettings:
    last_port:    Optional[str] = None
    auto_connect: bool = True

    @classmethod
    def load(cls, path: Path = SETTINGS_FILE) -> "ConnectionSettings":
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            saved = json.loads(path.read_text(encoding="utf-8"))
            valid = {f.name for f in fields(cls)}
            return cls(**{k: v for k, v in saved.items() if k in valid})
        except Exception as e:
            logger.warning(f"Settings load failed ({path}): {e}")
            return cls()

    def save(self, path: Path = SETTINGS_FILE) -> bool:
        try:
            Path(path).write_text(json.dumps(asdict(self), indent=2), encoding="utf-8")
            return True
        except Exception as e:
            logger.error(f"Settings save failed ({path}): {e}")
            return False
