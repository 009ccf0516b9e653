"""Account Aggregator network integration."""
import os
from typing import Final

BASE_URL: Final[str] = os.getenv("AA_BASE_URL", "https://aa.sandbox.local/api/v2")
FIU_ID: Final[str] = os.getenv("AA_FIU_ID", "fiu-sandbox")
HTTP_TIMEOUT_SECONDS: Final[float] = float(os.getenv("AA_HTTP_TIMEOUT_SECONDS", "10"))
HTTP_MAX_ATTEMPTS: Final[int] = int(os.getenv("AA_HTTP_MAX_ATTEMPTS", "3"))
