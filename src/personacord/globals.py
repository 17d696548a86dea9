"""Global state and shared clients."""

import logging

from personacord.core.config import load_config_or_default
from personacord.services.http import HttpxClientOptions, create_httpx_client

config = load_config_or_default()

# Configure logging
logging.basicConfig(
    level=str(config.get("log_level") or "INFO").upper(),
    format="%(asctime)s %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)

httpx_client = create_httpx_client(
    HttpxClientOptions(
        timeout=float(config.get("http_timeout_seconds") or 30.0),
    ),
)
