"""Local environment loading for development runs."""

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, next to start_api.py
DEFAULT_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Optional[Path] = None) -> bool:
    """Load variables from a .env file without overwriting existing ones.

    WHAT:
        Reads backend/.env (or `path`) into os.environ.
    WHY:
        Developers keep DATABASE_URL and Stripe test secrets in a local file;
        production injects real values through the environment, which must win.

    Returns:
        True if a file was found and loaded.
    """
    env_path = path or DEFAULT_ENV_PATH
    loaded = load_dotenv(dotenv_path=env_path, override=False)

    if loaded:
        logger.info(f"Loaded local env file {env_path} (existing variables were NOT overwritten)")
    else:
        logger.debug(f"No local env file at {env_path}")
    return loaded
