"""Coach voice relay: env files are loaded before any settings are read."""
from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv


_SERVER_DIR = Path(__file__).resolve().parent.parent

# Repository root first, then the server directory; .env.local always wins over .env.
for _env_dir in (_SERVER_DIR.parent, _SERVER_DIR):
    load_dotenv(_env_dir / ".env")
for _env_dir in (_SERVER_DIR.parent, _SERVER_DIR):
    load_dotenv(_env_dir / ".env.local", override=True)
