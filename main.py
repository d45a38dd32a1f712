# main.py
# ──────────────────────────────────────────────────────────────────────────────
# Chatflow HTTP service:
# - Conversation engine lives in chatflow/ (steps, sources, engine, store)
# - HTTP boundary lives in backend/app.py (create_app)
# - Local mode: GRAPH_PATH points at a JSON list of steps
# - Remote mode: NEXT_STEP_URL points at a step-serving backend
# Production notes:
#   • Run with: uvicorn main:app --host 0.0.0.0 --port 8080
#   • Sessions with a cache key are persisted to DATA_PATH
# ──────────────────────────────────────────────────────────────────────────────

from __future__ import annotations

import logging

from dotenv import load_dotenv

from backend.app import create_app
from backend.config import get_settings

load_dotenv()

settings = get_settings()
LOG_LEVEL = getattr(logging, settings.log_level.upper(), logging.INFO)
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("chatflow.main")

app = create_app(settings=settings)
logger.info("Chatflow service ready (environment=%s)", settings.environment)
