# aggregator/main.py
from __future__ import annotations

from .entrypoints.fastapi_app import create_app

# uvicorn aggregator.main:app --reload  (from backend/)
app = create_app()
