"""
Forecast worker entry point.

Usage:
    REDIS_URL=redis://localhost:6379/0 python worker.py
"""

from app import create_app
from app.services.forecast_worker import start_worker

app = create_app()

if __name__ == "__main__":
    raise SystemExit(start_worker(app))
