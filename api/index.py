# api/index.py
"""
Vercel Serverless Function adapter.

Vercel's Python runtime looks for a variable named `app` (ASGI) or `handler` (WSGI).
FastAPI is ASGI, so the CN Portal app is re-exported as `app`.
"""
import sys
import os

# Project root on the path so `cn_portal.*` imports resolve (/vercel/path0/ on Vercel)
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Serverless defaults
os.environ.setdefault("MOCK_AUTH", "true")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

# Only /tmp is writable on Vercel
if not os.environ.get("DATABASE_URL"):
    os.environ["DATABASE_URL"] = "sqlite:////tmp/cn_portal.db"

# Vercel injects env vars natively; .env helps local runs of this entry point
from dotenv import load_dotenv
load_dotenv(os.path.join(ROOT, ".env"), override=True)

from cn_portal.app import app  # noqa: F401,E402
