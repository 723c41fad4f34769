"""
HTTP API for Captain's Log.

Provides a single FastAPI application serving:
- OpenAI-compatible audio endpoints (/v1/audio/*)
- Health and diagnostics endpoints (/health, /healthz)
- Runtime settings (/api/settings)
"""
