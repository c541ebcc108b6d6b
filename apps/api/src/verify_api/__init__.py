"""Verification call orchestrator API.

This FastAPI application coordinates:
- Call start (LiveKit room + agent dispatch)
- Agent function-call webhooks (HubSpot or Google Sheets updates)
- Room lifecycle webhooks and call finalization
"""

from verify_api.main import app, create_app

__all__ = ["app", "create_app"]
