"""HTTP API for Clinical-Sync (FastAPI)."""
