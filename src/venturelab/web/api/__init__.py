"""
API endpoints for venturelab.

Provides REST endpoints for:
- Runs (POST /api/runs/{run_id}/process, GET /api/runs/{run_id})
- Cron (GET /api/cron/process-runs)
"""
