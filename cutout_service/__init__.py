"""
Background removal service package.

Exposes the express color-key engine, the deep engine adapter, the job
orchestrator that drives either one, and the FastAPI application.
"""
