"""
pytest suite for the storefront checkout backend.

Test categories:
- Unit tests: pricing, validators, templates and gateway adapters without a database
- Integration tests: services against an in-memory SQLite store, plus a
  file-backed store for requests that race each other
- API tests: the FastAPI app through an httpx client
"""
