"""Adapters — external integrations for the controls engine.

Contains:
- database.py      — async engine and session factory
- repositories.py  — SQLAlchemy repositories for controls, datasets and runs
- blob_store.py    — S3/MinIO and in-memory evidence blob stores
"""

__all__: list[str] = []
