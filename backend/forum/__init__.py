"""Forum backend package.

This package exposes the service, repository and model modules used by
the FastAPI application in `forum.main`. Individual modules contain the
concrete implementations and documentation.
"""
