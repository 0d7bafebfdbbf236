"""
Commerce Kernel

Shared infrastructure for the procurement CRM's commercial document and
billing engine:
- Typed, coded exceptions
- Structured JSON logging with request-scoped context
- Injectable clock and commit deadlines
- SQLAlchemy declarative base with financial-grade column types
"""

__version__ = "0.1.0"
