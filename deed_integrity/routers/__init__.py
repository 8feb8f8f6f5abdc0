# API Routers - Deed Integrity

from deed_integrity.routers import health, integrity

__all__ = ["health", "integrity"]
