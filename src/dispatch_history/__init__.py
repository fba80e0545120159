"""dispatch-history: immutable change history, restore and offline deletes.

- core/: audit capture, authorized history reads, restore orchestration
- adapters/: SQLAlchemy repositories and the shared store HTTP client
- offline/: client-local tombstone queue and its drain loop
- api/: FastAPI routes
"""

__version__ = "0.1.0"
