# Router modules are exported here for easier access.

from . import health, records, transcriptions, uploads

__all__ = ["health", "records", "transcriptions", "uploads"]
