"""SongFlow - Core application modules.

Asynchronous song upload pipeline:
- Upload tracking records with idempotency keys and lifecycle state
- Pluggable blob store and metadata extractor strategies
- Huey-backed durable job queue with retry/backoff
- Compensation (blob cleanup) on failure
"""

__version__ = "0.1.0"
