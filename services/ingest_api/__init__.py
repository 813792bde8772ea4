"""SongFlow - Upload API service.

FastAPI service accepting song uploads and reporting their status.
"""

__all__: list[str] = []
