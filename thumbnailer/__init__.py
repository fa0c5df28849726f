"""Photo thumbnailer: upload API plus an asynchronous thumbnail worker."""

__version__ = "1.0.0"
