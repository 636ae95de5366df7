"""LibrarySync - two-way synchronization of a document library with a server."""

__version__ = "0.1.0"
