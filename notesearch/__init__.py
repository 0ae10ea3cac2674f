"""notesearch - hybrid keyword and semantic search over a folder of notes."""

__version__ = "0.3.0"
