from . import analyses, documents

__all__ = ["analyses", "documents"]
