"""Import all models so SQLAlchemy metadata knows about them."""
from docvault.models.base import Base
from docvault.models.file_record import FileRecordRow

__all__ = ["Base", "FileRecordRow"]
