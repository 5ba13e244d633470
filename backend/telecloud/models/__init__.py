"""Import all models so SQLAlchemy metadata knows about them."""
from telecloud.models.base import Base
from telecloud.models.file_record import FileRecordRow

__all__ = ["Base", "FileRecordRow"]
