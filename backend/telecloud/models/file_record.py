"""FileRecordRow model - per-file chunk metadata (chunk bytes live on the blob backend)."""
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from telecloud.models.base import Base, TimestampMixin


class FileRecordRow(Base, TimestampMixin):
    __tablename__ = "file_records"

    file_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_refs: Mapped[list[str]] = mapped_column(nullable=False, default=list)
    done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delete_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
