from __future__ import annotations

from sqlalchemy import BigInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from clusterdeck.db import Base


class Cluster(Base):
    __tablename__ = "clusters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    context_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    config_path: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # JSON-encoded list of strings
    tags: Mapped[str] = mapped_column(Text, nullable=False, default="[]", server_default="[]")
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_accessed: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
