from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.db.database import Base
from src.models.base import utcnow


class IntelligenceData(Base):
    """Change captured by an automated scraping job."""

    __tablename__ = "intelligence_data"

    id: Mapped[int] = mapped_column(primary_key=True)
    competitor_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    raw_content: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    extracted_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    importance: Mapped[str] = mapped_column(String(20), default="medium")
    tags: Mapped[Optional[List[str]]] = mapped_column(JSON)
    collected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<IntelligenceData competitor={self.competitor_id} {self.data_type}>"
