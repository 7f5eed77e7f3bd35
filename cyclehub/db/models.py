from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, String, DateTime, Float

Base = declarative_base()

class CycleCounter(Base):
    __tablename__ = "cycle_counters"
    key = Column(String(255), primary_key=True)               # <namespace>.cycle.<targetId>
    last_counter = Column(Float, nullable=True)               # NULL = база ещё не установлена
    sub_counter = Column(Float, nullable=False, default=0.0)
    last_reset_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
