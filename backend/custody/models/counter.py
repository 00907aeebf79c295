from sqlalchemy import Column, String, Integer
from custody.database import Base


class Counter(Base):
    __tablename__ = "counters"

    id = Column(String(100), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
