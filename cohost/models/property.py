from sqlalchemy import JSON, Column, Integer, String, Text

from cohost.database import Base


class Property(Base):
    __tablename__ = "properties"

    id = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    timezone = Column(String(64), nullable=False, default="UTC")
    address = Column(Text)
    wifi_network = Column(Text)
    wifi_password = Column(Text)
    check_in_time = Column(String(16))
    check_out_time = Column(String(16))
    parking_info = Column(Text)
    house_rules = Column(Text)
    policies = Column(JSON, nullable=False, default=list)  # e.g. ["pets_allowed"]
    cache_ttl_seconds = Column(Integer)
