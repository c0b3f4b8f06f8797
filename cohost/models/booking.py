from sqlalchemy import Column, Date, ForeignKey, Integer, String, Text

from cohost.database import Base


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True)
    property_id = Column(String(64), ForeignKey("properties.id"), nullable=False)
    conversation_id = Column(String(255), nullable=False, index=True)
    guest_name = Column(Text)
    check_in_date = Column(Date)
    check_out_date = Column(Date)
    door_code = Column(String(32))
    status = Column(String(32), nullable=False, default="confirmed")  # inquiry, confirmed, cancelled
    guests = Column(Integer)
