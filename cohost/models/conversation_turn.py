from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from cohost.database import Base


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"

    # Autoincrement id doubles as the insertion sequence number.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(255), nullable=False, index=True)
    speaker = Column(String(16), nullable=False)  # guest, agent, human
    text = Column(Text, nullable=False)
    channel = Column(String(32), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    flags = Column(JSON, nullable=False, default=list)
