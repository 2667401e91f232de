from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from ..core.database import Base
from ..utils.timezone import utc_now


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, index=True)
    email = Column(String, unique=True, index=True)
    type = Column(String, default="candidate")                                 # superadmin | admin | candidate
    created_at = Column(DateTime(timezone=True), default=utc_now)

    administered_exams = relationship("Exam", back_populates="admin")

    def __repr__(self):
        return f"<User {self.id} ({self.type})>"
