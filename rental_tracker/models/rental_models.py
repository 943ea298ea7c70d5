from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class User(Base):
    __tablename__ = "Users"

    UserID = Column(String(100), primary_key=True)
    Name = Column(String(255), nullable=False)
    Department = Column(String(50), nullable=False)
    Role = Column(String(20), nullable=False, default="user")
    Email = Column(String(255), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("Rental", back_populates="User")


class Item(Base):
    __tablename__ = "Items"

    ItemID = Column(Integer, primary_key=True)
    Category = Column(String(30), nullable=False)
    Name = Column(String(255), nullable=False)
    Model = Column(String(255))
    SerialNumber = Column(String(255))
    Status = Column(String(20), nullable=False, default="available")
    Note = Column(String(1000))
    CreatedBy = Column(String(100), ForeignKey("Users.UserID"))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("Rental", back_populates="Item")


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("Items.ItemID"), nullable=False)
    UserID = Column(String(100), ForeignKey("Users.UserID"), nullable=False)
    RequestedDate = Column(DateTime)
    RentalDate = Column(DateTime)
    ExpectedReturnDate = Column(Date, nullable=False)
    ActualReturnDate = Column(DateTime)
    Status = Column(String(20), nullable=False, default="requested")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Rentals")
    User = relationship("User", back_populates="Rentals")
    Approvals = relationship("Approval", back_populates="Rental", cascade="all, delete-orphan")


class Approval(Base):
    __tablename__ = "Approvals"

    ApprovalID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    ApproverID = Column(String(100), nullable=False)
    Decision = Column(String(20), nullable=False, default="pending")
    DecisionDate = Column(DateTime)
    DecidedBy = Column(String(100))
    Note = Column(String(1000))

    Rental = relationship("Rental", back_populates="Approvals")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    RentalID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Recipient = Column(String(255), nullable=False)
    Payload = Column(String(4000))
    Attempts = Column(Integer, nullable=False, default=0)
    LastError = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
