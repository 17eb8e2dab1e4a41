"""
Contact model.

A customer or vendor. Invoices, customer payments and
customer credits need a customer; bills, bill payments and
vendor credits need a vendor. A contact of type BOTH may be
used on either side.
"""

from datetime import datetime

from sqlalchemy import String, Boolean, DateTime, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from ledger_core.models.base import Base
from ledger_core.models.enums import ContactType


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_type: Mapped[ContactType] = mapped_column(
        SAEnum(ContactType, name="contact_type_enum", create_constraint=True),
        nullable=False,
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    @property
    def is_customer(self) -> bool:
        return self.contact_type in (ContactType.CUSTOMER, ContactType.BOTH)

    @property
    def is_vendor(self) -> bool:
        return self.contact_type in (ContactType.VENDOR, ContactType.BOTH)

    def __repr__(self) -> str:
        return f"<Contact {self.name} ({self.contact_type.value})>"
