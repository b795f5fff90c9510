"""Pet profile and emergency contact records."""

from uuid import uuid4

from pydantic import BaseModel, Field

from petwatch.watch.schemas import CareSnapshot, Recipient


class Contact(BaseModel):
    """An emergency contact as edited by the owner."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None

    def as_recipient(self) -> Recipient:
        return Recipient(name=self.name, phone=self.phone)


class ContactCreate(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None


class PetProfile(BaseModel):
    """Pet identity, care instructions and the contacts to alert."""

    name: str = "My Pet"
    photo_uri: str | None = None
    care: CareSnapshot = Field(default_factory=CareSnapshot)
    contacts: list[Contact] = Field(default_factory=list)
