"""
Pet profile storage.

The profile lives as one JSON document in the shared key-value state table.
The watchdog never reads it directly: arming takes a snapshot, so later
edits do not change an alert that is already in flight.
"""

from pydantic import ValidationError
from sqlalchemy import select

from petwatch.core.database import StateEntry, get_session
from petwatch.core.logger import logger
from petwatch.profile.models import Contact, ContactCreate, PetProfile
from petwatch.watch.schemas import CareSnapshot, Recipient
from petwatch.watch.store import SessionFactory

PROFILE_KEY = "pet_profile"


class ProfileStore:
    """Load/save the pet profile and edit its contact list."""

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session_factory = session_factory

    async def load(self) -> PetProfile:
        """Load the profile (defaults when none was saved yet)."""
        async with self._session_factory() as session:
            result = await session.execute(select(StateEntry).where(StateEntry.key == PROFILE_KEY))
            entry = result.scalar_one_or_none()

        if entry is None or entry.value is None:
            return PetProfile()
        try:
            return PetProfile.model_validate(entry.value)
        except ValidationError as e:
            logger.warning(f"Stored pet profile is invalid, using defaults: {e}")
            return PetProfile()

    async def save(self, profile: PetProfile) -> PetProfile:
        async with self._session_factory() as session:
            await session.merge(StateEntry(key=PROFILE_KEY, value=profile.model_dump(mode="json")))
            await session.commit()
        logger.debug(f"Saved pet profile for {profile.name} ({len(profile.contacts)} contacts)")
        return profile

    async def set_care(self, care: CareSnapshot) -> PetProfile:
        profile = await self.load()
        return await self.save(profile.model_copy(update={"care": care}))

    async def add_contact(self, contact: ContactCreate) -> Contact:
        profile = await self.load()
        new_contact = Contact(**contact.model_dump())
        profile.contacts.append(new_contact)
        await self.save(profile)
        return new_contact

    async def remove_contact(self, contact_id: str) -> bool:
        profile = await self.load()
        remaining = [c for c in profile.contacts if c.id != contact_id]
        if len(remaining) == len(profile.contacts):
            return False
        profile.contacts = remaining
        await self.save(profile)
        return True

    async def update_contact(self, contact_id: str, updates: ContactCreate) -> Contact | None:
        profile = await self.load()
        for index, existing in enumerate(profile.contacts):
            if existing.id == contact_id:
                updated = existing.model_copy(update=updates.model_dump(exclude_unset=True))
                profile.contacts[index] = updated
                await self.save(profile)
                return updated
        return None

    async def snapshot(self) -> tuple[str, list[Recipient], CareSnapshot]:
        """
        Copy what an arm needs: pet name, recipients and care instructions.

        Values are immutable copies, detached from the stored profile.
        """
        profile = await self.load()
        recipients = [c.as_recipient() for c in profile.contacts]
        return profile.name, recipients, profile.care.model_copy(deep=True)
