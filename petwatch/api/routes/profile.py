"""
Profile API routes.

Edit the pet profile, its care instructions and emergency contacts. Changes
apply to the next arm only; an active watch keeps its own snapshot.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from petwatch.core.logger import logger
from petwatch.profile.models import Contact, ContactCreate, PetProfile
from petwatch.profile.store import ProfileStore

router = APIRouter(prefix="/api/v1/profile", tags=["profile"])


def get_profile_store(request: Request) -> ProfileStore:
    """Dependency to get the ProfileStore from app state."""
    return request.app.state.profile_store


@router.get("", response_model=PetProfile)
async def get_profile(profile_store: ProfileStore = Depends(get_profile_store)):
    return await profile_store.load()


@router.put("", response_model=PetProfile)
async def put_profile(
    profile: PetProfile, profile_store: ProfileStore = Depends(get_profile_store)
):
    """Replace the whole profile."""
    saved = await profile_store.save(profile)
    logger.info(f"Profile updated for {saved.name}")
    return saved


@router.post("/contacts", response_model=Contact, status_code=status.HTTP_201_CREATED)
async def add_contact(
    contact: ContactCreate, profile_store: ProfileStore = Depends(get_profile_store)
):
    return await profile_store.add_contact(contact)


@router.put("/contacts/{contact_id}", response_model=Contact)
async def update_contact(
    contact_id: str,
    contact: ContactCreate,
    profile_store: ProfileStore = Depends(get_profile_store),
):
    updated = await profile_store.update_contact(contact_id, contact)
    if updated is None:
        raise HTTPException(status_code=404, detail=f"Contact {contact_id} not found")
    return updated


@router.delete("/contacts/{contact_id}")
async def delete_contact(
    contact_id: str, profile_store: ProfileStore = Depends(get_profile_store)
):
    if not await profile_store.remove_contact(contact_id):
        raise HTTPException(status_code=404, detail=f"Contact {contact_id} not found")
    return {"status": "ok", "message": f"Contact {contact_id} removed"}
