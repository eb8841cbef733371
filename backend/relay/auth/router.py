"""Auth router for the caller's identity.

Endpoints:
    GET /api/auth/me - Subject behind the bearer token

Registration and login belong to the account service that issues tokens.
"""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from relay.store.schemas import Subject

from .dependencies import get_current_subject

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class CurrentSubject(BaseModel):
    id: str
    username: str


@router.get("/me", response_model=CurrentSubject)
async def get_me(subject: Subject = Depends(get_current_subject)) -> CurrentSubject:
    """Return the id and display name of the authenticated caller."""
    return CurrentSubject(id=subject.id, username=subject.displayName)
