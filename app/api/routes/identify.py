"""POST /identify: resolve an email / phone fragment to its identity cluster."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, StrictStr

from app.api.deps import get_identity_service
from app.identity.service import IdentityService

router = APIRouter(tags=["identify"])


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class IdentifyBody(BaseModel):
    email: StrictStr | None = None
    phone_number: StrictStr | None = Field(default=None, alias="phoneNumber")


class ContactSummary(BaseModel):
    primaryContactId: int
    emails: list[str]
    phoneNumbers: list[str]
    secondaryContactIds: list[int]


class IdentifyResponse(BaseModel):
    contact: ContactSummary


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("/identify", summary="Resolve a contact identity", response_model=IdentifyResponse)
def identify(body: IdentifyBody, service: IdentityService = Depends(get_identity_service)):
    view = service.resolve(body.email, body.phone_number)
    return {"contact": view.to_dict()}
